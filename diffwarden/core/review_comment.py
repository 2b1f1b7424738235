"""Compose the review comment posted back to the source-control host.

The heading doubles as the automated-review marker checked by
``gateway.is_automated_review``; keep them in sync.
"""

from __future__ import annotations

from diffwarden.core.batch_runner import BatchOutcome
from diffwarden.core.events import ReviewTarget, TargetKind

LABELS: dict[str, dict[str, str]] = {
    "en": {
        "heading": "## 🤖 Automated Code Review",
        "repository": "Repository",
        "commit": "Commit",
        "pull_request": "Pull Request",
        "message": "Message",
        "author": "Author",
        "focus": "Review Focus",
        "files": "Files Reviewed",
        "skipped": "files skipped - translations/configs/generated",
        "overall": "Overall Assessment",
        "file_reviews": "File Reviews",
        "review_time": "Review time",
        "review_failed": "Review failed",
        "timeout": (
            "⚠️ **Timeout Notice**: {count} files were not reviewed due to time constraints.\n"
            "Unreviewed files:"
        ),
        "footer": "*This review was generated automatically by AI.*",
    },
    "ko": {
        "heading": "## 🤖 자동 코드 리뷰",
        "repository": "저장소",
        "commit": "커밋",
        "pull_request": "풀 리퀘스트",
        "message": "메시지",
        "author": "작성자",
        "focus": "리뷰 초점",
        "files": "검토된 파일 수",
        "skipped": "개 파일 제외 - 번역/설정/생성 파일",
        "overall": "전체 평가",
        "file_reviews": "파일별 리뷰",
        "review_time": "리뷰 시간",
        "review_failed": "리뷰 실패",
        "timeout": (
            "⚠️ **시간 초과 안내**: 시간 제한으로 {count}개 파일은 리뷰되지 않았습니다.\n"
            "리뷰되지 않은 파일:"
        ),
        "footer": "*이 리뷰는 AI가 자동으로 생성했습니다.*",
    },
}


def labels_for(language: str) -> dict[str, str]:
    return LABELS.get(language, LABELS["en"])


def _header(
    target: ReviewTarget,
    labels: dict[str, str],
    review_focus: str,
    files_to_review: int,
    skipped: int,
) -> str:
    text = f"{labels['heading']}\n\n"
    text += f"**{labels['repository']}**: {target.repository.full_name}\n"
    if target.kind is TargetKind.COMMIT:
        text += f"**{labels['commit']}**: {target.short_id}\n"
        text += f"**{labels['message']}**: {target.title}\n"
    else:
        text += f"**{labels['pull_request']}**: #{target.identifier} {target.title}\n"
    text += f"**{labels['author']}**: {target.author}\n"
    text += f"**{labels['focus']}**: {review_focus}\n"
    text += f"**{labels['files']}**: {files_to_review}"
    if skipped > 0:
        text += f" ({skipped} {labels['skipped']})"
    return text + "\n\n"


def _timeout_notice(outcome: BatchOutcome, labels: dict[str, str]) -> str:
    if not outcome.unprocessed:
        return ""
    text = "\n" + labels["timeout"].format(count=len(outcome.unprocessed)) + "\n"
    for change in outcome.unprocessed:
        text += f"- {change.path}\n"
    return text + "\n"


def build_commit_comment(
    target: ReviewTarget,
    outcome: BatchOutcome,
    *,
    language: str,
    review_focus: str,
    files_to_review: int,
    skipped: int = 0,
) -> str:
    """One section per reviewed file, in review order."""
    labels = labels_for(language)
    comment = _header(target, labels, review_focus, files_to_review, skipped)

    for result in outcome.processed:
        comment += f"### 📄 [{result.index}/{files_to_review}] {result.path}\n"
        if result.ok:
            comment += f"*{labels['review_time']}: {result.elapsed:.1f}s*\n\n"
            comment += f"{result.review}\n\n"
        else:
            comment += f"⚠️ {labels['review_failed']}: {result.error}\n\n"
        comment += "---\n\n"

    comment += _timeout_notice(outcome, labels)
    comment += f"---\n{labels['footer']}"
    return comment


def build_pull_request_comment(
    target: ReviewTarget,
    outcome: BatchOutcome,
    summary: str,
    *,
    language: str,
    review_focus: str,
    files_to_review: int,
    skipped: int = 0,
) -> str:
    """Overall assessment first, then collapsible per-file reviews."""
    labels = labels_for(language)
    comment = _header(target, labels, review_focus, files_to_review, skipped)
    comment += f"### {labels['overall']}\n{summary}\n\n"

    if outcome.processed:
        comment += f"### {labels['file_reviews']}\n\n"
        for result in outcome.processed:
            comment += f"<details>\n<summary>📄 [{result.index}/{files_to_review}] {result.path}</summary>\n\n"
            if result.ok:
                comment += f"{result.review}\n\n"
            else:
                comment += f"⚠️ {labels['review_failed']}: {result.error}\n\n"
            comment += "</details>\n\n"

    comment += _timeout_notice(outcome, labels)
    comment += f"---\n{labels['footer']}"
    return comment
