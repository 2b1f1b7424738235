"""Event dispatcher — the review pipeline for one webhook delivery.

Per delivery:

    policy check -> route (pull request | push)

Per review target (each commit of a push, or the pull request):

    in-delivery duplicate set -> delivery dedup -> target claim
    -> remote existing-review check (commits only)
    -> fetch diff -> parse + filter -> review files -> post comment
    -> mark completed -> notify

The gates run cheapest first and each one alone is enough to skip.  The
comment post is the only irreversible effect and happens last; the cache
entry becomes *completed* only after it succeeds.  Any failure between the
claim and the post removes the entry (so a later delivery can retry), sends
an error notification, and propagates to the HTTP layer.  A failed chat
notification after the post is logged and never touches the entry.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from diffwarden.core.batch_runner import (
    BatchOutcome,
    review_in_batches,
    review_with_timeout,
)
from diffwarden.core.dedup_cache import DedupCache
from diffwarden.core.diff_parser import FileChange, parse_diff
from diffwarden.core.events import (
    EventType,
    RepositoryRef,
    ReviewTarget,
    TargetKind,
    WebhookDelivery,
)
from diffwarden.core.exceptions import LLMError
from diffwarden.core.file_filter import SkipRules, filter_files
from diffwarden.core.gateway import SourceControlGateway
from diffwarden.core.notifier import ReviewNotification, SlackNotifier
from diffwarden.core.policy import PolicyLookup, RepositoryPolicy
from diffwarden.core.review_comment import build_commit_comment, build_pull_request_comment
from diffwarden.core.review_engine import ReviewEngine

logger = logging.getLogger(__name__)


class DispatchStatus(str, enum.Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    IGNORED = "ignored"


class TargetStatus(str, enum.Enum):
    REVIEWED = "reviewed"
    NO_FILES = "no_files"
    DUPLICATE = "duplicate"
    ALREADY_REVIEWED = "already_reviewed"


@dataclass
class TargetOutcome:
    target: str
    status: TargetStatus
    reason: str = ""
    files_reviewed: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"target": self.target, "status": self.status.value}
        if self.reason:
            data["reason"] = self.reason
        if self.status is TargetStatus.REVIEWED:
            data["files_reviewed"] = self.files_reviewed
        return data


@dataclass
class DispatchResult:
    status: DispatchStatus
    message: str
    event: str = ""
    repository: str | None = None
    targets: list[TargetOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
            "event": self.event,
            "repository": self.repository,
        }
        if self.targets:
            data["targets"] = [t.to_dict() for t in self.targets]
        return data


class EventDispatcher:
    """Owns the dedup cache; drives gateway, parser, runner and engine."""

    def __init__(
        self,
        cache: DedupCache,
        policy: PolicyLookup,
        gateways: Mapping[str, SourceControlGateway],
        engine: ReviewEngine,
        notifier: SlackNotifier,
        *,
        skip_rules: SkipRules | None = None,
        allowed_workspaces: frozenset[str] = frozenset(),
        time_budget: float | None = 280.0,
        batch_size: int = 3,
        batch_delay: float = 1.0,
    ) -> None:
        self.cache = cache
        self.policy = policy
        self.gateways = gateways
        self.engine = engine
        self.notifier = notifier
        self.skip_rules = skip_rules or SkipRules()
        self.allowed_workspaces = allowed_workspaces
        self.time_budget = time_budget
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    # ------------------------------------------------------------------
    #  Entry point
    # ------------------------------------------------------------------

    async def dispatch(self, delivery: WebhookDelivery) -> DispatchResult:
        """Process one delivery.  Raises on fetch / post failures."""
        repo = delivery.repository
        result = DispatchResult(
            status=DispatchStatus.PROCESSED,
            message="Webhook processed successfully",
            event=delivery.raw_event,
            repository=repo.full_name if repo else None,
        )

        if repo is None:
            logger.warning("Webhook without repository — ignoring", extra={"event": delivery.raw_event})
            result.status, result.message = DispatchStatus.IGNORED, "Payload has no repository"
            return result

        skip_reason = self._policy_skip_reason(repo)
        if skip_reason:
            logger.info(skip_reason, extra={"repository": repo.full_name})
            result.status, result.message = DispatchStatus.SKIPPED, skip_reason
            return result

        gateway = self.gateways.get(delivery.provider)
        if gateway is None:
            result.status, result.message = DispatchStatus.IGNORED, f"Unsupported provider: {delivery.provider}"
            return result

        config = self.policy.get_config(repo.name)

        if delivery.event_type in (EventType.PR_CREATED, EventType.PR_UPDATED) and delivery.pull_request:
            target = ReviewTarget.from_pull_request(repo, delivery.pull_request)
            await self._handle_pull_request(delivery, target, gateway, config, result)
        elif delivery.event_type is EventType.PUSH:
            await self._handle_push(delivery, repo, gateway, config, result)
        else:
            logger.info("Unhandled event type: %s", delivery.raw_event or "<missing>")
            result.status, result.message = DispatchStatus.IGNORED, f"Unhandled event type: {delivery.raw_event}"

        return result

    def _policy_skip_reason(self, repo: RepositoryRef) -> str | None:
        if (
            repo.provider == "bitbucket"
            and self.allowed_workspaces
            and repo.namespace not in self.allowed_workspaces
        ):
            return f"Workspace {repo.namespace!r} is not enabled for review"
        if not self.policy.is_review_enabled(repo.name):
            return f"Review disabled for repository {repo.name}"
        return None

    # ------------------------------------------------------------------
    #  Routes
    # ------------------------------------------------------------------

    async def _handle_push(
        self,
        delivery: WebhookDelivery,
        repo: RepositoryRef,
        gateway: SourceControlGateway,
        config: RepositoryPolicy,
        result: DispatchResult,
    ) -> None:
        commits = delivery.commits
        logger.info(
            "Processing push event",
            extra={
                "repository": repo.full_name,
                "changes": len(delivery.push_changes),
                "commits": len(commits),
            },
        )
        if not commits:
            logger.warning("No reviewable commits in push event", extra={"repository": repo.full_name})
            result.message = "No changes found"
            return

        seen_in_delivery: set[str] = set()
        for commit in commits:
            target = ReviewTarget.from_commit(repo, commit)
            outcome = await self._process_target(delivery, target, gateway, config, seen_in_delivery)
            result.targets.append(outcome)

    async def _handle_pull_request(
        self,
        delivery: WebhookDelivery,
        target: ReviewTarget,
        gateway: SourceControlGateway,
        config: RepositoryPolicy,
        result: DispatchResult,
    ) -> None:
        logger.info(
            "Processing PR #%s: %s",
            target.identifier,
            target.title,
            extra={"repository": target.repository.full_name, "author": target.author},
        )
        outcome = await self._process_target(delivery, target, gateway, config, set())
        result.targets.append(outcome)

    # ------------------------------------------------------------------
    #  Per-target pipeline
    # ------------------------------------------------------------------

    def _admit(
        self, delivery: WebhookDelivery, target: ReviewTarget, seen_in_delivery: set[str]
    ) -> str | None:
        """Run the local dedup gates.  Returns a skip reason, or None once claimed."""
        repo = target.repository.full_name
        key = target.dedup_key

        if key in seen_in_delivery:
            return "duplicate in same delivery"
        seen_in_delivery.add(key)

        if self.cache.is_webhook_delivered(delivery.delivery_id, delivery.raw_event, repo, key):
            return "duplicate webhook delivery"
        self.cache.mark_webhook_delivered(delivery.delivery_id, delivery.raw_event, repo, key)

        if not self.cache.try_start_processing(repo, key):
            return "already processing or processed"
        return None

    async def _process_target(
        self,
        delivery: WebhookDelivery,
        target: ReviewTarget,
        gateway: SourceControlGateway,
        config: RepositoryPolicy,
        seen_in_delivery: set[str],
    ) -> TargetOutcome:
        repo = target.repository.full_name
        key = target.dedup_key

        reason = self._admit(delivery, target, seen_in_delivery)
        if reason:
            logger.info(
                "Skipping %s (%s)", target.short_id, reason, extra={"repository": repo, "delivery_id": delivery.delivery_id}
            )
            return TargetOutcome(target.short_id, TargetStatus.DUPLICATE, reason)

        # Everything between the claim and a successful post is compensated.
        try:
            if target.kind is TargetKind.COMMIT and await self._has_remote_review(gateway, target):
                logger.info("Skipping %s (review already exists)", target.short_id, extra={"repository": repo})
                self.cache.complete_processing(repo, key)
                return TargetOutcome(target.short_id, TargetStatus.ALREADY_REVIEWED, "review already exists")
            outcome, response = await self._review_target(target, gateway, config)
        except Exception as exc:
            self.cache.remove(repo, key)
            logger.error(
                "Review of %s failed, removed from cache",
                target.short_id,
                extra={"repository": repo, "error": str(exc)},
            )
            await self.notifier.notify_error(
                repository=repo,
                error=str(exc),
                context=f"Failed to review {target.short_id}",
            )
            raise

        self._finish(target)
        if response is not None:
            await self._announce(target, gateway, config, outcome, response)
        return outcome

    async def _has_remote_review(self, gateway: SourceControlGateway, target: ReviewTarget) -> bool:
        """Best effort: a failed lookup counts as "no existing review"."""
        try:
            return await gateway.has_existing_automated_comment(target.repository, target.identifier)
        except Exception as exc:
            logger.warning(
                "Existing-review check failed for %s: %s — proceeding",
                target.short_id,
                exc,
                extra={"repository": target.repository.full_name, "error_type": type(exc).__name__},
            )
            return False

    async def _review_target(
        self,
        target: ReviewTarget,
        gateway: SourceControlGateway,
        config: RepositoryPolicy,
    ) -> tuple[TargetOutcome, dict[str, Any] | None]:
        """Fetch, review and post.  Returns the outcome and the post response, if any."""
        repo = target.repository.full_name
        started = time.monotonic()

        diff_text = await gateway.get_diff(target)
        parsed = parse_diff(diff_text)
        filtered = filter_files(parsed, self.skip_rules.with_paths(config.skip_paths))

        if not filtered.reviewable:
            logger.warning(
                "All files filtered out",
                extra={"repository": repo, "target": target.short_id, "total_files": len(parsed)},
            )
            return TargetOutcome(target.short_id, TargetStatus.NO_FILES, "no files to review"), None

        preferences = self.policy.get_author_preferences(target.author)
        guidance = self.policy.get_review_prompt(target.repository.name)
        review_focus = ", ".join(config.categories)

        async def review_file(change: FileChange) -> str:
            return await self.engine.review(
                change.diff, change.path, target.title, target.author, guidance=guidance
            )

        logger.info(
            "Starting review for %d files",
            len(filtered.reviewable),
            extra={"repository": repo, "target": target.short_id, "language": preferences.language},
        )
        outcome = await self._run(filtered.reviewable, review_file)

        if target.kind is TargetKind.COMMIT:
            body = build_commit_comment(
                target,
                outcome,
                language=preferences.language,
                review_focus=review_focus,
                files_to_review=len(filtered.reviewable),
                skipped=len(filtered.skipped),
            )
        else:
            summary = await self._summarize(target, outcome)
            body = build_pull_request_comment(
                target,
                outcome,
                summary,
                language=preferences.language,
                review_focus=review_focus,
                files_to_review=len(filtered.reviewable),
                skipped=len(filtered.skipped),
            )

        response = await gateway.post_comment(target, body)

        logger.info(
            "Successfully posted review for %s",
            target.short_id,
            extra={
                "repository": repo,
                "files_reviewed": len(outcome.processed),
                "files_unreviewed": len(outcome.unprocessed),
                "processing_time_ms": int((time.monotonic() - started) * 1000),
            },
        )
        reviewed = TargetOutcome(target.short_id, TargetStatus.REVIEWED, files_reviewed=len(outcome.processed))
        return reviewed, response

    async def _announce(
        self,
        target: ReviewTarget,
        gateway: SourceControlGateway,
        config: RepositoryPolicy,
        outcome: TargetOutcome,
        response: dict[str, Any],
    ) -> None:
        """Chat notification for a posted review.  Never undoes the post."""
        try:
            await self.notifier.notify_review(
                ReviewNotification(
                    repository=target.repository.full_name,
                    kind=target.kind.value,
                    identifier=target.short_id,
                    files_reviewed=outcome.files_reviewed,
                    review_focus=", ".join(config.categories),
                    url=gateway.web_url(target, response.get("id")),
                    author=target.author,
                )
            )
        except Exception:
            logger.exception(
                "Review notification failed for %s",
                target.short_id,
                extra={"repository": target.repository.full_name},
            )

    def _finish(self, target: ReviewTarget) -> None:
        """Mark a target done.  A PR with no known revision is released instead."""
        repo = target.repository.full_name
        if target.kind is TargetKind.PULL_REQUEST and not target.revision:
            self.cache.remove(repo, target.dedup_key)
        else:
            self.cache.complete_processing(repo, target.dedup_key)

    async def _run(self, files: Sequence[FileChange], review_file) -> BatchOutcome:
        if self.time_budget:
            return await review_with_timeout(files, review_file, self.time_budget)
        return await review_in_batches(files, review_file, self.batch_size, self.batch_delay)

    async def _summarize(self, target: ReviewTarget, outcome: BatchOutcome) -> str:
        if not any(r.ok for r in outcome.processed):
            return "_No files could be reviewed._"
        try:
            return await self.engine.summarize_pull_request(
                target.title, target.description, outcome.processed, target.author
            )
        except LLMError as exc:
            logger.error("PR summary failed", extra={"target": target.short_id, "error": str(exc)})
            return f"⚠️ Summary unavailable: {exc}"
