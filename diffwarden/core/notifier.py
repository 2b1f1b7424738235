"""Slack incoming-webhook notifications.

Fire-and-forget: every failure is logged and swallowed so that a chat
outage never affects review processing.  Disabled when no webhook URL is
configured.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewNotification:
    repository: str
    kind: str                 # "commit" | "pull_request"
    identifier: str           # short hash or "PR #12"
    files_reviewed: int
    review_focus: str
    url: str
    author: str = ""


def _timestamp_element(prefix: str) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {
        "type": "context",
        "elements": [
            {
                "type": "mrkdwn",
                "text": (
                    f"{prefix} <!date^{int(now.timestamp())}^{{date_short_pretty}} {{time}}"
                    f"|{now.isoformat()}>"
                ),
            }
        ],
    }


class SlackNotifier:
    def __init__(self, webhook_url: str, http: httpx.AsyncClient | None = None) -> None:
        self.webhook_url = webhook_url
        self.http = http or httpx.AsyncClient(timeout=10.0)
        if not self.enabled:
            logger.info("Slack notifications disabled (no webhook URL configured)")

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _post(self, payload: dict[str, Any]) -> bool:
        try:
            response = await self.http.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to send Slack notification", extra={"error": str(exc)})
            return False
        return True

    async def notify_review(self, notification: ReviewNotification) -> bool:
        """Announce a posted review.  Returns False if skipped or failed."""
        if not self.enabled:
            logger.debug("Slack notification skipped (not configured)")
            return False

        is_commit = notification.kind == "commit"
        title = "🔍 Commit Review Completed" if is_commit else "🔀 Pull Request Review Completed"
        fields = [
            {
                "type": "mrkdwn",
                "text": f"*{'Commit' if is_commit else 'Pull Request'}:*\n`{notification.identifier}`",
            },
            {"type": "mrkdwn", "text": f"*Files Reviewed:*\n{notification.files_reviewed}"},
        ]
        if notification.author:
            fields.append({"type": "mrkdwn", "text": f"*Author:*\n{notification.author}"})

        blocks: list[dict[str, Any]] = [
            {"type": "header", "text": {"type": "plain_text", "text": title, "emoji": True}},
            {"type": "section", "text": {"type": "mrkdwn", "text": f"Repository: *{notification.repository}*"}},
            {"type": "section", "fields": fields},
        ]
        if notification.review_focus:
            blocks.append(
                {"type": "section", "text": {"type": "mrkdwn", "text": f"*Review Focus:* {notification.review_focus}"}}
            )
        blocks += [
            {"type": "divider"},
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "📝 View review", "emoji": True},
                        "url": notification.url,
                        "style": "primary",
                    }
                ],
            },
            _timestamp_element("🤖 Automated review completed at"),
        ]

        sent = await self._post({"text": f"Code Review Completed for {notification.repository}", "blocks": blocks})
        if sent:
            logger.info(
                "Slack notification sent",
                extra={"repository": notification.repository, "identifier": notification.identifier},
            )
        return sent

    async def notify_error(self, repository: str, error: str, context: str) -> bool:
        if not self.enabled:
            return False
        blocks = [
            {"type": "header", "text": {"type": "plain_text", "text": "⚠️ Code Review Error", "emoji": True}},
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Repository:*\n{repository}"},
                    {"type": "mrkdwn", "text": f"*Context:*\n{context}"},
                ],
            },
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Error:*\n```{error}```"}},
            _timestamp_element("Error occurred at"),
        ]
        return await self._post({"text": "Error in code review process", "blocks": blocks})

    async def test_connection(self) -> dict[str, Any]:
        if not self.enabled:
            return {"success": False, "message": "Slack webhook URL not configured"}
        sent = await self._post(
            {
                "text": "✅ Slack integration test successful!",
                "blocks": [
                    {
                        "type": "section",
                        "text": {
                            "type": "mrkdwn",
                            "text": "✅ *Slack Integration Test*\nThe code review bot is connected to Slack.",
                        },
                    },
                    _timestamp_element("Test performed at"),
                ],
            }
        )
        if sent:
            return {"success": True, "message": "Slack connection test successful"}
        return {"success": False, "message": "Slack webhook request failed"}
