"""Source-control gateway protocol shared by the Bitbucket and GitHub clients."""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from diffwarden.core.events import RepositoryRef, ReviewTarget
from diffwarden.core.exceptions import SourceControlAPIError

logger = logging.getLogger(__name__)

# Header phrases written by ``review_comment``; their presence in an existing
# comment means the commit was already reviewed.
AUTOMATED_REVIEW_MARKERS: tuple[str, ...] = ("Automated Code Review", "자동 코드 리뷰")


def is_automated_review(text: Any) -> bool:
    return isinstance(text, str) and any(marker in text for marker in AUTOMATED_REVIEW_MARKERS)


def decode_json(response: httpx.Response, host: str) -> Any:
    """Decode a response body, mapping a non-JSON body to ``SourceControlAPIError``."""
    try:
        return response.json()
    except ValueError as exc:
        raise SourceControlAPIError(
            f"{host} returned a non-JSON body (HTTP {response.status_code})",
            status_code=response.status_code,
        ) from exc


def posted_comment(response: httpx.Response, host: str) -> dict[str, Any]:
    """Body of a successful comment post.  The comment exists even if the body is unreadable."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        logger.warning("%s comment posted but the response body is not a JSON object", host)
        return {}
    return data


@runtime_checkable
class SourceControlGateway(Protocol):
    """Operations the dispatcher needs from a source-control host."""

    async def get_diff(self, target: ReviewTarget) -> str:
        """Raw unified diff of a commit or pull request.  Raises ``DiffFetchError``."""
        ...

    async def post_comment(self, target: ReviewTarget, body: str) -> dict[str, Any]:
        """Post ``body`` on the commit or PR.  Raises ``CommentPostError``."""
        ...

    async def has_existing_automated_comment(
        self, repository: RepositoryRef, commit_hash: str
    ) -> bool: ...

    def web_url(self, target: ReviewTarget, comment_id: Any = None) -> str: ...

    async def aclose(self) -> None: ...
