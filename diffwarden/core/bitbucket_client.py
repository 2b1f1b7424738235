"""Bitbucket Cloud API client.

Wraps the Bitbucket 2.0 REST API with:
- App-password basic auth, one credential pair per workspace
  (falls back to the default workspace's credentials)
- Commit / pull-request diff fetching (raw text)
- Commit / pull-request comment posting
- Existing automated-review detection on a commit's comments

All methods use a shared ``httpx.AsyncClient``; call ``aclose()`` on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from diffwarden.core.events import RepositoryRef, ReviewTarget, TargetKind
from diffwarden.core.exceptions import (
    CommentPostError,
    DiffFetchError,
    SourceControlAPIError,
    SourceControlAuthError,
    SourceControlError,
    SourceControlRateLimitError,
)
from diffwarden.core.gateway import decode_json, is_automated_review, posted_comment

logger = logging.getLogger(__name__)

BITBUCKET_API_BASE = "https://api.bitbucket.org/2.0"
BITBUCKET_WEB_BASE = "https://bitbucket.org"

# Stop paging commit comments after this many pages.
MAX_COMMENT_PAGES = 10


class BitbucketClient:
    """Async Bitbucket Cloud client implementing ``SourceControlGateway``."""

    def __init__(
        self,
        credentials: dict[str, tuple[str, str]],
        default_workspace: str = "",
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.credentials = credentials
        self.default_workspace = default_workspace
        self.http = http or httpx.AsyncClient(timeout=30.0, follow_redirects=True)

    async def aclose(self) -> None:
        await self.http.aclose()

    # ------------------------------------------------------------------
    #  Request plumbing
    # ------------------------------------------------------------------

    def _workspace(self, repository: RepositoryRef) -> str:
        return repository.namespace or self.default_workspace

    def _auth(self, workspace: str) -> tuple[str, str]:
        auth = self.credentials.get(workspace) or self.credentials.get(self.default_workspace)
        if not auth or not auth[0]:
            raise SourceControlAuthError(f"No Bitbucket credentials configured for workspace {workspace!r}")
        return auth

    def _repo_url(self, repository: RepositoryRef) -> str:
        return f"{BITBUCKET_API_BASE}/repositories/{self._workspace(repository)}/{repository.name}"

    async def _request(
        self,
        method: str,
        url: str,
        repository: RepositoryRef,
        *,
        json_body: dict | None = None,
        params: dict | None = None,
    ) -> httpx.Response:
        """Authenticated request; maps transport and HTTP errors to domain errors."""
        started = time.monotonic()
        try:
            response = await self.http.request(
                method,
                url,
                auth=self._auth(self._workspace(repository)),
                json=json_body,
                params=params,
            )
        except httpx.HTTPError as exc:
            raise SourceControlAPIError(f"Bitbucket request failed: {exc}") from exc

        logger.debug(
            "Bitbucket %s %s -> %d in %dms",
            method,
            url,
            response.status_code,
            int((time.monotonic() - started) * 1000),
        )

        if response.status_code in (401, 403):
            raise SourceControlAuthError(
                f"Bitbucket rejected credentials for {repository.full_name} ({response.status_code})"
            )
        if response.status_code == 429:
            raise SourceControlRateLimitError(
                "Bitbucket rate limit exceeded",
                reset_at=response.headers.get("Retry-After", ""),
            )
        if response.status_code >= 400:
            raise SourceControlAPIError(
                f"Bitbucket API error for {repository.full_name}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    # ------------------------------------------------------------------
    #  Public API methods
    # ------------------------------------------------------------------

    async def get_commit_diff(self, repository: RepositoryRef, commit_hash: str) -> str:
        response = await self._request("GET", f"{self._repo_url(repository)}/diff/{commit_hash}", repository)
        return response.text

    async def get_pull_request_diff(self, repository: RepositoryRef, pr_id: int | str) -> str:
        response = await self._request(
            "GET", f"{self._repo_url(repository)}/pullrequests/{pr_id}/diff", repository
        )
        return response.text

    async def post_commit_comment(
        self, repository: RepositoryRef, commit_hash: str, content: str
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self._repo_url(repository)}/commit/{commit_hash}/comments",
            repository,
            json_body={"content": {"raw": content}},
        )
        logger.info("Posted comment to commit %s", commit_hash[:7], extra={"repository": repository.full_name})
        return posted_comment(response, "Bitbucket")

    async def post_pull_request_comment(
        self, repository: RepositoryRef, pr_id: int | str, content: str
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self._repo_url(repository)}/pullrequests/{pr_id}/comments",
            repository,
            json_body={"content": {"raw": content}},
        )
        logger.info("Posted comment to PR #%s", pr_id, extra={"repository": repository.full_name})
        return posted_comment(response, "Bitbucket")

    async def iter_commit_comments(
        self, repository: RepositoryRef, commit_hash: str
    ) -> AsyncIterator[dict[str, Any]]:
        url: str | None = f"{self._repo_url(repository)}/commit/{commit_hash}/comments"
        params: dict | None = {"pagelen": 100}
        pages = 0
        while url and pages < MAX_COMMENT_PAGES:
            response = await self._request("GET", url, repository, params=params)
            data = decode_json(response, "Bitbucket")
            if not isinstance(data, dict):
                raise SourceControlAPIError("Bitbucket comments page is not an object", status_code=response.status_code)
            for comment in data.get("values") or []:
                if isinstance(comment, dict):
                    yield comment
            url = data.get("next")
            params = None  # "next" already carries the query string
            pages += 1

    # ------------------------------------------------------------------
    #  SourceControlGateway
    # ------------------------------------------------------------------

    async def get_diff(self, target: ReviewTarget) -> str:
        try:
            if target.kind is TargetKind.COMMIT:
                return await self.get_commit_diff(target.repository, target.identifier)
            return await self.get_pull_request_diff(target.repository, target.identifier)
        except SourceControlError as exc:
            logger.error(
                "Error fetching diff",
                extra={"repository": target.repository.full_name, "target": target.short_id, "error": str(exc)},
            )
            raise DiffFetchError(f"Failed to fetch diff for {target.short_id}: {exc}") from exc

    async def post_comment(self, target: ReviewTarget, body: str) -> dict[str, Any]:
        try:
            if target.kind is TargetKind.COMMIT:
                return await self.post_commit_comment(target.repository, target.identifier, body)
            return await self.post_pull_request_comment(target.repository, target.identifier, body)
        except SourceControlError as exc:
            raise CommentPostError(f"Failed to post comment for {target.short_id}: {exc}") from exc

    async def has_existing_automated_comment(
        self, repository: RepositoryRef, commit_hash: str
    ) -> bool:
        async for comment in self.iter_commit_comments(repository, commit_hash):
            content = comment.get("content")
            if isinstance(content, dict) and is_automated_review(content.get("raw")):
                return True
        return False

    def web_url(self, target: ReviewTarget, comment_id: Any = None) -> str:
        base = f"{BITBUCKET_WEB_BASE}/{self._workspace(target.repository)}/{target.repository.name}"
        if target.kind is TargetKind.COMMIT:
            url = f"{base}/commits/{target.identifier}"
        else:
            url = f"{base}/pull-requests/{target.identifier}"
        if comment_id is not None:
            url += f"#comment-{comment_id}"
        return url
