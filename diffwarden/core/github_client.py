"""GitHub API client for DiffWarden.

Wraps the GitHub REST API with:
- JWT-based GitHub App authentication
- Installation access token caching (in-process, per installation)
- Commit / PR diff fetching, commit / PR comment posting
- Rate limit monitoring and automatic token refresh on 403

All methods use a shared ``httpx.AsyncClient``; call ``aclose()`` on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from jose import jwt as jose_jwt
from jose.exceptions import JOSEError

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

GITHUB_API_BASE = "https://api.github.com"
GITHUB_WEB_BASE = "https://github.com"
GITHUB_API_VERSION = "2022-11-28"

# Common headers for every GitHub API request.
_BASE_HEADERS: dict[str, str] = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": GITHUB_API_VERSION,
}
_DIFF_ACCEPT = "application/vnd.github.v3.diff"


class GitHubClient:
    """Async GitHub App client implementing ``SourceControlGateway``.

    Installation tokens are cached for 55 minutes (tokens expire in 60;
    the 5-minute buffer avoids clock-skew problems).
    """

    TOKEN_TTL_SECONDS = 55 * 60

    def __init__(
        self,
        app_id: str,
        private_key_loader: Callable[[], str],
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.app_id = app_id
        self._private_key_loader = private_key_loader
        self.http = http or httpx.AsyncClient(timeout=30.0)
        self._tokens: dict[int, tuple[str, float]] = {}

    async def aclose(self) -> None:
        await self.http.aclose()

    # ------------------------------------------------------------------
    #  Authentication
    # ------------------------------------------------------------------

    def _generate_app_jwt(self) -> str:
        """Generate a short-lived RS256 JWT for App-level authentication (~9 minutes)."""
        private_key = self._private_key_loader()
        if not private_key:
            raise SourceControlAuthError(
                "GitHub App private key is empty — check GITHUB_APP_PRIVATE_KEY_PATH"
            )

        now = int(time.time())
        payload = {
            "iat": now - 60,     # issued-at: 60s in the past for clock drift
            "exp": now + 540,    # expires in 9 minutes
            "iss": self.app_id,
        }
        try:
            return jose_jwt.encode(payload, private_key, algorithm="RS256")
        except JOSEError as exc:
            raise SourceControlAuthError(f"Could not sign GitHub App JWT: {exc}") from exc

    async def get_access_token(self, installation_id: int) -> str:
        """Get a valid installation access token, using the cache when possible."""
        cached = self._tokens.get(installation_id)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        token = await self._fetch_fresh_token(installation_id)
        self._tokens[installation_id] = (token, time.monotonic() + self.TOKEN_TTL_SECONDS)
        return token

    async def _fetch_fresh_token(self, installation_id: int) -> str:
        """Exchange App JWT for an installation-scoped access token."""
        app_jwt = self._generate_app_jwt()
        try:
            response = await self.http.post(
                f"{GITHUB_API_BASE}/app/installations/{installation_id}/access_tokens",
                headers={"Authorization": f"Bearer {app_jwt}", **_BASE_HEADERS},
            )
        except httpx.HTTPError as exc:
            raise SourceControlAPIError(f"Installation token request failed: {exc}") from exc

        if response.status_code == 401:
            raise SourceControlAuthError(
                "App JWT is invalid — check GITHUB_APP_PRIVATE_KEY_PATH and GITHUB_APP_ID"
            )
        if response.status_code == 404:
            raise SourceControlAuthError(
                f"Installation {installation_id} not found — may have been uninstalled"
            )
        if response.status_code >= 400:
            raise SourceControlAPIError(
                f"Failed to get installation token: {response.text}",
                status_code=response.status_code,
            )

        token = decode_json(response, "GitHub")
        if not isinstance(token, dict) or not isinstance(token.get("token"), str):
            raise SourceControlAPIError("Installation token response has no token", status_code=response.status_code)

        logger.info("Fresh installation token obtained", extra={"installation_id": installation_id})
        return token["token"]

    # ------------------------------------------------------------------
    #  Core request method
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        repository: RepositoryRef,
        *,
        accept: str | None = None,
        json_body: dict | None = None,
        params: dict | None = None,
    ) -> httpx.Response:
        """Make an authenticated request with one token refresh on 403."""
        if repository.installation_id is None:
            raise SourceControlAuthError(f"No GitHub App installation for {repository.full_name}")
        installation_id = repository.installation_id

        request_headers = {
            "Authorization": f"Bearer {await self.get_access_token(installation_id)}",
            **_BASE_HEADERS,
        }
        if accept:
            request_headers["Accept"] = accept

        try:
            response = await self.http.request(
                method, url, headers=request_headers, json=json_body, params=params
            )
            self._check_rate_limit(response, installation_id)

            if response.status_code == 403:
                if response.headers.get("X-RateLimit-Remaining") == "0":
                    reset_at = response.headers.get("X-RateLimit-Reset", "")
                    raise SourceControlRateLimitError(
                        f"Rate limit exceeded. Resets at: {reset_at}", reset_at=reset_at
                    )
                # Token revoked — invalidate and retry.
                logger.warning(
                    "GitHub 403 — invalidating cached token and retrying",
                    extra={"installation_id": installation_id},
                )
                self._tokens.pop(installation_id, None)
                request_headers["Authorization"] = f"Bearer {await self.get_access_token(installation_id)}"
                response = await self.http.request(
                    method, url, headers=request_headers, json=json_body, params=params
                )
        except httpx.HTTPError as exc:
            raise SourceControlAPIError(f"GitHub request failed: {exc}") from exc

        if response.status_code >= 400:
            raise SourceControlAPIError(
                f"GitHub API error for {repository.full_name}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def _check_rate_limit(self, response: httpx.Response, installation_id: int) -> None:
        """Log rate limit status from every GitHub API response."""
        remaining_str = response.headers.get("X-RateLimit-Remaining")
        if remaining_str is None:
            return

        try:
            remaining = int(remaining_str)
            reset_ts = int(response.headers.get("X-RateLimit-Reset", 0))
            limit = int(response.headers.get("X-RateLimit-Limit", -1))
        except ValueError:
            logger.debug("Unparseable rate limit headers", extra={"remaining": remaining_str})
            return
        if remaining < 100:
            logger.warning(
                "GitHub rate limit low",
                extra={
                    "installation_id": installation_id,
                    "remaining": remaining,
                    "limit": limit,
                    "resets_in_seconds": max(0, reset_ts - int(time.time())),
                },
            )

    # ------------------------------------------------------------------
    #  Public API methods
    # ------------------------------------------------------------------

    def _repo_url(self, repository: RepositoryRef) -> str:
        return f"{GITHUB_API_BASE}/repos/{repository.full_name}"

    async def get_commit_diff(self, repository: RepositoryRef, commit_hash: str) -> str:
        response = await self._request(
            "GET", f"{self._repo_url(repository)}/commits/{commit_hash}", repository, accept=_DIFF_ACCEPT
        )
        return response.text

    async def get_pr_diff(self, repository: RepositoryRef, pr_number: int | str) -> str:
        """Fetch the raw unified diff text for a pull request."""
        response = await self._request(
            "GET", f"{self._repo_url(repository)}/pulls/{pr_number}", repository, accept=_DIFF_ACCEPT
        )
        return response.text

    async def post_commit_comment(
        self, repository: RepositoryRef, commit_hash: str, body: str
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self._repo_url(repository)}/commits/{commit_hash}/comments",
            repository,
            json_body={"body": body},
        )
        return posted_comment(response, "GitHub")

    async def post_issue_comment(
        self, repository: RepositoryRef, pr_number: int | str, body: str
    ) -> dict[str, Any]:
        """Post a top-level PR conversation comment."""
        response = await self._request(
            "POST",
            f"{self._repo_url(repository)}/issues/{pr_number}/comments",
            repository,
            json_body={"body": body},
        )
        return posted_comment(response, "GitHub")

    # ------------------------------------------------------------------
    #  SourceControlGateway
    # ------------------------------------------------------------------

    async def get_diff(self, target: ReviewTarget) -> str:
        try:
            if target.kind is TargetKind.COMMIT:
                return await self.get_commit_diff(target.repository, target.identifier)
            return await self.get_pr_diff(target.repository, target.identifier)
        except SourceControlError as exc:
            raise DiffFetchError(f"Failed to fetch diff for {target.short_id}: {exc}") from exc

    async def post_comment(self, target: ReviewTarget, body: str) -> dict[str, Any]:
        try:
            if target.kind is TargetKind.COMMIT:
                return await self.post_commit_comment(target.repository, target.identifier, body)
            return await self.post_issue_comment(target.repository, target.identifier, body)
        except SourceControlError as exc:
            raise CommentPostError(f"Failed to post comment for {target.short_id}: {exc}") from exc

    async def has_existing_automated_comment(
        self, repository: RepositoryRef, commit_hash: str
    ) -> bool:
        response = await self._request(
            "GET",
            f"{self._repo_url(repository)}/commits/{commit_hash}/comments",
            repository,
            params={"per_page": 100},
        )
        comments = decode_json(response, "GitHub")
        if not isinstance(comments, list):
            raise SourceControlAPIError("GitHub commit comments response is not a list", status_code=response.status_code)
        return any(isinstance(c, dict) and is_automated_review(c.get("body")) for c in comments)

    def web_url(self, target: ReviewTarget, comment_id: Any = None) -> str:
        base = f"{GITHUB_WEB_BASE}/{target.repository.full_name}"
        if target.kind is TargetKind.COMMIT:
            url = f"{base}/commit/{target.identifier}"
            return f"{url}#commitcomment-{comment_id}" if comment_id is not None else url
        url = f"{base}/pull/{target.identifier}"
        return f"{url}#issuecomment-{comment_id}" if comment_id is not None else url
