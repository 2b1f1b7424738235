"""Shared fixtures and fakes for the DiffWarden test suite."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from diffwarden.core.dedup_cache import DedupCache
from diffwarden.core.dispatcher import EventDispatcher
from diffwarden.core.events import (
    CommitList,
    CommitRef,
    EventType,
    PullRequestRef,
    RepositoryRef,
    ReviewTarget,
    SingleTarget,
    WebhookDelivery,
)
from diffwarden.core.policy import PolicyLookup

SAMPLE_DIFF = (
    "diff --git a/app/service.py b/app/service.py\n"
    "index 1111111..2222222 100644\n"
    "--- a/app/service.py\n"
    "+++ b/app/service.py\n"
    "@@ -1,3 +1,4 @@\n"
    " import os\n"
    "+import sys\n"
    " \n"
    " def main():\n"
    "diff --git a/package-lock.json b/package-lock.json\n"
    "index 3333333..4444444 100644\n"
    "--- a/package-lock.json\n"
    "+++ b/package-lock.json\n"
    "@@ -1 +1 @@\n"
    '-{"lockfileVersion": 2}\n'
    '+{"lockfileVersion": 3}\n'
)

LOCKFILE_ONLY_DIFF = (
    "diff --git a/yarn.lock b/yarn.lock\n"
    "--- a/yarn.lock\n"
    "+++ b/yarn.lock\n"
    "@@ -1 +1 @@\n"
    "-a\n"
    "+b\n"
)

REPO = RepositoryRef(provider="bitbucket", namespace="acme", name="service")


class FakeGateway:
    """Records every call; failures are injected via the ``fail_*`` attributes."""

    def __init__(self, diff: str = SAMPLE_DIFF, existing: bool = False) -> None:
        self.diff = diff
        self.existing = existing
        self.fail_fetch: Exception | None = None
        self.fail_post: Exception | None = None
        self.fail_existing: Exception | None = None
        self.diff_calls: list[ReviewTarget] = []
        self.posts: list[tuple[ReviewTarget, str]] = []
        self.existing_calls: list[str] = []

    @property
    def total_calls(self) -> int:
        return len(self.diff_calls) + len(self.posts) + len(self.existing_calls)

    async def get_diff(self, target: ReviewTarget) -> str:
        self.diff_calls.append(target)
        if self.fail_fetch:
            raise self.fail_fetch
        return self.diff

    async def post_comment(self, target: ReviewTarget, body: str) -> dict[str, Any]:
        self.posts.append((target, body))
        if self.fail_post:
            raise self.fail_post
        return {"id": len(self.posts)}

    async def has_existing_automated_comment(self, repository: RepositoryRef, commit_hash: str) -> bool:
        self.existing_calls.append(commit_hash)
        if self.fail_existing:
            raise self.fail_existing
        return self.existing

    def web_url(self, target: ReviewTarget, comment_id: Any = None) -> str:
        return f"https://scm.example/{target.repository.full_name}/{target.identifier}#{comment_id}"

    async def aclose(self) -> None:
        return None


def make_commit(commit_hash: str, message: str = "Fix bug", author: str = "Jane Doe") -> CommitRef:
    return CommitRef(hash=commit_hash, message=message, author=author)


def push_delivery(
    *hashes: str,
    delivery_id: str | None = "delivery-1",
    repository: RepositoryRef = REPO,
) -> WebhookDelivery:
    """A push with one ``CommitList`` change carrying ``hashes``."""
    return WebhookDelivery(
        provider=repository.provider,
        event_type=EventType.PUSH,
        raw_event="repo:push",
        delivery_id=delivery_id,
        repository=repository,
        push_changes=[CommitList(tuple(make_commit(h) for h in hashes))],
    )


def branch_push_delivery(*hashes: str, delivery_id: str | None = "delivery-1") -> WebhookDelivery:
    """A push where every hash arrives as its own branch-head change."""
    return WebhookDelivery(
        provider="bitbucket",
        event_type=EventType.PUSH,
        raw_event="repo:push",
        delivery_id=delivery_id,
        repository=REPO,
        push_changes=[SingleTarget(make_commit(h)) for h in hashes],
    )


def pr_delivery(
    pr_id: int = 7,
    source_hash: str = "abc123",
    delivery_id: str | None = "pr-delivery-1",
    author: str = "Jane Doe",
) -> WebhookDelivery:
    return WebhookDelivery(
        provider="bitbucket",
        event_type=EventType.PR_CREATED,
        raw_event="pullrequest:created",
        delivery_id=delivery_id,
        repository=REPO,
        pull_request=PullRequestRef(
            id=pr_id,
            title="Add caching",
            description="Adds a cache layer",
            author=author,
            source_hash=source_hash,
        ),
    )


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def engine() -> MagicMock:
    engine = MagicMock()
    engine.review = AsyncMock(return_value="Looks good to me.")
    engine.summarize_pull_request = AsyncMock(return_value="Solid change overall.")
    return engine


@pytest.fixture()
def notifier() -> MagicMock:
    notifier = MagicMock()
    notifier.notify_review = AsyncMock(return_value=True)
    notifier.notify_error = AsyncMock(return_value=True)
    return notifier


@pytest.fixture()
def cache() -> DedupCache:
    return DedupCache()


@pytest.fixture()
def dispatcher(
    cache: DedupCache, gateway: FakeGateway, engine: MagicMock, notifier: MagicMock
) -> EventDispatcher:
    return EventDispatcher(
        cache,
        PolicyLookup(),
        {"bitbucket": gateway, "github": gateway},
        engine,
        notifier,
        time_budget=280.0,
    )
