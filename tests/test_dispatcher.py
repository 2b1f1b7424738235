"""Tests for the EventDispatcher — dedup gates, failure compensation, routing.

Covers:
- Happy path: fetch → filter → review → post → completed → notify
- Same hash twice in one push → one fetch, one post
- Redelivered webhook (same delivery id) → zero gateway calls, even mid-flight
- Separate delivery for an already-reviewed commit → skipped at claim
- Existing remote review → completed without fetching
- Fetch / post failures → entry removed, error notified, remaining targets aborted
- Failures after the post (chat notification, comment link) → entry stays completed
- Policy-disabled repository and workspace allowlist
- Pull requests keyed per revision, with summary
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import (
    LOCKFILE_ONLY_DIFF,
    REPO,
    FakeGateway,
    branch_push_delivery,
    pr_delivery,
    push_delivery,
)
from diffwarden.core.dedup_cache import DedupCache, ProcessingState
from diffwarden.core.dispatcher import DispatchStatus, EventDispatcher, TargetStatus
from diffwarden.core.events import EventType, RepositoryRef, WebhookDelivery
from diffwarden.core.exceptions import (
    CommentPostError,
    DiffFetchError,
    LLMError,
    SourceControlAPIError,
)
from diffwarden.core.policy import PolicyLookup

HASH_A = "a" * 40
HASH_B = "b" * 40


# =============================================================================
#  Happy path
# =============================================================================


class TestCommitReview:
    async def test_reviews_and_posts_once(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, cache: DedupCache
    ) -> None:
        result = await dispatcher.dispatch(push_delivery(HASH_A))

        assert result.status is DispatchStatus.PROCESSED
        assert [t.status for t in result.targets] == [TargetStatus.REVIEWED]
        assert len(gateway.diff_calls) == 1
        assert len(gateway.posts) == 1
        assert cache.state_of(REPO.full_name, HASH_A) is ProcessingState.COMPLETED

    async def test_generated_files_are_not_sent_to_llm(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, engine: MagicMock
    ) -> None:
        result = await dispatcher.dispatch(push_delivery(HASH_A))

        assert engine.review.await_count == 1
        assert engine.review.await_args.args[1] == "app/service.py"
        assert result.targets[0].files_reviewed == 1
        body = gateway.posts[0][1]
        assert "app/service.py" in body
        assert "1 files skipped" in body

    async def test_success_notifies_with_comment_link(
        self, dispatcher: EventDispatcher, notifier: MagicMock
    ) -> None:
        await dispatcher.dispatch(push_delivery(HASH_A))

        notifier.notify_review.assert_awaited_once()
        notification = notifier.notify_review.await_args.args[0]
        assert notification.repository == "acme/service"
        assert notification.identifier == HASH_A[:7]
        assert notification.url.endswith("#1")
        notifier.notify_error.assert_not_awaited()

    async def test_per_file_llm_failure_still_posts(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, engine: MagicMock, cache: DedupCache
    ) -> None:
        engine.review.side_effect = LLMError("model overloaded")

        await dispatcher.dispatch(push_delivery(HASH_A))

        assert len(gateway.posts) == 1
        assert "Review failed: model overloaded" in gateway.posts[0][1]
        assert cache.state_of(REPO.full_name, HASH_A) is ProcessingState.COMPLETED

    async def test_no_reviewable_files_completes_without_post(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, engine: MagicMock, cache: DedupCache
    ) -> None:
        gateway.diff = LOCKFILE_ONLY_DIFF

        result = await dispatcher.dispatch(push_delivery(HASH_A))

        assert result.targets[0].status is TargetStatus.NO_FILES
        assert gateway.posts == []
        engine.review.assert_not_awaited()
        assert cache.state_of(REPO.full_name, HASH_A) is ProcessingState.COMPLETED

    async def test_repository_skip_paths_apply(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, engine: MagicMock
    ) -> None:
        gateway.diff = (
            "diff --git a/tests/test_api.py b/tests/test_api.py\n"
            "@@ -1 +1 @@\n-a\n+b\n"
            "diff --git a/api/routes.py b/api/routes.py\n"
            "@@ -1 +1 @@\n-a\n+b\n"
        )
        repo = RepositoryRef(provider="bitbucket", namespace="acme", name="backend-api")

        await dispatcher.dispatch(push_delivery(HASH_A, repository=repo))

        reviewed = [call.args[1] for call in engine.review.await_args_list]
        assert reviewed == ["api/routes.py"]

    async def test_review_guidance_and_author_passed_to_engine(
        self, dispatcher: EventDispatcher, engine: MagicMock
    ) -> None:
        await dispatcher.dispatch(push_delivery(HASH_A))

        call = engine.review.await_args
        assert call.args[2] == "Fix bug"
        assert call.args[3] == "Jane Doe"
        assert call.kwargs["guidance"].startswith("Please review this code focusing on:")

    async def test_batch_mode_when_no_time_budget(
        self, cache: DedupCache, gateway: FakeGateway, engine: MagicMock, notifier: MagicMock
    ) -> None:
        dispatcher = EventDispatcher(
            cache,
            PolicyLookup(),
            {"bitbucket": gateway},
            engine,
            notifier,
            time_budget=None,
            batch_size=2,
            batch_delay=0,
        )

        result = await dispatcher.dispatch(push_delivery(HASH_A))

        assert result.targets[0].status is TargetStatus.REVIEWED
        assert len(gateway.posts) == 1


# =============================================================================
#  Duplicate suppression
# =============================================================================


class TestDuplicateSuppression:
    async def test_same_hash_twice_in_one_push(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        result = await dispatcher.dispatch(branch_push_delivery(HASH_A, HASH_A))

        assert len(gateway.diff_calls) == 1
        assert len(gateway.posts) == 1
        assert [t.status for t in result.targets] == [TargetStatus.REVIEWED, TargetStatus.DUPLICATE]
        assert result.targets[1].reason == "duplicate in same delivery"

    async def test_same_hash_twice_without_delivery_id(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        await dispatcher.dispatch(branch_push_delivery(HASH_A, HASH_A, delivery_id=None))

        assert len(gateway.diff_calls) == 1
        assert len(gateway.posts) == 1

    async def test_redelivery_after_completion_makes_no_gateway_calls(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        await dispatcher.dispatch(push_delivery(HASH_A))
        calls_before = gateway.total_calls

        result = await dispatcher.dispatch(push_delivery(HASH_A))

        assert gateway.total_calls == calls_before
        assert result.targets[0].status is TargetStatus.DUPLICATE
        assert result.targets[0].reason == "duplicate webhook delivery"

    async def test_redelivery_while_in_flight_makes_no_gateway_calls(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        release = asyncio.Event()
        fetch_started = asyncio.Event()
        original_get_diff = gateway.get_diff

        async def slow_get_diff(target):
            fetch_started.set()
            await release.wait()
            return await original_get_diff(target)

        gateway.get_diff = slow_get_diff  # type: ignore[method-assign]

        first = asyncio.create_task(dispatcher.dispatch(push_delivery(HASH_A)))
        await fetch_started.wait()
        existing_calls = len(gateway.existing_calls)

        second = await dispatcher.dispatch(push_delivery(HASH_A))

        assert second.targets[0].status is TargetStatus.DUPLICATE
        assert len(gateway.existing_calls) == existing_calls
        assert gateway.posts == []

        release.set()
        await first
        assert len(gateway.posts) == 1

    async def test_new_delivery_for_completed_commit_is_skipped(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        await dispatcher.dispatch(push_delivery(HASH_A, delivery_id="d-1"))
        calls_before = gateway.total_calls

        result = await dispatcher.dispatch(push_delivery(HASH_A, delivery_id="d-2"))

        assert gateway.total_calls == calls_before
        assert result.targets[0].reason == "already processing or processed"

    async def test_existing_remote_review_marks_completed(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, cache: DedupCache
    ) -> None:
        gateway.existing = True

        result = await dispatcher.dispatch(push_delivery(HASH_A))

        assert result.targets[0].status is TargetStatus.ALREADY_REVIEWED
        assert gateway.diff_calls == []
        assert gateway.posts == []
        assert cache.state_of(REPO.full_name, HASH_A) is ProcessingState.COMPLETED

    async def test_failed_remote_check_proceeds(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        gateway.fail_existing = SourceControlAPIError("boom", status_code=500)

        result = await dispatcher.dispatch(push_delivery(HASH_A))

        assert result.targets[0].status is TargetStatus.REVIEWED
        assert len(gateway.posts) == 1

    async def test_unexpected_remote_check_error_proceeds(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, cache: DedupCache
    ) -> None:
        gateway.fail_existing = ValueError("comments page is not JSON")

        result = await dispatcher.dispatch(push_delivery(HASH_A, delivery_id="d-1"))

        assert result.targets[0].status is TargetStatus.REVIEWED
        assert len(gateway.posts) == 1
        assert cache.state_of(REPO.full_name, HASH_A) is ProcessingState.COMPLETED


# =============================================================================
#  Failure compensation
# =============================================================================


class TestFailureHandling:
    async def test_post_failure_removes_entry_and_notifies(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, cache: DedupCache, notifier: MagicMock
    ) -> None:
        gateway.fail_post = CommentPostError("HTTP 500")

        with pytest.raises(CommentPostError):
            await dispatcher.dispatch(push_delivery(HASH_A))

        assert cache.state_of(REPO.full_name, HASH_A) is None
        notifier.notify_error.assert_awaited_once()
        notifier.notify_review.assert_not_awaited()

    async def test_retry_after_post_failure_reviews_again(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        gateway.fail_post = CommentPostError("HTTP 500")
        with pytest.raises(CommentPostError):
            await dispatcher.dispatch(push_delivery(HASH_A, delivery_id="d-1"))

        gateway.fail_post = None
        result = await dispatcher.dispatch(push_delivery(HASH_A, delivery_id="d-2"))

        assert result.targets[0].status is TargetStatus.REVIEWED
        assert len(gateway.posts) == 2

    async def test_fetch_failure_removes_entry(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, cache: DedupCache, engine: MagicMock
    ) -> None:
        gateway.fail_fetch = DiffFetchError("404")

        with pytest.raises(DiffFetchError):
            await dispatcher.dispatch(push_delivery(HASH_A))

        assert cache.state_of(REPO.full_name, HASH_A) is None
        assert gateway.posts == []
        engine.review.assert_not_awaited()

    async def test_failure_aborts_remaining_commits(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, cache: DedupCache
    ) -> None:
        gateway.fail_fetch = DiffFetchError("404")

        with pytest.raises(DiffFetchError):
            await dispatcher.dispatch(push_delivery(HASH_A, HASH_B))

        assert [t.identifier for t in gateway.diff_calls] == [HASH_A]
        assert cache.state_of(REPO.full_name, HASH_B) is None

    async def test_notification_failure_keeps_completed_entry(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, cache: DedupCache, notifier: MagicMock
    ) -> None:
        notifier.notify_review.side_effect = RuntimeError("chat webhook exploded")

        result = await dispatcher.dispatch(pr_delivery(delivery_id="p-1"))
        again = await dispatcher.dispatch(pr_delivery(delivery_id="p-2"))

        assert result.targets[0].status is TargetStatus.REVIEWED
        assert again.targets[0].status is TargetStatus.DUPLICATE
        assert len(gateway.posts) == 1
        assert cache.state_of(REPO.full_name, "pr:7@abc123") is ProcessingState.COMPLETED
        notifier.notify_error.assert_not_awaited()

    async def test_comment_link_failure_keeps_completed_entry(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, cache: DedupCache, notifier: MagicMock
    ) -> None:
        gateway.web_url = MagicMock(side_effect=KeyError("id"))

        result = await dispatcher.dispatch(push_delivery(HASH_A))

        assert result.targets[0].status is TargetStatus.REVIEWED
        assert cache.state_of(REPO.full_name, HASH_A) is ProcessingState.COMPLETED
        notifier.notify_review.assert_not_awaited()
        notifier.notify_error.assert_not_awaited()


# =============================================================================
#  Routing and policy
# =============================================================================


class TestRouting:
    async def test_disabled_repository_skipped(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        repo = RepositoryRef(provider="bitbucket", namespace="acme", name="documentation")

        result = await dispatcher.dispatch(push_delivery(HASH_A, repository=repo))

        assert result.status is DispatchStatus.SKIPPED
        assert gateway.total_calls == 0

    async def test_workspace_outside_allowlist_skipped(
        self, cache: DedupCache, gateway: FakeGateway, engine: MagicMock, notifier: MagicMock
    ) -> None:
        dispatcher = EventDispatcher(
            cache,
            PolicyLookup(),
            {"bitbucket": gateway},
            engine,
            notifier,
            allowed_workspaces=frozenset({"other"}),
        )

        result = await dispatcher.dispatch(push_delivery(HASH_A))

        assert result.status is DispatchStatus.SKIPPED
        assert gateway.total_calls == 0

    async def test_unhandled_event_ignored(self, dispatcher: EventDispatcher, gateway: FakeGateway) -> None:
        delivery = WebhookDelivery(
            provider="bitbucket",
            event_type=EventType.OTHER,
            raw_event="repo:fork",
            delivery_id="d-1",
            repository=REPO,
        )

        result = await dispatcher.dispatch(delivery)

        assert result.status is DispatchStatus.IGNORED
        assert gateway.total_calls == 0

    async def test_pull_request_event_without_pull_request_ignored(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        delivery = WebhookDelivery(
            provider="bitbucket",
            event_type=EventType.PR_CREATED,
            raw_event="pullrequest:created",
            delivery_id="d-1",
            repository=REPO,
        )

        result = await dispatcher.dispatch(delivery)

        assert result.status is DispatchStatus.IGNORED
        assert gateway.total_calls == 0

    async def test_missing_repository_ignored(self, dispatcher: EventDispatcher) -> None:
        delivery = WebhookDelivery(
            provider="bitbucket",
            event_type=EventType.PUSH,
            raw_event="repo:push",
            delivery_id="d-1",
            repository=None,
        )

        result = await dispatcher.dispatch(delivery)

        assert result.status is DispatchStatus.IGNORED

    async def test_push_without_commits(self, dispatcher: EventDispatcher, gateway: FakeGateway) -> None:
        delivery = WebhookDelivery(
            provider="bitbucket",
            event_type=EventType.PUSH,
            raw_event="repo:push",
            delivery_id="d-1",
            repository=REPO,
        )

        result = await dispatcher.dispatch(delivery)

        assert result.message == "No changes found"
        assert gateway.total_calls == 0


# =============================================================================
#  Pull requests
# =============================================================================


class TestPullRequestReview:
    async def test_reviews_pull_request_with_summary(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, engine: MagicMock, cache: DedupCache
    ) -> None:
        result = await dispatcher.dispatch(pr_delivery())

        assert result.targets[0].status is TargetStatus.REVIEWED
        engine.summarize_pull_request.assert_awaited_once()
        body = gateway.posts[0][1]
        assert "Overall Assessment" in body
        assert "Solid change overall." in body
        assert cache.state_of(REPO.full_name, "pr:7@abc123") is ProcessingState.COMPLETED

    async def test_pull_request_skips_remote_check(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        await dispatcher.dispatch(pr_delivery())

        assert gateway.existing_calls == []

    async def test_same_revision_reviewed_once(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        await dispatcher.dispatch(pr_delivery(delivery_id="p-1"))
        await dispatcher.dispatch(pr_delivery(delivery_id="p-2"))

        assert len(gateway.posts) == 1

    async def test_new_revision_reviewed_again(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        await dispatcher.dispatch(pr_delivery(source_hash="abc123", delivery_id="p-1"))
        await dispatcher.dispatch(pr_delivery(source_hash="def456", delivery_id="p-2"))

        assert len(gateway.posts) == 2

    async def test_pull_request_without_revision_released_after_post(
        self, dispatcher: EventDispatcher, cache: DedupCache
    ) -> None:
        await dispatcher.dispatch(pr_delivery(source_hash=""))

        assert cache.state_of(REPO.full_name, "pr:7") is None

    async def test_summary_failure_degrades(
        self, dispatcher: EventDispatcher, gateway: FakeGateway, engine: MagicMock
    ) -> None:
        engine.summarize_pull_request = AsyncMock(side_effect=LLMError("timeout"))

        result = await dispatcher.dispatch(pr_delivery())

        assert result.targets[0].status is TargetStatus.REVIEWED
        assert "Summary unavailable: timeout" in gateway.posts[0][1]

    async def test_korean_author_gets_korean_comment(
        self, dispatcher: EventDispatcher, gateway: FakeGateway
    ) -> None:
        await dispatcher.dispatch(pr_delivery(author="fred"))

        assert "자동 코드 리뷰" in gateway.posts[0][1]
