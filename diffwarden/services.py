"""Component wiring.

Builds the dispatcher and everything it drives from ``Settings``.  The
lifespan in ``diffwarden.main`` owns the returned ``Services`` and closes
it on shutdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from openai import AsyncOpenAI

from diffwarden.config import Settings
from diffwarden.core.bitbucket_client import BitbucketClient
from diffwarden.core.dedup_cache import DedupCache
from diffwarden.core.dispatcher import EventDispatcher
from diffwarden.core.file_filter import SkipRules
from diffwarden.core.gateway import SourceControlGateway
from diffwarden.core.github_client import GitHubClient
from diffwarden.core.notifier import SlackNotifier
from diffwarden.core.policy import PolicyLookup
from diffwarden.core.review_engine import ReviewEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    cache: DedupCache
    policy: PolicyLookup
    engine: ReviewEngine
    notifier: SlackNotifier
    dispatcher: EventDispatcher
    gateways: dict[str, SourceControlGateway] = field(default_factory=dict)
    llm_client: AsyncOpenAI | None = None

    async def aclose(self) -> None:
        for gateway in self.gateways.values():
            await gateway.aclose()
        await self.notifier.aclose()
        if self.llm_client is not None:
            await self.llm_client.close()


def build_services(settings: Settings) -> Services:
    """Instantiate all long-lived components for one application process."""
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set — reviews will fail")

    cache = DedupCache(retention_seconds=settings.dedup_retention_seconds)
    policy = PolicyLookup()

    # Retries are handled by ReviewEngine so that backoff is observable.
    llm_client = AsyncOpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.llm_request_timeout_seconds,
        max_retries=0,
    )
    engine = ReviewEngine(
        llm_client,
        policy,
        model=settings.openai_model,
        max_completion_tokens=settings.llm_max_completion_tokens,
        summary_max_tokens=settings.llm_summary_max_tokens,
        max_diff_chars=settings.llm_max_diff_chars,
        max_retries=settings.llm_max_retries,
        retry_base_delay=settings.llm_retry_base_delay_seconds,
    )

    gateways: dict[str, SourceControlGateway] = {
        "bitbucket": BitbucketClient(
            settings.workspace_credentials,
            default_workspace=settings.bitbucket_workspace,
        ),
        "github": GitHubClient(
            settings.github_app_id,
            private_key_loader=lambda: settings.github_private_key,
        ),
    }
    notifier = SlackNotifier(settings.slack_webhook_url)

    dispatcher = EventDispatcher(
        cache,
        policy,
        gateways,
        engine,
        notifier,
        skip_rules=SkipRules(
            extensions=tuple(settings.skip_extension_list),
            paths=tuple(settings.skip_path_list),
            patterns=tuple(settings.skip_pattern_list),
        ),
        allowed_workspaces=settings.allowed_workspaces,
        time_budget=settings.review_time_budget_seconds or None,
        batch_size=settings.review_batch_size,
        batch_delay=settings.review_batch_delay_seconds,
    )
    logger.info(
        "Services initialised",
        extra={
            "model": settings.openai_model,
            "time_budget": settings.review_time_budget_seconds,
            "dedup_retention": settings.dedup_retention_seconds,
            "slack_enabled": notifier.enabled,
        },
    )
    return Services(
        cache=cache,
        policy=policy,
        engine=engine,
        notifier=notifier,
        dispatcher=dispatcher,
        gateways=gateways,
        llm_client=llm_client,
    )
