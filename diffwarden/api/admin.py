"""Admin endpoints for basic observability.

Protected by the ``X-Admin-Secret`` header when ``ADMIN_SECRET`` is set.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from diffwarden.api.dependencies import get_dedup_cache, get_notifier, require_admin
from diffwarden.core.dedup_cache import DedupCache
from diffwarden.core.notifier import SlackNotifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/cache")
async def cache_stats(cache: DedupCache = Depends(get_dedup_cache)) -> dict[str, Any]:
    """Return dedup cache sizes and per-entry state and age."""
    return cache.stats()


@router.delete("/cache")
async def clear_cache(cache: DedupCache = Depends(get_dedup_cache)) -> dict[str, str]:
    """Forget every in-flight / completed target and admitted delivery."""
    cache.clear()
    logger.warning("Dedup cache cleared via admin endpoint")
    return {"status": "cleared"}


@router.post("/notifications/test")
async def test_notifications(notifier: SlackNotifier = Depends(get_notifier)) -> dict[str, Any]:
    return await notifier.test_connection()
