"""FastAPI dependency providers over ``app.state``.

Tests replace these through ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request

from diffwarden.config import Settings, get_settings
from diffwarden.core.dedup_cache import DedupCache
from diffwarden.core.dispatcher import EventDispatcher
from diffwarden.core.notifier import SlackNotifier
from diffwarden.services import Services


def get_services(request: Request) -> Services:
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


def get_dispatcher(services: Services = Depends(get_services)) -> EventDispatcher:
    return services.dispatcher


def get_dedup_cache(services: Services = Depends(get_services)) -> DedupCache:
    return services.cache


def get_notifier(services: Services = Depends(get_services)) -> SlackNotifier:
    return services.notifier


def require_admin(
    x_admin_secret: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
) -> None:
    """Reject admin calls without the shared secret, when one is configured."""
    if config.admin_secret and x_admin_secret != config.admin_secret:
        raise HTTPException(status_code=401, detail="Invalid admin secret")
