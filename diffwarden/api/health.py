"""Health-check and service-info endpoints.

Load balancers and uptime checks hit ``/health`` to verify the
application is running and responsive.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

from diffwarden.config import APP_VERSION

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Return ``{"status": "healthy"}`` with the current UTC time and version."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
    }


@router.get("/")
async def root() -> dict[str, object]:
    return {
        "name": "DiffWarden",
        "description": "AI code review for Bitbucket Cloud and GitHub webhooks",
        "version": APP_VERSION,
        "endpoints": {
            "health": "/health",
            "bitbucket_webhook": "/webhook/bitbucket",
            "bitbucket_workspace_webhook": "/webhook/bitbucket/{workspace}",
            "github_webhook": "/webhook/github",
            "cache": "/admin/cache",
            "notification_test": "/admin/notifications/test",
        },
    }
