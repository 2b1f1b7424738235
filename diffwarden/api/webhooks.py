"""Webhook receivers.

POST /webhook/bitbucket                — Bitbucket Cloud, default workspace
POST /webhook/bitbucket/{workspace}    — Bitbucket Cloud, named workspace
POST /webhook/github                   — GitHub App
POST /webhook/{provider}               — anything else: acknowledged, ignored

Every handler follows the same pattern:
  1. Read raw body (before JSON parsing)
  2. Verify HMAC-SHA256 signature (skipped when no secret is configured)
  3. Parse payload into a ``WebhookDelivery`` and dispatch it,
     waiting for the review to finish
  4. Return 200 with a JSON status body

Apart from a bad signature (403), the response is always 200.  A non-2xx
makes the host resend the same delivery, so failures are reported in the
body instead.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from functools import partial
from typing import Any

from fastapi import APIRouter, Depends, Header, Request

from diffwarden.api.dependencies import get_dispatcher
from diffwarden.config import Settings, get_settings
from diffwarden.core.dispatcher import EventDispatcher
from diffwarden.core.events import WebhookDelivery
from diffwarden.core.payloads import parse_bitbucket_delivery, parse_github_delivery
from diffwarden.core.security import verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def _decode(body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


async def _dispatch(
    dispatcher: EventDispatcher, parse: Callable[[], WebhookDelivery]
) -> dict[str, Any]:
    """Parse and dispatch one delivery; convert any failure into an error body."""
    started = time.monotonic()
    delivery: WebhookDelivery | None = None
    try:
        delivery = parse()
        logger.info(
            "Webhook received",
            extra={
                "provider": delivery.provider,
                "event": delivery.raw_event,
                "delivery_id": delivery.delivery_id,
                "repository": delivery.repository.full_name if delivery.repository else None,
            },
        )
        result = (await dispatcher.dispatch(delivery)).to_dict()
    except Exception as exc:
        logger.exception(
            "Error processing webhook",
            extra={
                "event": delivery.raw_event if delivery else None,
                "delivery_id": delivery.delivery_id if delivery else None,
            },
        )
        result = {"status": "error", "message": "Webhook processing failed", "error": str(exc)}

    result["processing_time"] = round(time.monotonic() - started, 3)
    return result


def _invalid_payload() -> dict[str, Any]:
    logger.warning("Webhook body is not a JSON object — ignoring")
    return {"status": "error", "message": "Invalid JSON payload"}


async def _receive_bitbucket(
    request: Request,
    workspace: str | None,
    x_event_key: str | None,
    x_request_uuid: str | None,
    x_hook_uuid: str | None,
    x_hub_signature: str | None,
    config: Settings,
    dispatcher: EventDispatcher,
) -> dict[str, Any]:
    body = await request.body()
    verify_webhook_signature(body, config.bitbucket_webhook_secret, x_hub_signature)

    payload = _decode(body)
    if payload is None:
        return _invalid_payload()

    return await _dispatch(
        dispatcher,
        partial(
            parse_bitbucket_delivery,
            payload,
            event_key=x_event_key,
            delivery_id=x_request_uuid or x_hook_uuid,
            workspace=workspace,
        ),
    )


@router.post("/webhook/bitbucket", status_code=200)
async def receive_bitbucket_webhook(
    request: Request,
    x_event_key: str | None = Header(default=None),
    x_request_uuid: str | None = Header(default=None),
    x_hook_uuid: str | None = Header(default=None),
    x_hub_signature: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Receive a Bitbucket Cloud event for the workspace named in the payload."""
    return await _receive_bitbucket(
        request, None, x_event_key, x_request_uuid, x_hook_uuid, x_hub_signature, config, dispatcher
    )


@router.post("/webhook/bitbucket/{workspace}", status_code=200)
async def receive_bitbucket_workspace_webhook(
    workspace: str,
    request: Request,
    x_event_key: str | None = Header(default=None),
    x_request_uuid: str | None = Header(default=None),
    x_hook_uuid: str | None = Header(default=None),
    x_hub_signature: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Receive a Bitbucket Cloud event routed to ``workspace``'s credentials."""
    return await _receive_bitbucket(
        request, workspace, x_event_key, x_request_uuid, x_hook_uuid, x_hub_signature, config, dispatcher
    )


@router.post("/webhook/github", status_code=200)
async def receive_github_webhook(
    request: Request,
    x_hub_signature_256: str | None = Header(default=None),
    x_github_event: str | None = Header(default=None),
    x_github_delivery: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Receive a GitHub App event (``pull_request`` and ``push`` are reviewed)."""
    body = await request.body()
    verify_webhook_signature(body, config.github_webhook_secret, x_hub_signature_256)

    payload = _decode(body)
    if payload is None:
        return _invalid_payload()

    return await _dispatch(
        dispatcher, partial(parse_github_delivery, payload, x_github_event, x_github_delivery)
    )


@router.post("/webhook/{provider}", status_code=200)
async def receive_unknown_webhook(provider: str) -> dict[str, str]:
    logger.info("Webhook for unsupported provider %r — ignoring", provider)
    return {"status": "ignored", "message": f"Unsupported provider: {provider}"}
