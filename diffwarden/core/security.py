"""HMAC-SHA256 webhook signature verification.

Both GitHub (``X-Hub-Signature-256``) and Bitbucket Cloud
(``X-Hub-Signature``) sign the raw body as ``sha256=<hex_digest>``.
Uses hmac.compare_digest() for constant-time comparison.

When no secret is configured for a provider, verification is skipped
with a warning so that unsigned deployments keep working.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import HTTPException

logger = logging.getLogger(__name__)


def compute_signature(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature for ``body``."""
    digest = hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(
    body: bytes,
    secret: str,
    signature_header: str | None,
) -> None:
    """Verify the HMAC-SHA256 signature of a webhook body.

    Args:
        body: Raw request body bytes.
        secret: The shared webhook secret. Empty disables verification.
        signature_header: Value of the provider's signature header.

    Raises:
        HTTPException(403): If a secret is configured and the signature is
            missing, malformed, or invalid.
    """
    if not secret:
        logger.warning("Webhook secret not configured — skipping signature validation")
        return

    if not signature_header:
        logger.warning("Webhook rejected: missing signature header")
        raise HTTPException(
            status_code=403,
            detail="Missing webhook signature header",
        )

    if not signature_header.startswith("sha256="):
        logger.warning("Webhook rejected: malformed signature (no sha256= prefix)")
        raise HTTPException(
            status_code=403,
            detail="Invalid signature format — expected sha256= prefix",
        )

    expected_signature = compute_signature(body, secret)

    # Constant-time comparison.
    if not hmac.compare_digest(expected_signature, signature_header):
        logger.warning("Webhook rejected: invalid HMAC signature")
        raise HTTPException(
            status_code=403,
            detail="Invalid webhook signature",
        )
