"""Security helpers for inbound webhook endpoints."""

from __future__ import annotations

import hashlib
import hmac

from fastapi import HTTPException, Request

from .config import settings

SIGNATURE_HEADER = "x-thinkific-hmac-sha256"


def _extract_token(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()

    return (
        request.headers.get("x-api-key", "").strip()
        or request.headers.get("x-ledger-api-key", "").strip()
    )


def sign_body(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of a raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_request(request: Request, body: bytes) -> None:
    """Verify webhook auth using HMAC signature or API key."""
    signing_secret = settings.webhook_signing_secret.strip()
    api_key = settings.webhook_api_key.strip()

    # Prefer HMAC verification when configured.
    if signing_secret:
        provided = request.headers.get(SIGNATURE_HEADER, "").strip()
        if not provided:
            raise HTTPException(status_code=401, detail="Missing webhook signature header")
        if provided.startswith("sha256="):
            provided = provided.split("=", 1)[1]

        expected = sign_body(signing_secret, body)
        if not hmac.compare_digest(provided.lower(), expected):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return

    # Fallback: API key if configured.
    if api_key:
        provided = _extract_token(request)
        if not provided or not hmac.compare_digest(provided, api_key):
            raise HTTPException(status_code=401, detail="Invalid webhook API key")
