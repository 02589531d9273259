"""Webhook HTTP client — single signed JSON POST per call."""

import hashlib
import hmac
import json
from typing import Optional

import httpx

from churnpilot.config import get_settings
from churnpilot.exceptions import DispatchError

settings = get_settings()


def sign_payload(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


async def post_json(
    url: str,
    payload: dict,
    secret: Optional[str] = None,
    attempt: int = 1,
) -> int:
    """POST ``payload`` to ``url`` and return the HTTP status.

    Non-2xx responses and transport errors raise DispatchError.
    """
    body = json.dumps(payload, default=str)
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Event": str(payload.get("event", "")),
        "X-Webhook-Delivery-Attempt": str(attempt),
    }
    if secret:
        headers["X-Webhook-Signature-256"] = f"sha256={sign_payload(body, secret)}"

    try:
        async with httpx.AsyncClient(timeout=settings.dispatch_timeout_seconds) as client:
            resp = await client.post(url, content=body, headers=headers)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise DispatchError(f"Webhook transport error: {exc!r}") from exc

    if not 200 <= resp.status_code < 300:
        raise DispatchError(f"Webhook returned HTTP {resp.status_code}", status_code=resp.status_code)
    return resp.status_code
