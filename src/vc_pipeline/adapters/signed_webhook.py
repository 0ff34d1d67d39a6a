"""
Signed webhook parsing — HMAC-SHA256 over the raw request body.

The provider signs the exact bytes it sends and puts the hex digest in the
X-Inji-Signature header, optionally prefixed with "sha256=". Nothing in the
body is trusted until the digest matches.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import UTC, datetime
from typing import Any

from railway import ErrorCode
from railway.result import Result

from vc_pipeline.domain.models import WebhookEvent, utcnow

SIGNATURE_HEADER = "X-Inji-Signature"
_PREFIX = "sha256="


def sign_webhook(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the body, the value a provider puts in the header."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def parse_signed_webhook(
    raw_body: bytes, signature: str | None, secret: str
) -> Result[WebhookEvent]:
    if not secret:
        return Result.failure(ErrorCode.CONFIGURATION_ERROR, "Webhook secret not configured")
    if not signature:
        return Result.failure(ErrorCode.VALIDATION_ERROR, "Webhook signature is required")

    received = signature.strip()
    if received.startswith(_PREFIX):
        received = received[len(_PREFIX):]
    expected = sign_webhook(raw_body, secret)
    if not hmac.compare_digest(expected.encode("ascii"), received.encode("ascii", "replace")):
        return Result.failure(ErrorCode.SIGNATURE_ERROR, "Invalid webhook signature")

    return Result.from_computation(
        lambda: json.loads(raw_body),
        ErrorCode.VALIDATION_ERROR,
        "Invalid webhook payload",
    ).flat_map(_to_event)


def _to_event(body: Any) -> Result[WebhookEvent]:
    if not isinstance(body, dict):
        return Result.failure(ErrorCode.VALIDATION_ERROR, "Webhook payload must be a JSON object")
    vc_id = body.get("vcId")
    status = body.get("status")
    if not vc_id or not status:
        return Result.failure(ErrorCode.VALIDATION_ERROR, "Webhook payload requires vcId and status")
    return Result.success(
        WebhookEvent(
            provider_credential_id=str(vc_id),
            status=str(status),
            timestamp=_parse_timestamp(body.get("timestamp")),
            event_id=body.get("eventId"),
            retrieval_url=body.get("vcUrl"),
            reason=body.get("reason"),
            raw=body,
        )
    )


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return utcnow()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return utcnow()
