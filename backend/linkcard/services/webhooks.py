from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Mapping, Optional
from uuid import uuid4

from backend.linkcard.models import EventRecord, WebhookRecord, utc_now

SIGNATURE_HEADER = "X-Linkcard-Signature"
EVENT_HEADER = "X-Linkcard-Event"
EVENT_ID_HEADER = "X-Linkcard-Event-Id"
ATTEMPT_HEADER = "X-Linkcard-Delivery-Attempt"
TEST_EVENT_TYPE = "test"


class SignatureVerificationError(Exception):
    pass


def sign_payload(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name.lower() and value:
            return value.strip()
    return None


def verify_signature(headers: Mapping[str, str], raw_body: bytes, secret: str) -> None:
    """Receiver-side check of a delivery signed by `sign_payload`."""
    signature = _header_value(headers, SIGNATURE_HEADER)
    if not signature:
        raise SignatureVerificationError("missing signature header")
    provided = signature
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided):
        raise SignatureVerificationError("invalid signature")


def event_payload(event: EventRecord) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if event.link_id:
        data["linkId"] = event.link_id
    if event.utm:
        data["utm"] = event.utm.model_dump(exclude_none=True)
    if event.referrer:
        data["referrer"] = event.referrer
    if event.device:
        data["device"] = event.device
    if event.country:
        data["country"] = event.country
    if event.metadata:
        data["metadata"] = event.metadata
    return {
        "id": str(event.id),
        "type": event.event_type.value,
        "profileId": event.profile_id,
        "createdAt": event.created_at.isoformat() + "Z",
        "data": data,
    }


def synthetic_test_payload(webhook: WebhookRecord) -> dict[str, Any]:
    now = utc_now()
    return {
        "id": f"test_{uuid4().hex[:12]}",
        "type": TEST_EVENT_TYPE,
        "profileId": webhook.profile_id,
        "createdAt": now.isoformat() + "Z",
        "data": {
            "webhookId": webhook.id,
            "subscribedEvents": [event_type.value for event_type in webhook.events],
        },
    }


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


def delivery_headers(
    *, secret: str, raw_body: bytes, event_type: str, event_id: str, attempt: int
) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": "linkcard-webhooks/0.1",
        SIGNATURE_HEADER: sign_payload(secret, raw_body),
        EVENT_HEADER: event_type,
        EVENT_ID_HEADER: event_id,
        ATTEMPT_HEADER: str(attempt),
    }
