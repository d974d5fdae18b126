from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import hashlib
import hmac
import time
from typing import Mapping

from tenantplane.core.errors import InvalidSignatureError, MissingWebhookHeadersError


ID_HEADER = "svix-id"
TIMESTAMP_HEADER = "svix-timestamp"
SIGNATURE_HEADER = "svix-signature"
_SECRET_PREFIX = "whsec_"


@dataclass(frozen=True)
class WebhookEnvelope:
    message_id: str
    timestamp: int
    signatures: tuple[str, ...]


def _decode_secret(secret: str) -> bytes:
    raw = secret[len(_SECRET_PREFIX):] if secret.startswith(_SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError) as exc:
        raise InvalidSignatureError("Webhook signing secret is not valid base64") from exc


def build_signature(secret: str, *, message_id: str, timestamp: int, body: bytes) -> str:
    # Signed content is "{id}.{timestamp}.{body}", HMAC-SHA256, base64, tagged with the scheme version.
    signed = f"{message_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_decode_secret(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("utf-8")


def parse_envelope(headers: Mapping[str, str]) -> WebhookEnvelope:
    message_id = headers.get(ID_HEADER)
    raw_timestamp = headers.get(TIMESTAMP_HEADER)
    raw_signature = headers.get(SIGNATURE_HEADER)
    if not message_id or not raw_timestamp or not raw_signature:
        raise MissingWebhookHeadersError("Missing svix-id, svix-timestamp or svix-signature header")
    try:
        timestamp = int(raw_timestamp)
    except ValueError as exc:
        raise InvalidSignatureError("Webhook timestamp is not an integer") from exc
    # Header may carry several space-delimited signatures during secret rotation.
    signatures = tuple(part for part in raw_signature.split(" ") if part)
    return WebhookEnvelope(message_id=message_id, timestamp=timestamp, signatures=signatures)


def verify_webhook(
    *,
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> WebhookEnvelope:
    envelope = parse_envelope(headers)
    current = int(now if now is not None else time.time())
    if abs(current - envelope.timestamp) > tolerance_seconds:
        raise InvalidSignatureError("Webhook timestamp outside tolerance")
    expected = build_signature(
        secret, message_id=envelope.message_id, timestamp=envelope.timestamp, body=body
    )
    for candidate in envelope.signatures:
        if hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
            return envelope
    raise InvalidSignatureError("Webhook signature mismatch")
