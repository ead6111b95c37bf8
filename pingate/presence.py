"""Presence tokens: short-lived, server-signed proof of being inside a geofence.

Wire format is ``base64(JSON)`` where the JSON object carries
``device_session_id``, ``location_id``, ``location_slug``, ``issued_at_ms``,
``accuracy_m`` and ``signature``. The signature is the hex HMAC-SHA256 of the
canonical JSON encoding (sorted keys, no whitespace) of the other five fields.

Tokens are never stored. Verification needs only the secret and a clock, and it
never raises: callers always get a ``PresenceCheck`` back.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_S = 120

REASON_MALFORMED = "malformed"
REASON_EXPIRED = "expired"
REASON_BAD_SIGNATURE = "bad_signature"

_PAYLOAD_FIELDS = ("device_session_id", "location_id", "location_slug", "issued_at_ms", "accuracy_m")


@dataclass(frozen=True)
class PresencePayload:
    device_session_id: str
    location_id: str
    location_slug: str
    issued_at_ms: int
    accuracy_m: float

    def as_dict(self) -> Dict[str, Any]:
        return {field: getattr(self, field) for field in _PAYLOAD_FIELDS}


@dataclass(frozen=True)
class PresenceCheck:
    valid: bool
    payload: Optional[PresencePayload] = None
    reason: Optional[str] = None

    @property
    def message(self) -> str:
        if self.valid:
            return "ok"
        return {
            REASON_EXPIRED: "Presence token expired. Please refresh your location.",
            REASON_BAD_SIGNATURE: "Invalid presence token signature.",
        }.get(self.reason, "Invalid presence token format.")


def _now_ms() -> int:
    return int(time.time() * 1000)


def canonical_encoding(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


class PresenceTokenService:
    """Issues and verifies presence tokens under one server secret."""

    def __init__(self, secret: str, ttl_s: int = DEFAULT_TTL_S):
        if not secret:
            raise ValueError("PRESENCE_TOKEN_SECRET is required to issue presence tokens")
        self._secret = secret.encode("utf-8")
        self.ttl_ms = int(ttl_s) * 1000

    def _sign(self, payload: Dict[str, Any]) -> str:
        return hmac.new(self._secret, canonical_encoding(payload), hashlib.sha256).hexdigest()

    def issue(
        self,
        device_session_id: str,
        location_id: str,
        location_slug: str,
        accuracy_m: float,
        now_ms: Optional[int] = None,
    ) -> str:
        payload = PresencePayload(
            device_session_id=device_session_id,
            location_id=location_id,
            location_slug=location_slug,
            issued_at_ms=_now_ms() if now_ms is None else int(now_ms),
            accuracy_m=accuracy_m,
        ).as_dict()
        token = dict(payload, signature=self._sign(payload))
        return base64.b64encode(json.dumps(token, separators=(",", ":")).encode("utf-8")).decode("ascii")

    def verify(self, token: Optional[str], now_ms: Optional[int] = None) -> PresenceCheck:
        payload = _decode(token)
        if payload is None:
            return PresenceCheck(valid=False, reason=REASON_MALFORMED)

        signature = payload.pop("signature")
        if not hmac.compare_digest(self._sign(payload).encode("ascii"), signature.encode("utf-8")):
            return PresenceCheck(valid=False, reason=REASON_BAD_SIGNATURE)

        now_ms = _now_ms() if now_ms is None else int(now_ms)
        if now_ms - payload["issued_at_ms"] >= self.ttl_ms:
            return PresenceCheck(valid=False, reason=REASON_EXPIRED)

        return PresenceCheck(valid=True, payload=PresencePayload(**payload))


def _decode(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode and shape-check a token; ``None`` means malformed."""
    if not token or not isinstance(token, str):
        return None
    try:
        raw = json.loads(base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None

    if not isinstance(raw, dict) or set(raw) != set(_PAYLOAD_FIELDS) | {"signature"}:
        return None
    if not all(isinstance(raw[f], str) for f in ("device_session_id", "location_id", "location_slug", "signature")):
        return None
    if isinstance(raw["issued_at_ms"], bool) or not isinstance(raw["issued_at_ms"], int):
        return None
    if isinstance(raw["accuracy_m"], bool) or not isinstance(raw["accuracy_m"], (int, float)):
        return None
    return raw
