"""
LNURL-auth (LUD-04) relying-party side.

A challenge is 32 random bytes (``k1``) bound to a device session. The wallet
signs the raw ``k1`` with its linking key and calls back with
``(k1, sig, key)``. A verified challenge links the device session to a
persistent identity keyed by the linking key. Challenges are single-use.
"""

import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from bech32 import CHARSET, bech32_encode, bech32_verify_checksum, convertbits
from coincurve import PublicKey
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pingate.audit_logger import get_audit_logger
from pingate.errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from pingate.models import DeviceSession, LnurlChallenge, LnurlDeviceLink, LnurlIdentity, utc_now

logger = logging.getLogger(__name__)

LINKING_KEY_PATTERN = re.compile(r"^0[23][0-9a-fA-F]{64}$")
DISPLAY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,30}$")
RESERVED_NAME_PREFIX = "anon"


# ----------------- encoding -----------------
def encode_lnurl(url: str) -> str:
    return bech32_encode("lnurl", convertbits(url.encode("utf-8"), 8, 5))


def decode_lnurl(lnurl: str) -> Optional[str]:
    # bech32_decode rejects anything over 90 characters, which rules out real LNURLs
    hrp, _, encoded = lnurl.strip().lower().rpartition("1")
    if hrp != "lnurl" or len(encoded) < 6 or any(c not in CHARSET for c in encoded):
        return None
    data = [CHARSET.find(c) for c in encoded]
    if not bech32_verify_checksum(hrp, data):
        return None
    raw = convertbits(data[:-6], 5, 8, False)
    return bytes(raw).decode("utf-8") if raw is not None else None


# ----------------- keys, signatures, names -----------------
def is_valid_linking_key(key: Optional[str]) -> bool:
    """Compressed secp256k1 public key: 33 bytes, leading 0x02 or 0x03."""
    return isinstance(key, str) and bool(LINKING_KEY_PATTERN.match(key))


def verify_signature(k1_hex: str, sig_hex: str, key_hex: str) -> bool:
    """DER-encoded ECDSA signature over the raw 32-byte k1."""
    try:
        k1 = bytes.fromhex(k1_hex)
        sig = bytes.fromhex(sig_hex)
        pub = PublicKey(bytes.fromhex(key_hex))
    except ValueError as e:
        logger.debug(f"LNURL-auth input rejected: {e}")
        return False
    if len(k1) != 32:
        return False
    try:
        return pub.verify(sig, k1, hasher=None)
    except ValueError as e:
        # unparseable DER
        logger.debug(f"LNURL-auth signature rejected: {e}")
        return False


def anon_nym(linking_key: str) -> str:
    return f"anon-{hashlib.sha256(linking_key.encode('utf-8')).hexdigest()[:6].upper()}"


def device_nym(device_session_id: str) -> str:
    return f"anon-{hashlib.sha256(device_session_id.encode('utf-8')).hexdigest()[:6]}"


def format_author_nym(identity: Optional[LnurlIdentity], device_session_id: Optional[str] = None) -> str:
    if identity is not None:
        return identity.display_name or identity.anon_nym
    if device_session_id:
        return device_nym(device_session_id)
    return "anon"


def is_valid_display_name(name) -> bool:
    if not isinstance(name, str) or not DISPLAY_NAME_PATTERN.match(name):
        return False
    if name.startswith("_") or name.endswith("_"):
        return False
    return not name.lower().startswith(RESERVED_NAME_PREFIX)


def sanitize_display_name(name: str) -> str:
    return re.sub(r"[^a-z0-9_]", "", name.strip().lower())


def identity_to_dict(identity: LnurlIdentity) -> Dict[str, Any]:
    return {
        "id": identity.id,
        "linking_key": identity.linking_key,
        "anon_nym": identity.anon_nym,
        "display_name": identity.display_name,
        "nym": format_author_nym(identity),
        "created_at": identity.created_at.isoformat() if identity.created_at else None,
        "last_auth_at": identity.last_auth_at.isoformat() if identity.last_auth_at else None,
    }


class LnurlAuthService:
    def __init__(self, config: Mapping[str, Any]):
        self.enabled = config.get("FEATURE_LNURL_AUTH", True)
        self.base_url = config.get("PUBLIC_BASE_URL", "http://localhost:5000").rstrip("/")
        self.ttl = timedelta(seconds=config.get("LNURL_CHALLENGE_TTL_S", 300))

    def require_enabled(self) -> None:
        if not self.enabled:
            raise Forbidden("LNURL-auth feature is not enabled")

    def callback_url(self, k1: str) -> str:
        return f"{self.base_url}/api/lnurl/callback?tag=login&k1={k1}&action=login"

    def create_challenge(
        self, session: Session, device_session_id: Optional[str], now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Issue a fresh k1 for a device session.

        Raises:
            Forbidden: feature disabled
            NotFound: unknown device session
        """
        self.require_enabled()
        if not device_session_id or session.get(DeviceSession, device_session_id) is None:
            raise NotFound("Device session not found")

        now = now or utc_now()
        k1 = secrets.token_hex(32)
        challenge = LnurlChallenge(
            k1=k1, device_session_id=device_session_id, status="pending", created_at=now, expires_at=now + self.ttl
        )
        session.add(challenge)
        session.flush()

        url = self.callback_url(k1)
        get_audit_logger().log_event("lnurl.challenge_created", device_session_id=device_session_id)
        return {"k1": k1, "lnurl": encode_lnurl(url), "callback_url": url, "expires_at": challenge.expires_at.isoformat()}

    def _expire(self, session: Session, challenge: LnurlChallenge) -> None:
        session.query(LnurlChallenge).filter(
            LnurlChallenge.id == challenge.id, LnurlChallenge.status == "pending"
        ).update({LnurlChallenge.status: "expired"}, synchronize_session=False)
        session.expire(challenge)

    def verify(
        self, session: Session, k1: Optional[str], sig: Optional[str], key: Optional[str], now: Optional[datetime] = None
    ) -> LnurlIdentity:
        """
        Check a wallet callback and link the wallet's identity to the challenge's device.

        Raises:
            Forbidden: feature disabled
            NotFound: no challenge for k1
            Unauthorized: challenge used or expired, or the signature does not verify
            ValidationError: malformed linking key
        """
        self.require_enabled()
        now = now or utc_now()
        audit = get_audit_logger()

        challenge = session.query(LnurlChallenge).filter(LnurlChallenge.k1 == k1).first() if k1 else None
        if challenge is None:
            raise NotFound("Challenge not found or expired")
        if challenge.status != "pending":
            raise Unauthorized("Challenge already used or expired")
        if challenge.expires_at <= now:
            self._expire(session, challenge)
            # keep the expiry even though the request fails
            session.commit()
            raise Unauthorized("Challenge has expired")

        if not is_valid_linking_key(key):
            raise ValidationError("Invalid linking key format")
        key = key.lower()

        if not sig or not verify_signature(k1, sig, key):
            audit.log_signature_verification(key, False, "lnurl-auth")
            raise Unauthorized("Signature verification failed")

        claimed = (
            session.query(LnurlChallenge)
            .filter(LnurlChallenge.id == challenge.id, LnurlChallenge.status == "pending")
            .update(
                {LnurlChallenge.status: "verified", LnurlChallenge.verified_at: now, LnurlChallenge.linking_key: key},
                synchronize_session=False,
            )
        )
        if claimed != 1:
            raise Unauthorized("Challenge already used or expired")

        identity = self._find_or_create_identity(session, key, now)
        self._link_device(session, identity, challenge.device_session_id, now)
        session.expire(challenge)

        audit.log_signature_verification(key, True, "lnurl-auth")
        logger.info(f"LNURL-auth verified for {identity.anon_nym} on device {challenge.device_session_id[:8]}...")
        return identity

    @staticmethod
    def _find_or_create_identity(session: Session, key: str, now: datetime) -> LnurlIdentity:
        identity = session.query(LnurlIdentity).filter(LnurlIdentity.linking_key == key).first()
        if identity is None:
            try:
                with session.begin_nested():
                    identity = LnurlIdentity(linking_key=key, anon_nym=anon_nym(key), created_at=now, last_auth_at=now)
                    session.add(identity)
            except IntegrityError:
                # another callback created it first
                identity = session.query(LnurlIdentity).filter(LnurlIdentity.linking_key == key).one()
        identity.last_auth_at = now
        return identity

    @staticmethod
    def _link_device(session: Session, identity: LnurlIdentity, device_session_id: str, now: datetime) -> None:
        link = (
            session.query(LnurlDeviceLink)
            .filter(LnurlDeviceLink.identity_id == identity.id, LnurlDeviceLink.device_session_id == device_session_id)
            .first()
        )
        if link is None:
            session.add(LnurlDeviceLink(identity_id=identity.id, device_session_id=device_session_id, created_at=now))
        else:
            link.last_used_at = now

        device = session.get(DeviceSession, device_session_id)
        device.lnurl_identity_id = identity.id
        session.flush()

    def get_challenge_status(self, session: Session, k1: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Polling view of a challenge. Expiry is applied lazily here too."""
        now = now or utc_now()
        challenge = session.query(LnurlChallenge).filter(LnurlChallenge.k1 == k1).first() if k1 else None
        if challenge is None:
            raise NotFound("Challenge not found")

        if challenge.status == "pending" and challenge.expires_at <= now:
            self._expire(session, challenge)

        result: Dict[str, Any] = {"status": challenge.status, "expires_at": challenge.expires_at.isoformat()}
        if challenge.status == "verified":
            identity = self.get_identity(session, challenge.device_session_id)
            result["identity"] = identity_to_dict(identity) if identity else None
        return result

    @staticmethod
    def get_identity(session: Session, device_session_id: str) -> Optional[LnurlIdentity]:
        device = session.get(DeviceSession, device_session_id) if device_session_id else None
        if device is None:
            raise NotFound("Device session not found")
        if not device.lnurl_identity_id:
            return None
        return session.get(LnurlIdentity, device.lnurl_identity_id)

    def update_display_name(self, session: Session, device_session_id: str, display_name) -> LnurlIdentity:
        """
        Set or clear (``None`` or empty string) the identity's display name.

        Raises:
            ValidationError: no linked identity, or the name breaks the naming rules
            Conflict: name taken by another identity
        """
        self.require_enabled()
        identity = self.get_identity(session, device_session_id)
        if identity is None:
            raise ValidationError("No identity linked to this device")

        if display_name is None or display_name == "":
            identity.display_name = None
            session.flush()
            return identity

        if not is_valid_display_name(display_name):
            raise ValidationError("Invalid display name. Use 1-30 characters, alphanumeric and underscores only.")
        name = sanitize_display_name(display_name)

        taken = (
            session.query(LnurlIdentity.id)
            .filter(LnurlIdentity.display_name == name, LnurlIdentity.id != identity.id)
            .first()
        )
        if taken is not None:
            raise Conflict("This display name is already taken")

        try:
            with session.begin_nested():
                identity.display_name = name
        except IntegrityError:
            # claimed by a concurrent request after the check above
            session.refresh(identity)
            raise Conflict("This display name is already taken")
        logger.info(f"Identity {identity.id} display name set to {name}")
        return identity

    def unlink_identity(self, session: Session, device_session_id: str) -> bool:
        """Detach the device from its identity. The identity itself is kept. False if nothing was linked."""
        self.require_enabled()
        device = session.get(DeviceSession, device_session_id) if device_session_id else None
        if device is None:
            raise NotFound("Device session not found")
        if not device.lnurl_identity_id:
            return False

        identity_id = device.lnurl_identity_id
        session.query(LnurlDeviceLink).filter(
            LnurlDeviceLink.identity_id == identity_id, LnurlDeviceLink.device_session_id == device_session_id
        ).delete(synchronize_session=False)
        device.lnurl_identity_id = None
        session.flush()

        get_audit_logger().log_identity_unlinked(identity_id, device_session_id)
        return True
