"""Merchant claims: a business proves ownership of a location by paying a Lightning invoice."""

import logging
import re
import secrets
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, exists
from sqlalchemy.orm import Session, aliased

from pingate.audit_logger import get_audit_logger
from pingate.errors import Conflict, NotFound, ValidationError
from pingate.models import DeviceSession, Location, MerchantClaim, utc_now

logger = logging.getLogger(__name__)

CLAIM_CODE_PATTERN = re.compile(r"^[A-Z0-9]{4,16}$")


def generate_claim_code() -> str:
    return secrets.token_hex(4).upper()


def normalize_claim_code(claim_code: Optional[str]) -> str:
    if claim_code is None or claim_code == "":
        return generate_claim_code()
    if not isinstance(claim_code, str):
        raise ValidationError("Invalid claim code")
    code = claim_code.strip().upper()
    if not CLAIM_CODE_PATTERN.match(code):
        raise ValidationError("Claim code must be 4-16 letters or digits")
    return code


def get_location_claim(session: Session, location_id: str) -> Optional[MerchantClaim]:
    return (
        session.query(MerchantClaim)
        .filter(MerchantClaim.location_id == location_id, MerchantClaim.status == "verified")
        .first()
    )


def is_location_claimed(session: Session, location_id: str) -> bool:
    return get_location_claim(session, location_id) is not None


def get_pending_claim(session: Session, location_id: str, device_session_id: str) -> Optional[MerchantClaim]:
    return (
        session.query(MerchantClaim)
        .filter(
            MerchantClaim.location_id == location_id,
            MerchantClaim.device_session_id == device_session_id,
            MerchantClaim.status == "pending",
        )
        .first()
    )


def check_claimable(session: Session, location: Optional[Location], device_session_id: str) -> None:
    """
    Raises:
        NotFound: no such location
        ValidationError: not a merchant location
        Conflict: already claimed, or this device has a claim awaiting payment
    """
    if location is None:
        raise NotFound("Location not found")
    if not location.is_bitcoin_merchant:
        raise ValidationError("Only merchant locations can be claimed")
    if location.is_claimed or is_location_claimed(session, location.id):
        raise Conflict("This location has already been claimed")
    if get_pending_claim(session, location.id, device_session_id) is not None:
        raise Conflict("You already have a pending claim. Please complete payment or wait for it to expire.")


def verify_claim(session: Session, claim: MerchantClaim, now: Optional[datetime] = None) -> bool:
    """
    Settle a paid claim: pending -> verified, and mark the location claimed.

    The conditional update also requires that no other verified claim exists
    for the location, so a location never ends up with two owners. Returns
    False when nothing changed.
    """
    now = now or utc_now()
    other = aliased(MerchantClaim)
    already_claimed = exists().where(and_(other.location_id == claim.location_id, other.status == "verified"))

    device = session.get(DeviceSession, claim.device_session_id)
    rowcount = (
        session.query(MerchantClaim)
        .filter(MerchantClaim.id == claim.id, MerchantClaim.status == "pending", ~already_claimed)
        .update(
            {
                MerchantClaim.status: "verified",
                MerchantClaim.paid_at: now,
                MerchantClaim.claimed_at: now,
                MerchantClaim.linked_user_id: device.lnurl_identity_id if device else None,
            },
            synchronize_session=False,
        )
    )
    if rowcount != 1:
        return False

    session.query(Location).filter(Location.id == claim.location_id).update(
        {Location.is_claimed: True}, synchronize_session=False
    )
    logger.info(f"Merchant claim {claim.id} verified for location {claim.location_id}")
    return True


def revoke_claim(session: Session, claim_id: str) -> MerchantClaim:
    """
    Revoke a verified claim and release the location.

    Raises:
        NotFound: no such claim
        Conflict: claim is not verified
    """
    claim = session.get(MerchantClaim, claim_id)
    if claim is None:
        raise NotFound("Claim not found")

    rowcount = (
        session.query(MerchantClaim)
        .filter(MerchantClaim.id == claim_id, MerchantClaim.status == "verified")
        .update({MerchantClaim.status: "revoked"}, synchronize_session=False)
    )
    if rowcount != 1:
        raise Conflict(f"Claim is {claim.status}, only verified claims can be revoked")

    session.query(Location).filter(Location.id == claim.location_id).update(
        {Location.is_claimed: False}, synchronize_session=False
    )
    session.expire(claim)
    get_audit_logger().log_event("merchant_claim_revoked", claim_id=claim_id, location_id=claim.location_id)
    logger.info(f"Merchant claim {claim_id} revoked for location {claim.location_id}")
    return claim
