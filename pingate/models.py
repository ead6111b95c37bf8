"""
SQLAlchemy database models for PinGate.

Locations, device sessions and pins are the thin slice of the content store this
service touches. The five payment ledgers share one shape (``InvoiceLedgerMixin``)
and are looked up through ``pingate.ledger`` as a single tagged union.

All timestamps are naive UTC, which is what both SQLite and PostgreSQL
``timestamp without time zone`` columns hand back.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_uuid():
    """Generate a UUID string for primary keys."""
    return str(uuid.uuid4())


def utc_now():
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch_s(seconds):
    return datetime.fromtimestamp(int(seconds), timezone.utc).replace(tzinfo=None)


class Location(Base):
    """
    A geofenced board: a circle of ``radius_m`` around ``(lat, lng)``.
    """

    __tablename__ = "locations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    slug = Column(String(120), unique=True, nullable=False)
    name = Column(String(255), nullable=False, default="")
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    radius_m = Column(Integer, nullable=False, default=100)
    is_active = Column(Boolean, default=True, nullable=False)
    is_claimed = Column(Boolean, default=False, nullable=False)
    is_bitcoin_merchant = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (Index("idx_location_active", "is_active"),)

    def __repr__(self):
        return f"<Location(id={self.id}, slug={self.slug})>"


class DeviceSession(Base):
    """
    Anonymous device session; optionally linked to a wallet identity.
    """

    __tablename__ = "device_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    lnurl_identity_id = Column(String(36), ForeignKey("lnurl_identities.id", ondelete="SET NULL"))

    def __repr__(self):
        return f"<DeviceSession(id={self.id}, identity={self.lnurl_identity_id})>"


class Pin(Base):
    """
    Posted content. Only the columns settlement touches live here.
    """

    __tablename__ = "pins"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)
    device_session_id = Column(String(36), ForeignKey("device_sessions.id"), nullable=False)
    body = Column(Text, nullable=False, default="")
    boost_score = Column(Integer, default=0, nullable=False)
    boost_expires_at = Column(DateTime)
    is_hidden = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    deleted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_pin_location", "location_id", "created_at"),
        Index("idx_pin_device", "device_session_id"),
    )

    def __repr__(self):
        return f"<Pin(id={self.id}, location={self.location_id})>"


class InvoiceLedgerMixin:
    """Columns shared by every purpose-specific payment ledger."""

    id = Column(String(36), primary_key=True, default=generate_uuid)
    provider = Column(String(32), nullable=False)
    invoice_id = Column(String(255), unique=True, nullable=False, index=True)
    payment_request = Column(Text)
    amount_sats = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    expires_at = Column(DateTime)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    paid_at = Column(DateTime)

    def __repr__(self):
        return f"<{type(self).__name__}(invoice={self.invoice_id}, status={self.status})>"


class PostPayment(InvoiceLedgerMixin, Base):
    """
    Paid post credit. Status: 'pending' -> 'paid' -> 'used', or 'expired'.
    """

    __tablename__ = "post_payments"

    device_session_id = Column(String(36), ForeignKey("device_sessions.id"), nullable=False)
    location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)


class PinBoost(InvoiceLedgerMixin, Base):
    __tablename__ = "pin_boosts"

    pin_id = Column(String(36), ForeignKey("pins.id"), nullable=False)
    device_session_id = Column(String(36), ForeignKey("device_sessions.id"), nullable=False)


class PinDeletionPayment(InvoiceLedgerMixin, Base):
    """
    Paid deletion. Status: 'pending' -> 'paid' -> 'used', or 'expired'.
    """

    __tablename__ = "pin_deletion_payments"

    pin_id = Column(String(36), ForeignKey("pins.id"), nullable=False)
    device_session_id = Column(String(36), ForeignKey("device_sessions.id"), nullable=False)


class LocationSponsorship(InvoiceLedgerMixin, Base):
    """
    Sponsorship bid. ``activation_at`` is computed once, at settlement.
    """

    __tablename__ = "location_sponsorships"

    location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)
    device_session_id = Column(String(36), ForeignKey("device_sessions.id"))
    sponsor_label = Column(String(50), nullable=False)
    activation_at = Column(DateTime)

    __table_args__ = (Index("idx_sponsorship_schedule", "location_id", "status", "activation_at"),)


class MerchantClaim(InvoiceLedgerMixin, Base):
    """
    Lightning-verified business claim. Status: 'pending' -> 'verified' -> 'revoked',
    or 'pending' -> 'expired'.
    """

    __tablename__ = "merchant_claims"

    location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)
    device_session_id = Column(String(36), ForeignKey("device_sessions.id"), nullable=False)
    claim_code = Column(String(16), nullable=False)
    claimed_at = Column(DateTime)
    linked_user_id = Column(String(36), ForeignKey("lnurl_identities.id", ondelete="SET NULL"))

    __table_args__ = (Index("idx_claim_location_status", "location_id", "status"),)


class LnurlChallenge(Base):
    """
    LNURL-auth challenges (LUD-04). Single-use.
    """

    __tablename__ = "lnurl_challenges"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    k1 = Column(String(64), unique=True, nullable=False, index=True)
    device_session_id = Column(String(36), ForeignKey("device_sessions.id"), nullable=False)
    action = Column(String(10), nullable=False, default="login")
    status = Column(String(20), nullable=False, default="pending")
    linking_key = Column(String(66))
    created_at = Column(DateTime, default=utc_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    verified_at = Column(DateTime)

    __table_args__ = (Index("idx_lnurl_status_expires", "status", "expires_at"),)

    def __repr__(self):
        return f"<LnurlChallenge(k1={self.k1[:16]}..., status={self.status})>"


class LnurlIdentity(Base):
    """
    Wallet identity keyed by its linking key.
    """

    __tablename__ = "lnurl_identities"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    linking_key = Column(String(66), unique=True, nullable=False, index=True)
    anon_nym = Column(String(20), nullable=False)
    display_name = Column(String(30), unique=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    last_auth_at = Column(DateTime, default=utc_now)

    def __repr__(self):
        return f"<LnurlIdentity(id={self.id}, nym={self.anon_nym})>"


class LnurlDeviceLink(Base):
    __tablename__ = "lnurl_device_links"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    identity_id = Column(String(36), ForeignKey("lnurl_identities.id", ondelete="CASCADE"), nullable=False)
    device_session_id = Column(String(36), ForeignKey("device_sessions.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    last_used_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint("identity_id", "device_session_id", name="uq_identity_device"),
        Index("idx_link_device", "device_session_id"),
    )

    def __repr__(self):
        return f"<LnurlDeviceLink(identity={self.identity_id}, device={self.device_session_id})>"
