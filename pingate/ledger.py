"""
Invoice ledger and effect applier.

Each purpose keeps its own ledger table, but callers only ever see one
``Invoice`` (purpose + row) found by its provider invoice id.

Settlement is idempotent: the ``pending -> paid`` transition is a single
conditional UPDATE guarded by ``status = 'pending'``. Whichever caller
(webhook, client poll, manual trigger) wins that write applies the effect;
everyone else gets a no-op result.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from pingate import merchant
from pingate.audit_logger import get_audit_logger
from pingate.errors import Conflict, Forbidden, NotFound, PaymentProviderError, Unauthorized, ValidationError
from pingate.metrics import invoices_created_total, settlements_total
from pingate.models import (
    DeviceSession,
    Location,
    LocationSponsorship,
    MerchantClaim,
    Pin,
    PinBoost,
    PinDeletionPayment,
    PostPayment,
    utc_now,
)
from pingate.payments import STATUS_EXPIRED, STATUS_PAID, LightningProvider
from pingate.presence import PresencePayload, PresenceTokenService
from pingate.sponsorship import SponsorshipScheduler

logger = logging.getLogger(__name__)

LEDGERS = {
    "post": PostPayment,
    "boost": PinBoost,
    "delete": PinDeletionPayment,
    "sponsor": LocationSponsorship,
    "merchant_claim": MerchantClaim,
}
PURPOSES = tuple(LEDGERS)
PRESENCE_PURPOSES = ("post", "boost", "delete", "sponsor")

# Statuses that mean "the invoice was paid", whatever happened afterwards.
SETTLED_STATUSES = ("paid", "used", "verified", "revoked")

NOT_FOUND_REASON = "not found or already processed"


@dataclass(frozen=True)
class Invoice:
    purpose: str
    record: Any

    @property
    def invoice_id(self) -> str:
        return self.record.invoice_id

    @property
    def status(self) -> str:
        return self.record.status

    @property
    def is_pending(self) -> bool:
        return self.record.status == "pending"

    @property
    def is_paid(self) -> bool:
        return self.record.status in SETTLED_STATUSES


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    purpose: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "purpose": self.purpose}
        return {"success": False, "reason": self.reason}


def find_invoice(session: Session, invoice_id: str) -> Optional[Invoice]:
    """Look an invoice up by provider invoice id across every purpose ledger."""
    if not invoice_id:
        return None
    for purpose, model in LEDGERS.items():
        record = session.query(model).filter(model.invoice_id == invoice_id).first()
        if record is not None:
            return Invoice(purpose=purpose, record=record)
    return None


def _compare_and_swap(session: Session, model, invoice_id: str, from_status: str, values: Mapping) -> bool:
    rowcount = (
        session.query(model)
        .filter(model.invoice_id == invoice_id, model.status == from_status)
        .update(dict(values), synchronize_session=False)
    )
    return rowcount == 1


class InvoiceLedger:
    """Creates purpose invoices and settles them exactly once."""

    def __init__(
        self,
        provider: LightningProvider,
        presence: PresenceTokenService,
        scheduler: SponsorshipScheduler,
        config: Mapping[str, Any],
    ):
        self.provider = provider
        self.presence = presence
        self.scheduler = scheduler
        self.config = config

    # -- settlement ---------------------------------------------------------

    def apply_payment_effects(
        self, session: Session, invoice_id: str, source: str = "manual", now: Optional[datetime] = None
    ) -> SettlementResult:
        """
        Settle a paid invoice and apply its purpose's effect exactly once.

        Commits on success. Unknown or already-settled invoices are a normal
        outcome for duplicate deliveries and return ``success=False`` rather
        than raising.
        """
        now = now or utc_now()
        invoice = find_invoice(session, invoice_id)

        if invoice is None or not invoice.is_pending:
            result = SettlementResult(success=False, reason=NOT_FOUND_REASON)
        elif invoice.purpose == "sponsor":
            result = self._settle_sponsorship(session, invoice, now)
        elif invoice.purpose == "merchant_claim":
            result = self._settle_merchant_claim(session, invoice, now)
        else:
            result = self._settle_simple(session, invoice, now)

        if result.success:
            session.commit()
            session.expire(invoice.record)

        purpose = invoice.purpose if invoice else None
        get_audit_logger().log_settlement(invoice_id, purpose, result.success, source)
        settlements_total.labels(purpose or "unknown", "applied" if result.success else "noop").inc()
        return result

    def _settle_simple(self, session: Session, invoice: Invoice, now: datetime) -> SettlementResult:
        model = LEDGERS[invoice.purpose]
        if not _compare_and_swap(session, model, invoice.invoice_id, "pending", {"status": "paid", "paid_at": now}):
            return SettlementResult(success=False, reason=NOT_FOUND_REASON)

        if invoice.purpose == "boost":
            hours = self.config.get("BOOST_DURATION_HOURS", 24)
            session.query(Pin).filter(Pin.id == invoice.record.pin_id).update(
                {Pin.boost_score: invoice.record.amount_sats, Pin.boost_expires_at: now + timedelta(hours=hours)},
                synchronize_session=False,
            )
        # post and delete: being paid is the whole effect
        return SettlementResult(success=True, purpose=invoice.purpose)

    def _settle_sponsorship(self, session: Session, invoice: Invoice, now: datetime) -> SettlementResult:
        location_id = invoice.record.location_id
        with self.scheduler.serialized(session, location_id):
            activation_at = self.scheduler.compute_activation(session, location_id, now)
            swapped = _compare_and_swap(
                session,
                LocationSponsorship,
                invoice.invoice_id,
                "pending",
                {"status": "paid", "paid_at": now, "activation_at": activation_at},
            )
            if not swapped:
                return SettlementResult(success=False, reason=NOT_FOUND_REASON)
            # commit while still holding the lock so the next settlement sees this slot
            session.commit()

        logger.info(f"Sponsorship {invoice.invoice_id} at {location_id} activates at {activation_at.isoformat()}")
        return SettlementResult(success=True, purpose="sponsor")

    def _settle_merchant_claim(self, session: Session, invoice: Invoice, now: datetime) -> SettlementResult:
        claim = invoice.record
        if merchant.is_location_claimed(session, claim.location_id):
            return self._refuse_claim(claim)
        if not merchant.verify_claim(session, claim, now):
            # lost the race to another claim that was verified in between
            if merchant.is_location_claimed(session, claim.location_id):
                return self._refuse_claim(claim)
            return SettlementResult(success=False, reason=NOT_FOUND_REASON)
        get_audit_logger().log_event(
            "merchant_claim_verified", claim_id=invoice.record.id, location_id=invoice.record.location_id
        )
        return SettlementResult(success=True, purpose="merchant_claim")

    @staticmethod
    def _refuse_claim(claim: MerchantClaim) -> SettlementResult:
        """The claim was paid, but the location already has an owner. Operators refund from this event."""
        logger.warning(f"Claim {claim.invoice_id} paid but location {claim.location_id} already claimed")
        get_audit_logger().log_event(
            "merchant_claim_refused",
            claim_id=claim.id,
            invoice_id=claim.invoice_id,
            location_id=claim.location_id,
            device_session_id=claim.device_session_id,
            amount_sats=claim.amount_sats,
            provider=claim.provider,
        )
        return SettlementResult(success=False, reason="location already claimed")

    # -- invoice creation ---------------------------------------------------

    def _check_presence(self, token: Optional[str], now_ms: Optional[int] = None) -> PresencePayload:
        check = self.presence.verify(token, now_ms)
        if not check.valid:
            get_audit_logger().log_presence_rejected(check.reason)
            raise Unauthorized(check.message, details={"reason": check.reason})
        return check.payload

    @staticmethod
    def _require_session(session: Session, device_session_id: Optional[str]) -> DeviceSession:
        device = session.get(DeviceSession, device_session_id) if device_session_id else None
        if device is None:
            raise Unauthorized("Invalid session")
        return device

    def _price(self, key: str) -> int:
        return int(self.config[key])

    def create_purpose_invoice(
        self,
        session: Session,
        purpose: str,
        *,
        presence_token: Optional[str] = None,
        device_session_id: Optional[str] = None,
        location_id: Optional[str] = None,
        pin_id: Optional[str] = None,
        sponsor_label: Optional[str] = None,
        amount_sats: Optional[int] = None,
        claim_code: Optional[str] = None,
        now: Optional[datetime] = None,
        now_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Validate the request, ask the provider for an invoice, then record it.

        The ledger row is written only after the provider returns, so a
        backend failure leaves nothing behind.

        Raises:
            Unauthorized: bad presence token or unknown device session
            ValidationError / Forbidden / NotFound / Conflict: purpose-specific checks
            PaymentProviderError: the backend could not create the invoice
        """
        if purpose not in LEDGERS:
            raise ValidationError(f"Unknown invoice purpose: {purpose}")
        now = now or utc_now()
        extra: Dict[str, Any] = {}

        if purpose in PRESENCE_PURPOSES:
            payload = self._check_presence(presence_token, now_ms)
            device_session_id = payload.device_session_id
            location_id = payload.location_id
        self._require_session(session, device_session_id)
        location = session.get(Location, location_id) if location_id else None

        if purpose == "post":
            if location is None:
                raise NotFound("Location not found")
            amount = self._price("POST_PRICE_SATS")
            memo = f"Post on {location.name or location.slug}"
            fields = {"device_session_id": device_session_id, "location_id": location_id}

        elif purpose == "boost":
            pin = self._live_pin(session, pin_id)
            if pin.location_id != location_id:
                raise Forbidden("Pin is not on this board")
            amount = self._price("BOOST_PRICE_SATS")
            memo = "Boost pin"
            fields = {"pin_id": pin.id, "device_session_id": device_session_id}

        elif purpose == "delete":
            pin = self._live_pin(session, pin_id)
            if pin.device_session_id != device_session_id:
                raise Forbidden("You can only delete your own pins")
            age_s = (now - pin.created_at).total_seconds()
            free_window_s = self.config.get("FREE_DELETE_WINDOW_S", 600)
            if age_s < free_window_s:
                remaining = int(free_window_s - age_s)
                raise ValidationError(
                    f"This pin can still be deleted for free for {remaining} seconds",
                    details={"free_delete_remaining_s": remaining},
                )
            amount = self._price("DELETE_PRICE_SATS")
            memo = "Delete pin"
            fields = {"pin_id": pin.id, "device_session_id": device_session_id}

        elif purpose == "sponsor":
            if location is None:
                raise NotFound("Location not found")
            if amount_sats is None:
                amount_sats = self.scheduler.minimum_bid(session, location_id, now)
            label = self.scheduler.validate_bid(session, location_id, sponsor_label, amount_sats, now)
            amount = amount_sats
            memo = f"Sponsor {location.name or location.slug}"
            fields = {"location_id": location_id, "device_session_id": device_session_id, "sponsor_label": label}

        else:
            if not self.config.get("FEATURE_MERCHANTS", True):
                raise Forbidden("Merchant features are not enabled")
            merchant.check_claimable(session, location, device_session_id)
            code = merchant.normalize_claim_code(claim_code)
            amount = self._price("MERCHANT_CLAIM_PRICE_SATS")
            memo = f"Claim {location.name or location.slug}: {code}"
            fields = {"location_id": location_id, "device_session_id": device_session_id, "claim_code": code}
            extra = {"claim_code": code, "location_name": location.name}

        invoice = self.provider.create_invoice(amount, memo)

        record = LEDGERS[purpose](
            provider=self.provider.name,
            invoice_id=invoice.invoice_id,
            payment_request=invoice.payment_request,
            amount_sats=invoice.amount_sats,
            status="pending",
            expires_at=invoice.expires_at,
            **fields,
        )
        session.add(record)
        session.flush()

        invoices_created_total.labels(purpose).inc()
        logger.info(f"Created {purpose} invoice {invoice.invoice_id} for {amount} sats")
        return {
            "invoice_id": invoice.invoice_id,
            "payment_request": invoice.payment_request,
            "amount_sats": invoice.amount_sats,
            "expires_at": invoice.expires_at.isoformat(),
            "purpose": purpose,
            **extra,
        }

    @staticmethod
    def _live_pin(session: Session, pin_id: Optional[str]) -> Pin:
        if not pin_id:
            raise ValidationError("pin_id is required")
        pin = session.get(Pin, pin_id)
        if pin is None or pin.deleted_at is not None:
            raise NotFound("Pin not found")
        return pin

    # -- status and follow-ups ----------------------------------------------

    def get_invoice_status(self, session: Session, invoice_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Current state of an invoice. While still pending, asks the provider
        and settles or expires the row accordingly.

        Raises:
            NotFound: unknown invoice id
        """
        now = now or utc_now()
        invoice = find_invoice(session, invoice_id)
        if invoice is None:
            raise NotFound("Invoice not found")

        if invoice.is_pending:
            try:
                provider_status = self.provider.check_payment_status(invoice_id)
            except PaymentProviderError as e:
                logger.warning(f"Status check for {invoice_id} failed, reporting stored status: {e}")
                get_audit_logger().log_error(
                    "payment_provider", str(e), context={"invoice": invoice_id, "provider": self.provider.name}
                )
                provider_status = None

            if provider_status == STATUS_PAID:
                self.apply_payment_effects(session, invoice_id, source="poll", now=now)
            elif provider_status == STATUS_EXPIRED or (
                invoice.record.expires_at is not None and invoice.record.expires_at <= now
            ):
                model = LEDGERS[invoice.purpose]
                if _compare_and_swap(session, model, invoice_id, "pending", {"status": "expired"}):
                    session.commit()
            session.refresh(invoice.record)

        record = invoice.record
        return {
            "invoice_id": invoice_id,
            "purpose": invoice.purpose,
            "status": record.status,
            "paid": invoice.is_paid,
            "amount_sats": record.amount_sats,
            "paid_at": record.paid_at.isoformat() if record.paid_at else None,
            "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        }

    def consume_deletion_payment(
        self, session: Session, pin_id: str, invoice_id: str, device_session_id: str, now: Optional[datetime] = None
    ) -> Pin:
        """
        Delete a pin against a paid deletion invoice. The payment moves
        ``paid -> used`` in a conditional update, so it is spent once.

        Raises:
            NotFound: no deletion payment for this pin and invoice
            Forbidden: the payment belongs to another device
            Conflict: the payment is not paid, or was already used
        """
        now = now or utc_now()
        payment = (
            session.query(PinDeletionPayment)
            .filter(PinDeletionPayment.invoice_id == invoice_id, PinDeletionPayment.pin_id == pin_id)
            .first()
        )
        if payment is None:
            raise NotFound("Deletion payment not found")
        if payment.device_session_id != device_session_id:
            raise Forbidden("You can only delete your own pins")

        spent = (
            session.query(PinDeletionPayment)
            .filter(PinDeletionPayment.id == payment.id, PinDeletionPayment.status == "paid")
            .update({PinDeletionPayment.status: "used"}, synchronize_session=False)
        )
        if spent != 1:
            session.refresh(payment)
            raise Conflict(f"Deletion payment is {payment.status}", details={"status": payment.status})

        session.query(Pin).filter(Pin.id == pin_id, Pin.deleted_at.is_(None)).update(
            {Pin.deleted_at: now}, synchronize_session=False
        )
        session.flush()
        pin = session.get(Pin, pin_id)
        session.refresh(pin)
        logger.info(f"Pin {pin_id} deleted with paid invoice {invoice_id}")
        return pin

    def consume_post_credit(self, session: Session, device_session_id: str, location_id: str) -> bool:
        """Spend one paid post credit for this device at this location. False if none left."""
        candidates = (
            session.query(PostPayment.id)
            .filter(
                PostPayment.device_session_id == device_session_id,
                PostPayment.location_id == location_id,
                PostPayment.status == "paid",
            )
            .order_by(PostPayment.paid_at.asc())
            .all()
        )
        for (payment_id,) in candidates:
            spent = (
                session.query(PostPayment)
                .filter(PostPayment.id == payment_id, PostPayment.status == "paid")
                .update({PostPayment.status: "used"}, synchronize_session=False)
            )
            if spent == 1:
                return True
        return False

    def simulate_payment(self, session: Session, invoice_id: str, now: Optional[datetime] = None) -> SettlementResult:
        """
        Mark an invoice paid without a real payment. Test and development only.

        Raises:
            Forbidden: dev payments are disabled for this deployment
            NotFound: unknown invoice id
        """
        if not (self.provider.supports_simulation or self.config.get("FEATURE_DEV_PAYMENTS")):
            raise Forbidden("Simulated payments are disabled")
        if find_invoice(session, invoice_id) is None:
            raise NotFound("Invoice not found")

        if self.provider.supports_simulation:
            self.provider.simulate_payment(invoice_id)
        return self.apply_payment_effects(session, invoice_id, source="simulate", now=now)
