"""Uniform interface over the Lightning payment backends."""

from __future__ import annotations

import abc
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from pingate.errors import ServiceUnavailable, Unauthorized, ValidationError

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_EXPIRED = "expired"


@dataclass(frozen=True)
class LightningInvoice:
    invoice_id: str
    payment_request: str
    amount_sats: int
    expires_at: datetime
    memo: str


@dataclass(frozen=True)
class WebhookEvent:
    """An authenticated webhook delivery. Only ``paid`` events are settled."""

    invoice_id: str
    status: str

    @property
    def is_paid(self) -> bool:
        return self.status == STATUS_PAID


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.lower().encode("ascii"), received.strip().lower().encode("utf-8"))


class LightningProvider(abc.ABC):
    """
    A Lightning backend. One instance is built per process from configuration
    and every call site uses it through this interface.
    """

    name = "abstract"
    supports_simulation = False

    @abc.abstractmethod
    def create_invoice(self, amount_sats: int, memo: str) -> LightningInvoice:
        """Create an invoice; raises PaymentProviderError on backend failure."""

    @abc.abstractmethod
    def check_payment_status(self, invoice_id: str) -> str:
        """Return 'pending', 'paid' or 'expired'."""

    def parse_webhook(self, headers: Mapping[str, str], raw_body: bytes, form: Mapping[str, str]) -> WebhookEvent:
        """
        Authenticate and parse a webhook delivery.

        Raises:
            ServiceUnavailable: the shared secret is not configured
            Unauthorized: signature missing or wrong
            ValidationError: payload unusable
        """
        raise ValidationError(f"{self.name} does not accept webhooks")

    @staticmethod
    def _require_secret(secret: Optional[str], provider: str) -> str:
        if not secret:
            logger.error(f"[{provider} webhook] shared secret not configured - rejecting delivery")
            raise ServiceUnavailable("Webhook not configured")
        return secret

    @staticmethod
    def _require_body_signature(secret: str, raw_body: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise Unauthorized("Missing webhook signature")
        if not signatures_match(hmac_sha256_hex(secret, raw_body), signature):
            raise Unauthorized("Invalid webhook signature")
