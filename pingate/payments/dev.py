"""Local backend that never talks to a Lightning node."""

import logging
import uuid
from datetime import timedelta
from typing import Set

from pingate.models import utc_now
from pingate.payments.base import STATUS_PAID, STATUS_PENDING, LightningInvoice, LightningProvider

logger = logging.getLogger(__name__)


class DevLightningProvider(LightningProvider):
    """
    Invoices stay pending until marked paid through ``simulate_payment``,
    which only the test-only simulate endpoint calls.
    """

    name = "dev"
    supports_simulation = True

    def __init__(self, expiry_s: int = 900):
        self.expiry_s = expiry_s
        self._paid: Set[str] = set()

    def create_invoice(self, amount_sats: int, memo: str) -> LightningInvoice:
        invoice_id = f"dev_{uuid.uuid4()}"
        return LightningInvoice(
            invoice_id=invoice_id,
            payment_request=f"lnbc{amount_sats}n1dev{invoice_id[:20]}",
            amount_sats=amount_sats,
            expires_at=utc_now() + timedelta(seconds=self.expiry_s),
            memo=memo,
        )

    def check_payment_status(self, invoice_id: str) -> str:
        logger.debug(f"[DEV] Checking payment status for invoice: {invoice_id}")
        return STATUS_PAID if invoice_id in self._paid else STATUS_PENDING

    def simulate_payment(self, invoice_id: str) -> None:
        self._paid.add(invoice_id)
