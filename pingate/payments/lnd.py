"""Self-hosted LND node over its REST gateway."""

import base64
import binascii
import json
import logging
from datetime import timedelta
from typing import Mapping, Optional

import requests

from pingate.errors import PaymentProviderError, ValidationError
from pingate.models import from_epoch_s, utc_now
from pingate.payments.base import (
    STATUS_EXPIRED,
    STATUS_PAID,
    STATUS_PENDING,
    LightningInvoice,
    LightningProvider,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


def _r_hash_hex(data: dict) -> Optional[str]:
    # r_hash is base64 bytes; convert to hex string safe for URL paths
    if data.get("r_hash_str"):
        return data["r_hash_str"]
    if data.get("r_hash"):
        try:
            return base64.b64decode(data["r_hash"]).hex()
        except (binascii.Error, ValueError):
            return None
    return None


class LndRestProvider(LightningProvider):
    name = "lnd_rest"

    def __init__(
        self,
        base_url: str,
        macaroon: str,
        webhook_secret: Optional[str] = None,
        expiry_s: int = 900,
        timeout: int = 10,
        verify_tls=True,
    ):
        if not base_url:
            raise PaymentProviderError("Missing LND_REST_URL for LND REST backend.")
        if not macaroon:
            raise PaymentProviderError("Missing LND_MACAROON for LND REST backend.")
        self.base_url = base_url.rstrip("/")
        self.macaroon = macaroon
        self.webhook_secret = webhook_secret
        self.expiry_s = expiry_s
        self.timeout = timeout
        self.verify_tls = verify_tls

    def _headers(self) -> dict:
        return {"Grpc-Metadata-macaroon": self.macaroon}

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = requests.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                timeout=self.timeout,
                verify=self.verify_tls,
                **kwargs,
            )
        except requests.RequestException as e:
            raise PaymentProviderError(f"LND unreachable: {e}") from e
        if resp.status_code >= 300:
            raise PaymentProviderError(f"LND {method} {path} failed: {resp.status_code} {resp.text}")
        return resp.json()

    def create_invoice(self, amount_sats: int, memo: str) -> LightningInvoice:
        data = self._request(
            "POST", "/v1/invoices", json={"value": int(amount_sats), "memo": memo, "expiry": int(self.expiry_s)}
        )
        payment_request = data.get("payment_request")
        invoice_id = _r_hash_hex(data)
        if not payment_request or not invoice_id:
            raise PaymentProviderError("LND invoice response missing payment_request or r_hash.")

        logger.info(f"[LND] Created invoice {invoice_id} for {amount_sats} sats")
        return LightningInvoice(
            invoice_id=invoice_id,
            payment_request=payment_request,
            amount_sats=amount_sats,
            expires_at=utc_now() + timedelta(seconds=self.expiry_s),
            memo=memo,
        )

    def check_payment_status(self, invoice_id: str) -> str:
        data = self._request("GET", f"/v1/invoice/{invoice_id}")
        state = data.get("state")
        if data.get("settled") or state == "SETTLED":
            return STATUS_PAID
        if state == "CANCELED":
            return STATUS_EXPIRED
        if data.get("creation_date") and data.get("expiry"):
            expires_at = from_epoch_s(int(data["creation_date"]) + int(data["expiry"]))
            if utc_now() > expires_at:
                return STATUS_EXPIRED
        return STATUS_PENDING

    def parse_webhook(self, headers: Mapping[str, str], raw_body: bytes, form: Mapping[str, str]) -> WebhookEvent:
        """Relay deliveries carry an invoice object signed in ``X-Webhook-Signature``."""
        secret = self._require_secret(self.webhook_secret, self.name)
        self._require_body_signature(secret, raw_body, headers.get("X-Webhook-Signature"))

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Invalid JSON payload") from e
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON payload")

        invoice_id = _r_hash_hex(payload)
        if not invoice_id:
            raise ValidationError("Missing r_hash")
        paid = payload.get("settled") is True or payload.get("state") == "SETTLED"
        return WebhookEvent(invoice_id=invoice_id, status=STATUS_PAID if paid else STATUS_PENDING)
