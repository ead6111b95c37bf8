"""LNbits wallet backend (REST API, ``X-Api-Key`` auth)."""

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

SIGNATURE_HEADERS = ("X-Lnbits-Signature", "X-Webhook-Signature")


class LNbitsProvider(LightningProvider):
    name = "lnbits"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        webhook_secret: Optional[str] = None,
        webhook_url: Optional[str] = None,
        expiry_s: int = 900,
        timeout: int = 10,
    ):
        if not base_url or not api_key:
            raise PaymentProviderError("LNbits not configured. Set LNBITS_URL and LNBITS_API_KEY.")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.webhook_url = webhook_url
        self.expiry_s = expiry_s
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"X-Api-Key": self.api_key}

    def create_invoice(self, amount_sats: int, memo: str) -> LightningInvoice:
        payload = {"out": False, "amount": int(amount_sats), "memo": memo, "unit": "sat", "expiry": self.expiry_s}
        if self.webhook_url:
            payload["webhook"] = self.webhook_url

        try:
            resp = requests.post(
                f"{self.base_url}/api/v1/payments", json=payload, headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as e:
            raise PaymentProviderError(f"LNbits unreachable: {e}") from e
        if resp.status_code >= 300:
            raise PaymentProviderError(f"LNbits invoice creation failed: {resp.status_code} {resp.text}")

        data = resp.json()
        payment_hash = data.get("payment_hash")
        payment_request = data.get("payment_request") or data.get("bolt11")
        if not payment_hash or not payment_request:
            raise PaymentProviderError("LNbits invoice response missing payment_hash or payment_request")

        logger.info(f"[LNbits] Created invoice {payment_hash} for {amount_sats} sats")
        return LightningInvoice(
            invoice_id=payment_hash,
            payment_request=payment_request,
            amount_sats=amount_sats,
            expires_at=utc_now() + timedelta(seconds=self.expiry_s),
            memo=memo,
        )

    def check_payment_status(self, invoice_id: str) -> str:
        try:
            resp = requests.get(
                f"{self.base_url}/api/v1/payments/{invoice_id}", headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as e:
            raise PaymentProviderError(f"LNbits unreachable: {e}") from e
        if resp.status_code >= 300:
            raise PaymentProviderError(f"LNbits status check failed: {resp.status_code} {resp.text}")

        data = resp.json()
        if data.get("paid"):
            return STATUS_PAID

        details = data.get("details") or {}
        if details.get("time") and details.get("expiry"):
            expires_at = from_epoch_s(int(details["time"]) + int(details["expiry"]))
            if utc_now() > expires_at:
                return STATUS_EXPIRED
        return STATUS_PENDING

    def parse_webhook(self, headers: Mapping[str, str], raw_body: bytes, form: Mapping[str, str]) -> WebhookEvent:
        secret = self._require_secret(self.webhook_secret, self.name)
        signature = next((headers.get(h) for h in SIGNATURE_HEADERS if headers.get(h)), None)
        self._require_body_signature(secret, raw_body, signature)

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Invalid JSON payload") from e
        if not isinstance(payload, dict) or not payload.get("payment_hash"):
            raise ValidationError("Missing payment_hash")

        status = STATUS_PENDING if payload.get("pending") is True else STATUS_PAID
        return WebhookEvent(invoice_id=payload["payment_hash"], status=status)
