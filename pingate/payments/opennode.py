"""OpenNode custodial backend.

Webhooks arrive form-encoded and are authenticated by ``hashed_order``, the
hex HMAC-SHA256 of the charge id keyed with the API key.
"""

import json
import logging
from typing import Mapping, Optional

import requests

from pingate.errors import PaymentProviderError, Unauthorized, ValidationError
from pingate.models import from_epoch_s
from pingate.payments.base import (
    STATUS_EXPIRED,
    STATUS_PAID,
    STATUS_PENDING,
    LightningInvoice,
    LightningProvider,
    WebhookEvent,
    hmac_sha256_hex,
    signatures_match,
)

logger = logging.getLogger(__name__)

LIVE_URL = "https://api.opennode.com"
TEST_URL = "https://dev-api.opennode.co"

_STATUS_MAP = {"paid": STATUS_PAID, "expired": STATUS_EXPIRED}


def map_charge_status(status: Optional[str]) -> str:
    """unpaid, processing, underpaid and refunded all count as pending."""
    return _STATUS_MAP.get(status or "", STATUS_PENDING)


class OpenNodeProvider(LightningProvider):
    name = "opennode"

    def __init__(self, api_key: str, test_mode: bool = False, webhook_url: Optional[str] = None, timeout: int = 10):
        self.api_key = api_key
        self.base_url = TEST_URL if test_mode else LIVE_URL
        self.webhook_url = webhook_url
        self.timeout = timeout

    def _headers(self) -> dict:
        if not self.api_key:
            raise PaymentProviderError("OpenNode API key not configured. Set OPENNODE_API_KEY.")
        return {"Authorization": self.api_key}

    def create_invoice(self, amount_sats: int, memo: str) -> LightningInvoice:
        payload = {"amount": int(amount_sats), "currency": "BTC", "description": memo, "auto_settle": False}
        if self.webhook_url:
            payload["callback_url"] = self.webhook_url

        try:
            resp = requests.post(f"{self.base_url}/v1/charges", json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise PaymentProviderError(f"OpenNode unreachable: {e}") from e
        if resp.status_code >= 300:
            raise PaymentProviderError(f"OpenNode charge creation failed: {resp.status_code} {resp.text}")

        charge = resp.json().get("data") or {}
        lightning = charge.get("lightning_invoice") or {}
        if not charge.get("id") or not lightning.get("payreq"):
            raise PaymentProviderError("OpenNode charge response missing id or lightning_invoice")

        logger.info(f"[OpenNode] Created charge {charge['id']} for {amount_sats} sats")
        return LightningInvoice(
            invoice_id=charge["id"],
            payment_request=lightning["payreq"],
            amount_sats=amount_sats,
            expires_at=from_epoch_s(int(lightning["expires_at"])),
            memo=memo,
        )

    def check_payment_status(self, invoice_id: str) -> str:
        try:
            resp = requests.get(f"{self.base_url}/v2/charge/{invoice_id}", headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise PaymentProviderError(f"OpenNode unreachable: {e}") from e
        if resp.status_code >= 300:
            raise PaymentProviderError(f"OpenNode charge lookup failed: {resp.status_code} {resp.text}")
        return map_charge_status((resp.json().get("data") or {}).get("status"))

    def parse_webhook(self, headers: Mapping[str, str], raw_body: bytes, form: Mapping[str, str]) -> WebhookEvent:
        secret = self._require_secret(self.api_key, self.name)

        content_type = headers.get("Content-Type", "")
        if "application/json" in content_type:
            try:
                payload = json.loads(raw_body)
            except ValueError as e:
                raise ValidationError("Invalid JSON payload") from e
            if not isinstance(payload, dict):
                raise ValidationError("Invalid JSON payload")
        elif "application/x-www-form-urlencoded" in content_type:
            payload = dict(form)
        else:
            raise ValidationError("Unsupported content type")

        charge_id = payload.get("id")
        hashed_order = payload.get("hashed_order")
        if not charge_id or not hashed_order:
            raise ValidationError("Missing required fields")
        if not signatures_match(hmac_sha256_hex(secret, str(charge_id).encode("utf-8")), hashed_order):
            raise Unauthorized("Invalid webhook signature")

        return WebhookEvent(invoice_id=str(charge_id), status=map_charge_status(payload.get("status")))
