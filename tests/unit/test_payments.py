"""
Unit tests for the Lightning payment backends.

HTTP calls are patched at the ``requests`` module each backend imports.
"""

import base64
import hashlib
import hmac
import json
from unittest.mock import Mock, patch

import pytest
import requests

from pingate.errors import PaymentProviderError, ServiceUnavailable, Unauthorized, ValidationError
from pingate.models import utc_now
from pingate.payments import (
    STATUS_EXPIRED,
    STATUS_PAID,
    STATUS_PENDING,
    DevLightningProvider,
    LNbitsProvider,
    LndRestProvider,
    OpenNodeProvider,
    build_provider,
)
from pingate.payments.base import signatures_match
from pingate.payments.opennode import TEST_URL, map_charge_status


def _sign(secret, body):
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _response(status_code=200, payload=None):
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.text = json.dumps(payload or {})
    return resp


class TestSignaturesMatch:
    def test_case_insensitive_hex(self):
        assert signatures_match("abcdef", "ABCDEF")

    def test_empty_signature(self):
        assert not signatures_match("abcdef", None)
        assert not signatures_match("abcdef", "")

    def test_mismatch(self):
        assert not signatures_match("abcdef", "abcdee")


class TestDevProvider:
    def test_create_invoice(self):
        invoice = DevLightningProvider(expiry_s=60).create_invoice(5, "Post")

        assert invoice.invoice_id.startswith("dev_")
        assert invoice.payment_request.startswith("lnbc5n1dev")
        assert invoice.amount_sats == 5
        assert invoice.expires_at > utc_now()

    def test_pending_until_simulated(self):
        provider = DevLightningProvider()
        invoice = provider.create_invoice(5, "Post")

        assert provider.check_payment_status(invoice.invoice_id) == STATUS_PENDING
        provider.simulate_payment(invoice.invoice_id)
        assert provider.check_payment_status(invoice.invoice_id) == STATUS_PAID

    def test_rejects_webhooks(self):
        with pytest.raises(ValidationError):
            DevLightningProvider().parse_webhook({}, b"{}", {})


class TestBuildProvider:
    def test_dev(self, config):
        provider = build_provider(config)

        assert isinstance(provider, DevLightningProvider)
        assert provider.expiry_s == config["INVOICE_EXPIRY_S"]

    def test_lnbits_gets_webhook_url(self, config):
        config.update({"LIGHTNING_PROVIDER": "lnbits", "LNBITS_API_KEY": "key", "LNBITS_WEBHOOK_SECRET": "whsec"})

        provider = build_provider(config)

        assert isinstance(provider, LNbitsProvider)
        assert provider.webhook_url == "http://localhost:5000/api/webhooks/lnbits"
        assert provider.webhook_secret == "whsec"

    def test_opennode_test_mode(self, config):
        config.update({"LIGHTNING_PROVIDER": "opennode", "OPENNODE_API_KEY": "key", "OPENNODE_TEST_MODE": True})

        provider = build_provider(config)

        assert isinstance(provider, OpenNodeProvider)
        assert provider.base_url == TEST_URL

    def test_lnd(self, config):
        config.update({"LIGHTNING_PROVIDER": "lnd_rest", "LND_REST_URL": "https://node:8080/", "LND_MACAROON": "abcd"})

        provider = build_provider(config)

        assert isinstance(provider, LndRestProvider)
        assert provider.base_url == "https://node:8080"

    def test_unknown(self, config):
        config["LIGHTNING_PROVIDER"] = "strike"
        with pytest.raises(ValueError, match="strike"):
            build_provider(config)


class TestLNbitsProvider:
    """Test the LNbits REST backend."""

    @pytest.fixture
    def provider(self):
        return LNbitsProvider(
            base_url="https://lnbits.example/",
            api_key="api-key",
            webhook_secret="whsec",
            webhook_url="https://pins.example/api/webhooks/lnbits",
            expiry_s=600,
        )

    def test_requires_credentials(self):
        with pytest.raises(PaymentProviderError):
            LNbitsProvider(base_url="https://lnbits.example", api_key=None)

    def test_create_invoice(self, provider):
        with patch("pingate.payments.lnbits.requests.post") as mock_post:
            mock_post.return_value = _response(201, {"payment_hash": "hash1", "payment_request": "lnbc50n1abc"})

            invoice = provider.create_invoice(50, "Boost pin")

        assert invoice.invoice_id == "hash1"
        assert invoice.payment_request == "lnbc50n1abc"
        url = mock_post.call_args[0][0]
        kwargs = mock_post.call_args[1]
        assert url == "https://lnbits.example/api/v1/payments"
        assert kwargs["headers"] == {"X-Api-Key": "api-key"}
        assert kwargs["json"] == {
            "out": False,
            "amount": 50,
            "memo": "Boost pin",
            "unit": "sat",
            "expiry": 600,
            "webhook": "https://pins.example/api/webhooks/lnbits",
        }

    def test_create_invoice_http_error(self, provider):
        with patch("pingate.payments.lnbits.requests.post", return_value=_response(500, {"detail": "boom"})):
            with pytest.raises(PaymentProviderError, match="500"):
                provider.create_invoice(50, "Boost pin")

    def test_create_invoice_unreachable(self, provider):
        with patch("pingate.payments.lnbits.requests.post", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(PaymentProviderError, match="unreachable"):
                provider.create_invoice(50, "Boost pin")

    def test_status_paid(self, provider):
        with patch("pingate.payments.lnbits.requests.get", return_value=_response(200, {"paid": True})):
            assert provider.check_payment_status("hash1") == STATUS_PAID

    def test_status_expired(self, provider):
        details = {"time": 1_600_000_000, "expiry": 600}
        with patch("pingate.payments.lnbits.requests.get", return_value=_response(200, {"paid": False, "details": details})):
            assert provider.check_payment_status("hash1") == STATUS_EXPIRED

    def test_status_pending(self, provider):
        with patch("pingate.payments.lnbits.requests.get", return_value=_response(200, {"paid": False})):
            assert provider.check_payment_status("hash1") == STATUS_PENDING

    def test_webhook_valid_signature(self, provider):
        body = json.dumps({"payment_hash": "hash1", "amount": 50000}).encode()

        event = provider.parse_webhook({"X-Lnbits-Signature": _sign("whsec", body)}, body, {})

        assert event.invoice_id == "hash1"
        assert event.is_paid

    def test_webhook_alternate_header(self, provider):
        body = json.dumps({"payment_hash": "hash1", "pending": True}).encode()

        event = provider.parse_webhook({"X-Webhook-Signature": _sign("whsec", body)}, body, {})

        assert event.status == STATUS_PENDING
        assert not event.is_paid

    def test_webhook_missing_signature(self, provider):
        with pytest.raises(Unauthorized, match="Missing"):
            provider.parse_webhook({}, b'{"payment_hash": "hash1"}', {})

    def test_webhook_wrong_signature(self, provider):
        body = b'{"payment_hash": "hash1"}'
        with pytest.raises(Unauthorized, match="Invalid"):
            provider.parse_webhook({"X-Lnbits-Signature": _sign("other", body)}, body, {})

    def test_webhook_without_secret_is_unavailable(self, provider):
        provider.webhook_secret = None
        with pytest.raises(ServiceUnavailable):
            provider.parse_webhook({"X-Lnbits-Signature": "00"}, b"{}", {})

    def test_webhook_missing_payment_hash(self, provider):
        body = b'{"amount": 1}'
        with pytest.raises(ValidationError, match="payment_hash"):
            provider.parse_webhook({"X-Lnbits-Signature": _sign("whsec", body)}, body, {})


class TestOpenNodeProvider:
    @pytest.fixture
    def provider(self):
        return OpenNodeProvider(api_key="on-key", webhook_url="https://pins.example/api/webhooks/opennode")

    @pytest.mark.parametrize(
        "status,expected",
        [
            ("paid", STATUS_PAID),
            ("expired", STATUS_EXPIRED),
            ("unpaid", STATUS_PENDING),
            ("processing", STATUS_PENDING),
            ("underpaid", STATUS_PENDING),
            ("refunded", STATUS_PENDING),
            (None, STATUS_PENDING),
        ],
    )
    def test_map_charge_status(self, status, expected):
        assert map_charge_status(status) == expected

    def test_create_invoice(self, provider):
        charge = {"data": {"id": "charge1", "lightning_invoice": {"payreq": "lnbc1000n1xyz", "expires_at": 1_900_000_000}}}
        with patch("pingate.payments.opennode.requests.post", return_value=_response(201, charge)) as mock_post:
            invoice = provider.create_invoice(1000, "Sponsor")

        assert invoice.invoice_id == "charge1"
        assert invoice.payment_request == "lnbc1000n1xyz"
        assert invoice.expires_at.year == 2030
        assert mock_post.call_args[1]["headers"] == {"Authorization": "on-key"}
        assert mock_post.call_args[1]["json"]["callback_url"] == "https://pins.example/api/webhooks/opennode"

    def test_missing_api_key(self):
        with pytest.raises(PaymentProviderError):
            OpenNodeProvider(api_key=None).create_invoice(1, "x")

    def test_check_status(self, provider):
        with patch("pingate.payments.opennode.requests.get", return_value=_response(200, {"data": {"status": "paid"}})):
            assert provider.check_payment_status("charge1") == STATUS_PAID

    def test_webhook_form_encoded(self, provider):
        form = {"id": "charge1", "status": "paid", "hashed_order": _sign("on-key", b"charge1")}

        event = provider.parse_webhook({"Content-Type": "application/x-www-form-urlencoded"}, b"", form)

        assert event.invoice_id == "charge1"
        assert event.is_paid

    def test_webhook_json(self, provider):
        body = json.dumps({"id": "charge1", "status": "unpaid", "hashed_order": _sign("on-key", b"charge1")}).encode()

        event = provider.parse_webhook({"Content-Type": "application/json"}, body, {})

        assert event.status == STATUS_PENDING

    def test_webhook_bad_hashed_order(self, provider):
        form = {"id": "charge1", "status": "paid", "hashed_order": _sign("wrong", b"charge1")}
        with pytest.raises(Unauthorized):
            provider.parse_webhook({"Content-Type": "application/x-www-form-urlencoded"}, b"", form)

    def test_webhook_missing_fields(self, provider):
        with pytest.raises(ValidationError, match="Missing"):
            provider.parse_webhook({"Content-Type": "application/x-www-form-urlencoded"}, b"", {"id": "charge1"})

    def test_webhook_unsupported_content_type(self, provider):
        with pytest.raises(ValidationError, match="Unsupported"):
            provider.parse_webhook({"Content-Type": "text/plain"}, b"id=charge1", {})

    def test_webhook_without_api_key(self):
        with pytest.raises(ServiceUnavailable):
            OpenNodeProvider(api_key=None).parse_webhook({"Content-Type": "application/json"}, b"{}", {})


class TestLndRestProvider:
    @pytest.fixture
    def provider(self):
        return LndRestProvider(base_url="https://node:8080", macaroon="abcd", webhook_secret="lnd-secret")

    def test_requires_macaroon(self):
        with pytest.raises(PaymentProviderError, match="LND_MACAROON"):
            LndRestProvider(base_url="https://node:8080", macaroon="")

    def test_create_invoice_converts_r_hash(self, provider):
        r_hash = base64.b64encode(bytes.fromhex("ab" * 32)).decode()
        with patch("pingate.payments.lnd.requests.request") as mock_request:
            mock_request.return_value = _response(200, {"r_hash": r_hash, "payment_request": "lnbc5n1lnd"})

            invoice = provider.create_invoice(5, "Post")

        assert invoice.invoice_id == "ab" * 32
        method, url = mock_request.call_args[0]
        assert (method, url) == ("POST", "https://node:8080/v1/invoices")
        assert mock_request.call_args[1]["headers"] == {"Grpc-Metadata-macaroon": "abcd"}

    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({"settled": True}, STATUS_PAID),
            ({"state": "SETTLED"}, STATUS_PAID),
            ({"state": "CANCELED"}, STATUS_EXPIRED),
            ({"state": "OPEN", "creation_date": "1600000000", "expiry": "600"}, STATUS_EXPIRED),
            ({"state": "OPEN"}, STATUS_PENDING),
        ],
    )
    def test_check_status(self, provider, payload, expected):
        with patch("pingate.payments.lnd.requests.request", return_value=_response(200, payload)):
            assert provider.check_payment_status("ab" * 32) == expected

    def test_webhook(self, provider):
        body = json.dumps({"r_hash_str": "cd" * 32, "state": "SETTLED"}).encode()

        event = provider.parse_webhook({"X-Webhook-Signature": _sign("lnd-secret", body)}, body, {})

        assert event.invoice_id == "cd" * 32
        assert event.is_paid

    def test_webhook_wrong_signature(self, provider):
        body = json.dumps({"r_hash_str": "cd" * 32, "settled": True}).encode()
        with pytest.raises(Unauthorized):
            provider.parse_webhook({"X-Webhook-Signature": "00" * 32}, body, {})
