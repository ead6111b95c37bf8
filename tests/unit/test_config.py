"""
Unit tests for configuration management.
"""

import os
from unittest.mock import patch

import pytest

from pingate.config import DEV_PRESENCE_SECRET, get_config, validate_config, webhook_secret_for


class TestGetConfig:
    """Test configuration loading from environment variables."""

    def test_get_config_defaults(self):
        config = get_config()

        assert config["FLASK_ENV"] == "testing"  # Set in conftest
        assert config["PRESENCE_TOKEN_TTL_S"] == 120
        assert config["LNURL_CHALLENGE_TTL_S"] == 300
        assert config["SPONSOR_BASE_PRICE_SATS"] == 1000
        assert config["SPONSOR_WINDOW_HOURS"] == 24
        assert config["LIGHTNING_PROVIDER"] == "dev"
        assert config["APP_NAME"] == "PinGate"

    def test_get_config_custom_values(self):
        with patch.dict(os.environ, {"MAX_DISTANCE_M": "350", "LIGHTNING_PROVIDER": " LNbits ", "APP_NAME": "Boards"}):
            config = get_config()

            assert config["MAX_DISTANCE_M"] == 350
            assert config["LIGHTNING_PROVIDER"] == "lnbits"
            assert config["APP_NAME"] == "Boards"

    def test_get_config_boolean_parsing(self):
        with patch.dict(os.environ, {"FEATURE_MERCHANTS": "no", "OPENNODE_TEST_MODE": "yes", "RATE_LIMIT_ENABLED": "1"}):
            config = get_config()

            assert config["FEATURE_MERCHANTS"] is False
            assert config["OPENNODE_TEST_MODE"] is True
            assert config["RATE_LIMIT_ENABLED"] is True

    def test_dev_payments_default_off_in_production(self):
        with patch.dict(os.environ, {"FLASK_ENV": "production"}):
            assert get_config()["FEATURE_DEV_PAYMENTS"] is False

    def test_get_config_invalid_integer_raises(self):
        with patch.dict(os.environ, {"INVOICE_EXPIRY_S": "soon"}):
            with pytest.raises(ValueError, match="INVOICE_EXPIRY_S"):
                get_config()

    def test_public_base_url_trailing_slash_stripped(self):
        with patch.dict(os.environ, {"PUBLIC_BASE_URL": "https://pins.example/"}):
            assert get_config()["PUBLIC_BASE_URL"] == "https://pins.example"


class TestWebhookSecretFor:
    def test_each_backend_has_its_own_secret(self):
        config = {"LNBITS_WEBHOOK_SECRET": "a", "OPENNODE_API_KEY": "b", "LND_WEBHOOK_SECRET": "c"}

        assert webhook_secret_for(config, "lnbits") == "a"
        assert webhook_secret_for(config, "opennode") == "b"
        assert webhook_secret_for(config, "lnd_rest") == "c"
        assert webhook_secret_for(config, "dev") is None


class TestValidateConfig:
    """Test configuration validation for production."""

    @pytest.fixture
    def production(self):
        return {
            "FLASK_ENV": "production",
            "FLASK_SECRET_KEY": "flask-secret",
            "PRESENCE_TOKEN_SECRET": "presence-secret",
            "LIGHTNING_PROVIDER": "lnbits",
            "LNBITS_API_KEY": "key",
            "LNBITS_WEBHOOK_SECRET": "whsec",
            "FEATURE_DEV_PAYMENTS": False,
        }

    def test_validate_config_development_passes(self):
        config = {"FLASK_ENV": "development", "PRESENCE_TOKEN_SECRET": None, "FLASK_SECRET_KEY": None}

        assert validate_config(config) is True

    def test_unknown_provider_rejected_everywhere(self):
        with pytest.raises(ValueError, match="LIGHTNING_PROVIDER"):
            validate_config({"FLASK_ENV": "development", "LIGHTNING_PROVIDER": "strike"})

    def test_production_passes(self, production):
        assert validate_config(production) is True

    def test_production_requires_presence_secret(self, production):
        production["PRESENCE_TOKEN_SECRET"] = None
        with pytest.raises(ValueError, match="PRESENCE_TOKEN_SECRET"):
            validate_config(production)

    def test_production_rejects_dev_presence_secret(self, production):
        production["PRESENCE_TOKEN_SECRET"] = DEV_PRESENCE_SECRET
        with pytest.raises(ValueError, match="PRESENCE_TOKEN_SECRET"):
            validate_config(production)

    def test_production_requires_flask_secret(self, production):
        production["FLASK_SECRET_KEY"] = None
        with pytest.raises(ValueError, match="FLASK_SECRET_KEY"):
            validate_config(production)

    def test_production_requires_backend_credentials(self, production):
        production["LNBITS_API_KEY"] = None
        with pytest.raises(ValueError, match="LNBITS_API_KEY"):
            validate_config(production)

    def test_production_lnd_requires_url_and_macaroon(self, production):
        production.update({"LIGHTNING_PROVIDER": "lnd_rest", "LND_REST_URL": "https://node:8080", "LND_MACAROON": None})
        with pytest.raises(ValueError, match="LND_MACAROON"):
            validate_config(production)

    def test_missing_webhook_secret_warns(self, production):
        production["LNBITS_WEBHOOK_SECRET"] = None
        with pytest.warns(UserWarning, match="Webhook secret"):
            assert validate_config(production) is True

    def test_dev_payments_in_production_warns(self, production):
        production["FEATURE_DEV_PAYMENTS"] = True
        with pytest.warns(UserWarning, match="FEATURE_DEV_PAYMENTS"):
            validate_config(production)
