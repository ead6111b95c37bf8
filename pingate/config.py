"""Configuration management for PinGate.

Centralises environment variable loading and validation logic while keeping the
public API intentionally simple. The resulting mapping is built once at startup
and handed to ``create_app``; nothing else reads the environment at call time.
"""

from __future__ import annotations

import os
import warnings
from typing import Any, Mapping, Optional, TypedDict

_TRUTHY_VALUES = {"1", "true", "yes", "on"}

DEV_PRESENCE_SECRET = "dev-presence-secret-CHANGE-ME"

LIGHTNING_PROVIDERS = ("dev", "lnbits", "opennode", "lnd_rest")


class AppConfig(TypedDict):
    """Typed representation of the application's configuration."""

    FLASK_ENV: str
    FLASK_SECRET_KEY: Optional[str]
    PRESENCE_TOKEN_SECRET: Optional[str]
    PRESENCE_TOKEN_TTL_S: int
    MAX_ACCURACY_M: int
    MAX_DISTANCE_M: int
    LIGHTNING_PROVIDER: str
    LNBITS_URL: str
    LNBITS_API_KEY: Optional[str]
    LNBITS_WEBHOOK_SECRET: Optional[str]
    OPENNODE_API_KEY: Optional[str]
    OPENNODE_TEST_MODE: bool
    LND_REST_URL: str
    LND_MACAROON: Optional[str]
    LND_WEBHOOK_SECRET: Optional[str]
    INVOICE_EXPIRY_S: int
    PUBLIC_BASE_URL: str
    POST_PRICE_SATS: int
    BOOST_PRICE_SATS: int
    DELETE_PRICE_SATS: int
    SPONSOR_BASE_PRICE_SATS: int
    MERCHANT_CLAIM_PRICE_SATS: int
    BOOST_DURATION_HOURS: int
    SPONSOR_WINDOW_HOURS: int
    FREE_POSTS_PER_DAY: int
    FREE_DELETE_WINDOW_S: int
    LNURL_CHALLENGE_TTL_S: int
    FEATURE_LNURL_AUTH: bool
    FEATURE_MERCHANTS: bool
    FEATURE_DEV_PAYMENTS: bool
    DATABASE_URL: str
    REDIS_URL: Optional[str]
    REDIS_HOST: Optional[str]
    REDIS_PORT: int
    REDIS_PASSWORD: Optional[str]
    REDIS_DB: int
    RATE_LIMIT_ENABLED: bool
    RATE_LIMIT_DEFAULT: str
    FORCE_HTTPS: bool
    LOG_LEVEL: str
    APP_NAME: str
    APP_VERSION: str


def _get_env_bool(name: str, default: bool) -> bool:
    """Return an environment variable as a boolean."""

    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in _TRUTHY_VALUES


def _get_env_int(name: str, default: int) -> int:
    """Return an environment variable as an integer, raising on invalid input."""

    raw_value = os.getenv(name)
    if raw_value is None or raw_value == "":
        return default

    try:
        return int(raw_value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer (got {raw_value!r})") from exc


def get_config() -> AppConfig:
    """Load application configuration from environment variables."""

    flask_env = os.getenv("FLASK_ENV", "development")

    return {
        # Flask
        "FLASK_ENV": flask_env,
        "FLASK_SECRET_KEY": os.getenv("FLASK_SECRET_KEY"),
        # Presence tokens and geofencing
        "PRESENCE_TOKEN_SECRET": os.getenv("PRESENCE_TOKEN_SECRET"),
        "PRESENCE_TOKEN_TTL_S": _get_env_int("PRESENCE_TOKEN_TTL_S", 120),
        "MAX_ACCURACY_M": _get_env_int("MAX_ACCURACY_M", 150),
        "MAX_DISTANCE_M": _get_env_int("MAX_DISTANCE_M", 200),
        # Lightning backend selection
        "LIGHTNING_PROVIDER": os.getenv("LIGHTNING_PROVIDER", "dev").strip().lower(),
        "LNBITS_URL": os.getenv("LNBITS_URL", "https://legend.lnbits.com"),
        "LNBITS_API_KEY": os.getenv("LNBITS_API_KEY"),
        "LNBITS_WEBHOOK_SECRET": os.getenv("LNBITS_WEBHOOK_SECRET"),
        "OPENNODE_API_KEY": os.getenv("OPENNODE_API_KEY"),
        "OPENNODE_TEST_MODE": _get_env_bool("OPENNODE_TEST_MODE", False),
        "LND_REST_URL": os.getenv("LND_REST_URL", ""),
        "LND_MACAROON": os.getenv("LND_MACAROON") or os.getenv("LND_MACAROON_HEX"),
        "LND_WEBHOOK_SECRET": os.getenv("LND_WEBHOOK_SECRET"),
        "INVOICE_EXPIRY_S": _get_env_int("INVOICE_EXPIRY_S", 900),
        "PUBLIC_BASE_URL": os.getenv("PUBLIC_BASE_URL", "http://localhost:5000").rstrip("/"),
        # Prices and durations
        "POST_PRICE_SATS": _get_env_int("POST_PRICE_SATS", 5),
        "BOOST_PRICE_SATS": _get_env_int("BOOST_PRICE_SATS", 5),
        "DELETE_PRICE_SATS": _get_env_int("DELETE_PRICE_SATS", 5),
        "SPONSOR_BASE_PRICE_SATS": _get_env_int("SPONSOR_BASE_PRICE_SATS", 1000),
        "MERCHANT_CLAIM_PRICE_SATS": _get_env_int("MERCHANT_CLAIM_PRICE_SATS", 1000),
        "BOOST_DURATION_HOURS": _get_env_int("BOOST_DURATION_HOURS", 24),
        "SPONSOR_WINDOW_HOURS": _get_env_int("SPONSOR_WINDOW_HOURS", 24),
        "FREE_POSTS_PER_DAY": _get_env_int("FREE_POSTS_PER_DAY", 3),
        "FREE_DELETE_WINDOW_S": _get_env_int("FREE_DELETE_WINDOW_S", 600),
        "LNURL_CHALLENGE_TTL_S": _get_env_int("LNURL_CHALLENGE_TTL_S", 300),
        # Feature switches
        "FEATURE_LNURL_AUTH": _get_env_bool("FEATURE_LNURL_AUTH", True),
        "FEATURE_MERCHANTS": _get_env_bool("FEATURE_MERCHANTS", True),
        "FEATURE_DEV_PAYMENTS": _get_env_bool("FEATURE_DEV_PAYMENTS", flask_env != "production"),
        # Storage
        "DATABASE_URL": os.getenv("DATABASE_URL", "sqlite:///pingate.db"),
        "REDIS_URL": os.getenv("REDIS_URL") or os.getenv("REDIS_DSN"),
        "REDIS_HOST": os.getenv("REDIS_HOST"),
        "REDIS_PORT": _get_env_int("REDIS_PORT", 6379),
        "REDIS_PASSWORD": os.getenv("REDIS_PASSWORD"),
        "REDIS_DB": _get_env_int("REDIS_DB", 0),
        # Rate limiting
        "RATE_LIMIT_ENABLED": _get_env_bool("RATE_LIMIT_ENABLED", True),
        "RATE_LIMIT_DEFAULT": os.getenv("RATE_LIMIT_DEFAULT", "300/hour"),
        "FORCE_HTTPS": _get_env_bool("FORCE_HTTPS", flask_env.lower() == "production"),
        # Logging
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        # Application Settings
        "APP_NAME": os.getenv("APP_NAME", "PinGate"),
        "APP_VERSION": os.getenv("APP_VERSION", "1.0.0"),
    }


def webhook_secret_for(config: Mapping[str, Any], provider: str) -> Optional[str]:
    """Return the shared secret used to authenticate webhooks from ``provider``."""

    if provider == "lnbits":
        return config.get("LNBITS_WEBHOOK_SECRET")
    if provider == "opennode":
        # OpenNode signs charge ids with the API key itself.
        return config.get("OPENNODE_API_KEY")
    if provider == "lnd_rest":
        return config.get("LND_WEBHOOK_SECRET")
    return None


def validate_config(config: Mapping[str, Any]) -> bool:
    """Validate critical configuration values.

    Args:
        config: Configuration mapping to validate.

    Returns:
        True if configuration is valid, raises ValueError otherwise.
    """

    provider = config.get("LIGHTNING_PROVIDER", "dev")
    if provider not in LIGHTNING_PROVIDERS:
        raise ValueError(f"Unknown LIGHTNING_PROVIDER {provider!r}")

    if config.get("FLASK_ENV") != "production":
        return True

    secret = config.get("PRESENCE_TOKEN_SECRET")
    if not secret or secret == DEV_PRESENCE_SECRET:
        raise ValueError("PRESENCE_TOKEN_SECRET must be set for production!")

    if not config.get("FLASK_SECRET_KEY"):
        raise ValueError("FLASK_SECRET_KEY must be set for production!")

    if provider == "lnbits" and not config.get("LNBITS_API_KEY"):
        raise ValueError("LNBITS_API_KEY must be set when LIGHTNING_PROVIDER=lnbits")
    if provider == "opennode" and not config.get("OPENNODE_API_KEY"):
        raise ValueError("OPENNODE_API_KEY must be set when LIGHTNING_PROVIDER=opennode")
    if provider == "lnd_rest" and not (config.get("LND_REST_URL") and config.get("LND_MACAROON")):
        raise ValueError("LND_REST_URL and LND_MACAROON must be set when LIGHTNING_PROVIDER=lnd_rest")

    if provider != "dev" and not webhook_secret_for(config, provider):
        warnings.warn(
            f"Webhook secret for {provider} not set - its webhook endpoint will reject every delivery",
            stacklevel=2,
        )

    if provider == "dev":
        warnings.warn("Using DEV Lightning provider in production mode", stacklevel=2)

    if config.get("FEATURE_DEV_PAYMENTS"):
        warnings.warn("FEATURE_DEV_PAYMENTS enabled in production - invoices can be marked paid", stacklevel=2)

    return True
