"""Lightning payment backends.

``build_provider`` is called once at startup with the loaded configuration and
returns the single provider instance the process uses.
"""

from typing import Optional

from pingate.config import AppConfig, webhook_secret_for
from pingate.payments.base import (
    STATUS_EXPIRED,
    STATUS_PAID,
    STATUS_PENDING,
    LightningInvoice,
    LightningProvider,
    WebhookEvent,
)
from pingate.payments.dev import DevLightningProvider
from pingate.payments.lnbits import LNbitsProvider
from pingate.payments.lnd import LndRestProvider
from pingate.payments.opennode import OpenNodeProvider

__all__ = [
    "STATUS_EXPIRED",
    "STATUS_PAID",
    "STATUS_PENDING",
    "LightningInvoice",
    "LightningProvider",
    "WebhookEvent",
    "DevLightningProvider",
    "LNbitsProvider",
    "LndRestProvider",
    "OpenNodeProvider",
    "build_provider",
]


def _webhook_url(config: AppConfig, provider: str) -> Optional[str]:
    base = config["PUBLIC_BASE_URL"]
    return f"{base.rstrip('/')}/api/webhooks/{provider}" if base else None


def build_provider(config: AppConfig) -> LightningProvider:
    name = config["LIGHTNING_PROVIDER"]
    expiry_s = config["INVOICE_EXPIRY_S"]

    if name == "lnbits":
        return LNbitsProvider(
            base_url=config["LNBITS_URL"],
            api_key=config["LNBITS_API_KEY"],
            webhook_secret=webhook_secret_for(config, "lnbits"),
            webhook_url=_webhook_url(config, "lnbits"),
            expiry_s=expiry_s,
        )
    if name == "opennode":
        return OpenNodeProvider(
            api_key=config["OPENNODE_API_KEY"],
            test_mode=config["OPENNODE_TEST_MODE"],
            webhook_url=_webhook_url(config, "opennode"),
        )
    if name == "lnd_rest":
        return LndRestProvider(
            base_url=config["LND_REST_URL"],
            macaroon=config["LND_MACAROON"],
            webhook_secret=webhook_secret_for(config, "lnd_rest"),
            expiry_s=expiry_s,
        )
    if name == "dev":
        return DevLightningProvider(expiry_s=expiry_s)
    raise ValueError(f"Unknown LIGHTNING_PROVIDER: {name}")
