"""The per-process service objects, built once from configuration."""

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from pingate.config import DEV_PRESENCE_SECRET, AppConfig
from pingate.geo import LocationResolver
from pingate.ledger import InvoiceLedger
from pingate.lnurl import LnurlAuthService
from pingate.payments import LightningProvider, build_provider
from pingate.presence import PresenceTokenService
from pingate.sponsorship import LocationLocks, SponsorshipScheduler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    provider: LightningProvider
    presence: PresenceTokenService
    resolver: LocationResolver
    scheduler: SponsorshipScheduler
    ledger: InvoiceLedger
    lnurl: LnurlAuthService


def build_services(cfg: AppConfig, redis_client=None, provider: Optional[LightningProvider] = None) -> Services:
    secret = cfg["PRESENCE_TOKEN_SECRET"]
    if not secret:
        logger.warning("PRESENCE_TOKEN_SECRET not set, using the development secret")
        secret = DEV_PRESENCE_SECRET

    provider = provider or build_provider(cfg)
    presence = PresenceTokenService(secret, ttl_s=cfg["PRESENCE_TOKEN_TTL_S"])
    scheduler = SponsorshipScheduler(
        base_price_sats=cfg["SPONSOR_BASE_PRICE_SATS"],
        window_hours=cfg["SPONSOR_WINDOW_HOURS"],
        locks=LocationLocks(redis_client),
    )
    logger.info(f"Lightning provider: {provider.name}")
    return Services(
        config=cfg,
        provider=provider,
        presence=presence,
        resolver=LocationResolver(cfg["MAX_ACCURACY_M"], cfg["MAX_DISTANCE_M"]),
        scheduler=scheduler,
        ledger=InvoiceLedger(provider, presence, scheduler, cfg),
        lnurl=LnurlAuthService(cfg),
    )


def get_services() -> Services:
    return current_app.extensions["pingate"]
