from __future__ import annotations

import logging
import os
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_MERIT_API_URL = "https://aktiva.merit.ee"
DEFAULT_VAT_TAX_ID = "307000b4-f1f2-4bc7-a110-24cb18d77212"


def _get_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value else None


def _env_flag(name: str) -> bool:
    return (_get_env(name) or "").lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s value: %s", name, raw)
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = _get_env(name)
    if not raw:
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


class SyncSettings(BaseModel):
    woocommerce_url: Optional[str] = None
    woocommerce_key: Optional[str] = None
    woocommerce_secret: Optional[str] = None
    webhook_secret: Optional[str] = None

    merit_api_url: str = DEFAULT_MERIT_API_URL
    merit_api_id: Optional[str] = None
    vat_tax_id: str = DEFAULT_VAT_TAX_ID

    order_statuses: tuple[str, ...] = ("completed", "processing")
    submit_delay_seconds: float = 0.5
    poll_interval_seconds: float = 30.0
    lookback_hours: float = 24.0
    duplicate_lookback_days: int = 90

    firestore_enabled: bool = False

    @property
    def woocommerce_configured(self) -> bool:
        return bool(self.woocommerce_url and self.woocommerce_key and self.woocommerce_secret)


def load_settings() -> SyncSettings:
    tax_id = _get_env("MERIT_VAT_TAX_ID")
    if not tax_id:
        logger.warning("MERIT_VAT_TAX_ID not configured, using default value")
    return SyncSettings(
        woocommerce_url=_get_env("WOOCOMMERCE_URL") or _get_env("WOOCOMMERCE_API_URL"),
        woocommerce_key=_get_env("WOOCOMMERCE_CONSUMER_KEY") or _get_env("WOOCOMMERCE_API_KEY"),
        woocommerce_secret=_get_env("WOOCOMMERCE_CONSUMER_SECRET") or _get_env("WOOCOMMERCE_API_SECRET"),
        webhook_secret=_get_env("WOOCOMMERCE_WEBHOOK_SECRET"),
        merit_api_url=_get_env("MERIT_API_URL") or DEFAULT_MERIT_API_URL,
        merit_api_id=_get_env("MERIT_API_ID"),
        vat_tax_id=tax_id or DEFAULT_VAT_TAX_ID,
        order_statuses=_env_list("SYNC_ORDER_STATUSES", ("completed", "processing")),
        submit_delay_seconds=_env_float("SYNC_SUBMIT_DELAY_SECONDS", 0.5),
        poll_interval_seconds=_env_float("SYNC_POLL_INTERVAL_SECONDS", 30.0),
        lookback_hours=_env_float("SYNC_LOOKBACK_HOURS", 24.0),
        duplicate_lookback_days=int(_env_float("DUPLICATE_LOOKBACK_DAYS", 90)),
        firestore_enabled=_env_flag("FIRESTORE_ENABLED"),
    )
