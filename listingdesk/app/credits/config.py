"""Configuration for credits, pricing, and payment provider access."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .catalog import PriceCatalog, build_price_catalog, parse_credit_packs


@dataclass(frozen=True)
class CreditsConfig:
    """Settings for the credits ledger and billing integration."""

    catalog: PriceCatalog
    min_free_credits: int
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    site_url: str
    store_backend: str


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def load_credits_config(env: Optional[Mapping[str, str]] = None) -> CreditsConfig:
    """Load :class:`CreditsConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    catalog = build_price_catalog(
        starter_price_id=_clean(env_mapping.get("STARTER_PRICE_ID")),
        premium_price_id=_clean(env_mapping.get("PREMIUM_PRICE_ID")),
        coins_price_id=_clean(env_mapping.get("COINS_PRICE_ID")),
        coins_credits=_to_int(env_mapping.get("COINS_CREDITS"), default=15),
        starter_monthly_credits=_to_int(env_mapping.get("STARTER_MONTHLY_CREDITS"), default=25),
        premium_monthly_credits=_to_int(env_mapping.get("PREMIUM_MONTHLY_CREDITS"), default=0),
        extra_credit_packs=parse_credit_packs(env_mapping.get("CREDIT_PACK_PRICES")),
    )

    min_free_credits = _to_int(env_mapping.get("MIN_FREE_CREDITS"), default=4)
    if min_free_credits < 0:
        raise ValueError("MIN_FREE_CREDITS must be non-negative")

    site_url = (env_mapping.get("SITE_URL") or "http://localhost:3000").strip().rstrip("/")
    store_backend = (env_mapping.get("CREDITS_STORE") or "postgres").strip().lower()
    if store_backend not in {"postgres", "memory"}:
        raise ValueError("CREDITS_STORE must be 'postgres' or 'memory'")

    return CreditsConfig(
        catalog=catalog,
        min_free_credits=min_free_credits,
        stripe_secret_key=_clean(env_mapping.get("STRIPE_SECRET_KEY")),
        stripe_webhook_secret=_clean(env_mapping.get("STRIPE_WEBHOOK_SECRET")),
        site_url=site_url,
        store_backend=store_backend,
    )


__all__ = ["CreditsConfig", "load_credits_config"]
