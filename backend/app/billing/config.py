"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
import os


SANDBOX_GATEWAY = "sandbox"
STRIPE_GATEWAY = "stripe"
_PRICE_PREFIX = "STRIPE_PRICE_"


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the payment gateway and ledger locking."""

    gateway_name: str
    stripe_secret_key: Optional[str]
    stripe_max_network_retries: int
    currency: str
    lock_timeout_ms: int
    price_ids: Dict[str, str] = field(default_factory=dict)


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _price_ids(env_mapping: Mapping[str, str]) -> Dict[str, str]:
    price_ids: Dict[str, str] = {}
    for name, value in env_mapping.items():
        if not name.startswith(_PRICE_PREFIX) or not value:
            continue
        plan_key = name[len(_PRICE_PREFIX):].strip().lower()
        if plan_key:
            price_ids[plan_key] = value.strip()
    return price_ids


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    gateway_name = (env_mapping.get("BILLING_GATEWAY") or SANDBOX_GATEWAY).strip().lower()
    if gateway_name not in {SANDBOX_GATEWAY, STRIPE_GATEWAY}:
        raise ValueError(f"Unsupported BILLING_GATEWAY {gateway_name!r}")

    stripe_secret_key = (env_mapping.get("STRIPE_SECRET_KEY") or "").strip() or None
    if gateway_name == STRIPE_GATEWAY and not stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is required when BILLING_GATEWAY=stripe")

    retries = max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=0))
    currency = (env_mapping.get("BILLING_CURRENCY") or "USD").strip().upper()
    lock_timeout_ms = max(0, _to_int(env_mapping.get("BILLING_LOCK_TIMEOUT_MS"), default=5000))

    return BillingConfig(
        gateway_name=gateway_name,
        stripe_secret_key=stripe_secret_key,
        stripe_max_network_retries=retries,
        currency=currency,
        lock_timeout_ms=lock_timeout_ms,
        price_ids=_price_ids(env_mapping),
    )


__all__ = ["BillingConfig", "SANDBOX_GATEWAY", "STRIPE_GATEWAY", "load_billing_config"]
