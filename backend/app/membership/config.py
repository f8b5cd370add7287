"""Membership engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class MembershipConfig:
    """Tunables for the membership lifecycle and quota engine."""

    default_currency: str = "SAR"
    one_membership_per_subscriber: bool = False
    transaction_retries: int = 3
    ledger_fallback_days: int = 30
    expiring_soon_days: int = 30
    max_renewal_months: int = 12
    default_page_size: int = 20


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def load_membership_config(env: Optional[Mapping[str, str]] = None) -> MembershipConfig:
    """Load :class:`MembershipConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    currency = (env_mapping.get("MEMBERSHIP_DEFAULT_CURRENCY") or "SAR").strip().upper() or "SAR"
    if len(currency) != 3 or not currency.isalpha():
        raise ValueError(f"Expected ISO 4217 currency code, got {currency!r}")

    one_per_subscriber = _to_bool(env_mapping.get("MEMBERSHIP_ONE_PER_SUBSCRIBER"), default=False)
    retries = max(1, _to_int(env_mapping.get("MEMBERSHIP_TRANSACTION_RETRIES"), default=3))
    fallback_days = max(1, _to_int(env_mapping.get("MEMBERSHIP_LEDGER_FALLBACK_DAYS"), default=30))
    expiring_days = max(0, _to_int(env_mapping.get("MEMBERSHIP_EXPIRING_SOON_DAYS"), default=30))
    max_months = max(1, _to_int(env_mapping.get("MEMBERSHIP_MAX_RENEWAL_MONTHS"), default=12))
    page_size = max(1, _to_int(env_mapping.get("MEMBERSHIP_DEFAULT_PAGE_SIZE"), default=20))

    return MembershipConfig(
        default_currency=currency,
        one_membership_per_subscriber=one_per_subscriber,
        transaction_retries=retries,
        ledger_fallback_days=fallback_days,
        expiring_soon_days=expiring_days,
        max_renewal_months=max_months,
        default_page_size=page_size,
    )


__all__ = ["MembershipConfig", "load_membership_config"]
