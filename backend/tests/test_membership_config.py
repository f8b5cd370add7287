from datetime import datetime, timezone

import pytest

from backend.app.membership import (
    BillingCycle,
    MembershipConfig,
    MembershipService,
    MembershipTier,
    MembershipValidationError,
    Money,
    load_membership_config,
)
from backend.app.membership.memory import InMemoryUnitOfWork


class _NullEventLogger:
    def log(self, entry) -> None:
        pass


def test_defaults_when_environment_is_empty():
    config = load_membership_config({})

    assert config == MembershipConfig()
    assert config.default_currency == "SAR"
    assert config.transaction_retries == 3
    assert config.one_membership_per_subscriber is False


def test_values_are_read_from_environment():
    config = load_membership_config(
        {
            "MEMBERSHIP_DEFAULT_CURRENCY": " usd ",
            "MEMBERSHIP_ONE_PER_SUBSCRIBER": "yes",
            "MEMBERSHIP_TRANSACTION_RETRIES": "5",
            "MEMBERSHIP_LEDGER_FALLBACK_DAYS": "14",
            "MEMBERSHIP_EXPIRING_SOON_DAYS": "7",
            "MEMBERSHIP_MAX_RENEWAL_MONTHS": "24",
            "MEMBERSHIP_DEFAULT_PAGE_SIZE": "50",
        }
    )

    assert config.default_currency == "USD"
    assert config.one_membership_per_subscriber is True
    assert config.transaction_retries == 5
    assert config.ledger_fallback_days == 14
    assert config.expiring_soon_days == 7
    assert config.max_renewal_months == 24
    assert config.default_page_size == 50


def test_numeric_values_are_clamped():
    config = load_membership_config(
        {
            "MEMBERSHIP_TRANSACTION_RETRIES": "0",
            "MEMBERSHIP_EXPIRING_SOON_DAYS": "-4",
            "MEMBERSHIP_DEFAULT_PAGE_SIZE": "",
        }
    )

    assert config.transaction_retries == 1
    assert config.expiring_soon_days == 0
    assert config.default_page_size == 20


def test_unrecognised_boolean_falls_back_to_default():
    config = load_membership_config({"MEMBERSHIP_ONE_PER_SUBSCRIBER": "maybe"})
    assert config.one_membership_per_subscriber is False


@pytest.mark.parametrize(
    "env",
    [
        {"MEMBERSHIP_TRANSACTION_RETRIES": "three"},
        {"MEMBERSHIP_DEFAULT_CURRENCY": "RIYAL"},
        {"MEMBERSHIP_DEFAULT_CURRENCY": "12$"},
    ],
)
def test_invalid_values_raise(env):
    with pytest.raises(ValueError):
        load_membership_config(env)


def test_service_honours_configured_currency_and_renewal_cap():
    tier = MembershipTier(
        id=1,
        name="Basic",
        price=Money.of(100, "SAR"),
        billing_cycle=BillingCycle.MONTHLY,
    )
    service = MembershipService(
        unit_of_work=InMemoryUnitOfWork(tiers=[tier]),
        event_logger=_NullEventLogger(),
        config=MembershipConfig(default_currency="USD", max_renewal_months=24),
        clock=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc),
    )

    with pytest.raises(MembershipValidationError) as excinfo:
        service.create_membership("sub-1", 1)
    assert excinfo.value.reason == "currency_mismatch"

    service.config = MembershipConfig(max_renewal_months=24)
    membership = service.create_membership("sub-1", 1)
    renewed = service.renew_membership(membership.id, months=18)
    assert renewed.end_date == datetime(2025, 8, 1, tzinfo=timezone.utc)
