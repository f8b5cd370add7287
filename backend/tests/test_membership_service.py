"""Lifecycle tests for the membership service backed by the in-memory store."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from backend.app.membership import (
    BillingCycle,
    ChangeLogEntry,
    ChangeReason,
    ConflictError,
    InvalidStateError,
    MembershipConfig,
    MembershipService,
    MembershipStatus,
    MembershipTier,
    MembershipValidationError,
    Money,
    NotFoundError,
    QuotaResource,
    TransactionConflict,
)
from backend.app.membership.memory import InMemoryUnitOfWork


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingEventLogger:
    def __init__(self) -> None:
        self.entries: List[ChangeLogEntry] = []

    def log(self, entry: ChangeLogEntry) -> None:
        self.entries.append(entry)


class FlakyUnitOfWork:
    """Aborts the first ``failures`` commits the way a serializable store would."""

    def __init__(self, inner: InMemoryUnitOfWork, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.attempts = 0

    @contextmanager
    def transaction(self):
        self.attempts += 1
        with self.inner.transaction() as tx:
            yield tx
            if self.failures > 0:
                self.failures -= 1
                raise TransactionConflict("could not serialize access due to concurrent update")


def _fixed_clock() -> datetime:
    return datetime(2024, 1, 1, tzinfo=timezone.utc)


def _tiers() -> List[MembershipTier]:
    return [
        MembershipTier(
            id=1,
            name="Basic",
            price=Money.of(100, "SAR"),
            billing_cycle=BillingCycle.MONTHLY,
            quota={QuotaResource.CONSULTATIONS: 5, QuotaResource.OPINIONS: 2},
        ),
        MembershipTier(
            id=2,
            name="Premium",
            price=Money.of(200, "SAR"),
            billing_cycle=BillingCycle.MONTHLY,
            quota={QuotaResource.CONSULTATIONS: 20},
        ),
        MembershipTier(
            id=4,
            name="Legacy",
            price=Money.of(150, "SAR"),
            billing_cycle=BillingCycle.MONTHLY,
            is_active=False,
        ),
    ]


def _build(config: MembershipConfig = MembershipConfig()):
    clock = MutableClock(_fixed_clock())
    unit_of_work = InMemoryUnitOfWork(tiers=_tiers())
    event_logger = RecordingEventLogger()
    service = MembershipService(
        unit_of_work=unit_of_work,
        event_logger=event_logger,
        config=config,
        clock=clock,
    )
    return unit_of_work, event_logger, clock, service


@pytest.fixture
def membership_components():
    return _build()


def test_create_membership_opens_first_ledger_period(membership_components):
    unit_of_work, _, clock, service = membership_components

    membership = service.create_membership("sub-1", 1)

    assert membership.status == MembershipStatus.ACTIVE
    assert membership.start_date == clock.now
    assert membership.end_date == datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert membership.price == Money.of(100, "SAR")
    assert membership.auto_renew is True

    entry = unit_of_work.ledger.find_current_period(membership.id, clock.now)
    assert entry is not None
    assert entry.period_start == membership.start_date
    assert entry.period_end == membership.end_date
    assert all(value == 0 for value in entry.usage.values())


def test_create_membership_rejects_second_active_membership(membership_components):
    _, _, _, service = membership_components
    existing = service.create_membership("sub-1", 1)

    with pytest.raises(ConflictError) as excinfo:
        service.create_membership("sub-1", 2)

    assert excinfo.value.payload["membership_id"] == existing.id
    assert excinfo.value.status_code == 409


def test_create_membership_validates_tier(membership_components):
    _, _, _, service = membership_components

    with pytest.raises(NotFoundError):
        service.create_membership("sub-1", 99)

    with pytest.raises(InvalidStateError):
        service.create_membership("sub-1", 4)


def test_one_membership_policy_blocks_new_membership_after_cancel():
    _, _, _, service = _build(MembershipConfig(one_membership_per_subscriber=True))
    membership = service.create_membership("sub-1", 1)
    service.cancel_membership(membership.id)

    with pytest.raises(ConflictError, match="reactivate"):
        service.create_membership("sub-1", 1)


def test_cancel_membership_records_change_and_emits_event(membership_components):
    unit_of_work, event_logger, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)
    clock.advance(days=3)

    cancelled = service.cancel_membership(membership.id, cancelled_by="admin-7", reason="moving abroad")

    assert cancelled.status == MembershipStatus.CANCELLED
    assert cancelled.end_date == clock.now
    assert cancelled.auto_renew is False

    latest = service.latest_change(membership.id)
    assert latest is not None
    assert latest.reason == ChangeReason.CANCELLATION
    assert latest.changed_by == "admin-7"
    assert latest.metadata["reason"] == "moving abroad"
    assert event_logger.entries[-1].id == latest.id

    with pytest.raises(InvalidStateError, match="already cancelled"):
        service.cancel_membership(membership.id)


def test_pause_and_resume_with_extension(membership_components):
    _, _, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)

    paused = service.pause_membership(membership.id, reason="travel")
    assert paused.status == MembershipStatus.PAUSED
    assert paused.paused_at == clock.now
    assert paused.tier_id == 1

    with pytest.raises(InvalidStateError):
        service.pause_membership(membership.id)
    with pytest.raises(InvalidStateError):
        service.consume_quota(membership.id, QuotaResource.CONSULTATIONS)

    clock.advance(days=10)
    resumed = service.resume_membership(membership.id, extend_end_date=True)

    assert resumed.status == MembershipStatus.ACTIVE
    assert resumed.paused_at is None
    assert resumed.end_date == datetime(2024, 3, 1, tzinfo=timezone.utc)

    latest = service.latest_change(membership.id)
    assert latest.reason == ChangeReason.RESUME
    assert latest.metadata["extension_days"] == 10
    assert latest.metadata["extension_months"] == 1


def test_pause_until_must_be_in_the_future(membership_components):
    _, _, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)

    with pytest.raises(MembershipValidationError):
        service.pause_membership(membership.id, pause_until=clock.now - timedelta(days=1))


def test_renew_extends_from_existing_end_date(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)

    renewed = service.renew_membership(membership.id)
    assert renewed.end_date == datetime(2024, 3, 1, tzinfo=timezone.utc)

    renewed = service.renew_membership(membership.id, months=3)
    assert renewed.end_date == datetime(2024, 6, 1, tzinfo=timezone.utc)

    history = service.change_history(membership.id)
    assert [entry.reason for entry in history] == [ChangeReason.RENEWAL, ChangeReason.RENEWAL]
    assert history[0].metadata["months"] == 3


@pytest.mark.parametrize("months", [0, 13, -1])
def test_renew_rejects_out_of_range_durations(membership_components, months):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)

    with pytest.raises(MembershipValidationError):
        service.renew_membership(membership.id, months=months)


def test_renew_cancelled_membership_is_invalid(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)
    service.cancel_membership(membership.id)

    with pytest.raises(InvalidStateError, match="reactivate"):
        service.renew_membership(membership.id)


def test_reactivate_cancelled_membership(membership_components):
    _, _, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)
    service.cancel_membership(membership.id)
    clock.advance(days=5)

    reactivated = service.reactivate_membership(membership.id, months=6, reactivated_by="sub-1")

    assert reactivated.status == MembershipStatus.ACTIVE
    assert reactivated.end_date == datetime(2024, 7, 6, tzinfo=timezone.utc)
    assert reactivated.auto_renew is True

    latest = service.latest_change(membership.id)
    assert latest.reason == ChangeReason.REACTIVATION
    assert latest.old_tier_id is None
    assert latest.new_tier_id == 1


def test_reactivate_rules(membership_components):
    _, _, _, service = membership_components
    first = service.create_membership("sub-1", 1)

    with pytest.raises(InvalidStateError, match="Use renew instead"):
        service.reactivate_membership(first.id, months=1)

    service.cancel_membership(first.id)
    with pytest.raises(MembershipValidationError):
        service.reactivate_membership(first.id, months=0)

    service.create_membership("sub-1", 2)
    with pytest.raises(ConflictError):
        service.reactivate_membership(first.id, months=1)


def test_toggle_auto_renew(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)

    toggled = service.toggle_auto_renew(membership.id)
    assert toggled.auto_renew is False
    assert service.latest_change(membership.id).metadata == {"auto_renew": False}

    unchanged = service.toggle_auto_renew(membership.id, enabled=False)
    assert unchanged.auto_renew is False
    assert len(service.change_history(membership.id)) == 1


def test_expire_memberships_moves_lapsed_memberships_to_expired(membership_components):
    _, event_logger, clock, service = membership_components
    lapsed = service.create_membership("sub-1", 1)
    clock.advance(days=10)
    current = service.create_membership("sub-2", 1)
    clock.now = datetime(2024, 2, 2, tzinfo=timezone.utc)

    result = service.expire_memberships()

    assert result.processed_ids == [lapsed.id]
    assert result.failures == []
    assert service.get_membership(lapsed.id).status == MembershipStatus.EXPIRED
    assert service.get_membership(current.id).status == MembershipStatus.ACTIVE

    entry = event_logger.entries[-1]
    assert entry.reason == ChangeReason.EXPIRATION
    assert entry.changed_by == "system"

    assert service.expire_memberships().processed == 0


def test_expire_memberships_collects_failures_and_continues(membership_components):
    unit_of_work, _, clock, service = membership_components
    failing = service.create_membership("sub-1", 1)
    healthy = service.create_membership("sub-2", 1)
    clock.now = datetime(2024, 3, 1, tzinfo=timezone.utc)

    original_update = unit_of_work.memberships.update

    def flaky_update(membership):
        if membership.id == failing.id:
            raise RuntimeError("disk full")
        return original_update(membership)

    unit_of_work.memberships.update = flaky_update  # type: ignore[method-assign]

    result = service.expire_memberships()

    assert result.processed_ids == [healthy.id]
    assert [failure.membership_id for failure in result.failures] == [failing.id]
    assert result.failures[0].error == "disk full"
    assert service.get_membership(failing.id).status == MembershipStatus.ACTIVE
    assert service.latest_change(failing.id) is None


def test_renew_expired_membership_counts_from_prior_end_date(membership_components):
    _, _, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)
    clock.now = datetime(2024, 2, 10, tzinfo=timezone.utc)
    service.expire_memberships()

    renewed = service.renew_membership(membership.id, months=2)

    assert renewed.status == MembershipStatus.ACTIVE
    assert renewed.end_date == datetime(2024, 4, 1, tzinfo=timezone.utc)


def test_membership_status_reports_expiry_window(membership_components):
    _, _, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)

    report = service.membership_status(membership.id)
    assert report.days_until_expiry == 31
    assert report.is_expiring_soon is False
    assert report.is_expired is False
    assert report.allowed_actions == [
        "cancel",
        "change_tier",
        "expire",
        "pause",
        "renew",
        "toggle_auto_renew",
    ]

    clock.advance(days=5)
    assert service.membership_status(membership.id).is_expiring_soon is True

    clock.now = datetime(2024, 2, 5, tzinfo=timezone.utc)
    lapsed = service.membership_status(membership.id)
    assert lapsed.is_expired is True
    assert lapsed.is_expiring_soon is False


def test_list_and_find_expiring(membership_components):
    _, _, clock, service = membership_components
    first = service.create_membership("sub-1", 1)
    second = service.create_membership("sub-2", 2)
    service.toggle_auto_renew(second.id)
    service.cancel_membership(first.id)
    service.create_membership("sub-3", 1)

    page = service.list_memberships(status=MembershipStatus.ACTIVE, limit=1)
    assert page.total == 2
    assert len(page.items) == 1

    assert service.list_memberships(tier_id=2).items[0].id == second.id
    assert service.list_memberships().limit == 20

    clock.advance(days=20)
    expiring = service.find_expiring()
    assert {item.subscriber_id for item in expiring} == {"sub-2", "sub-3"}
    not_renewing = service.find_expiring(include_auto_renew=False)
    assert [item.id for item in not_renewing] == [second.id]

    with pytest.raises(MembershipValidationError):
        service.list_memberships(limit=0)


def test_get_active_membership(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)

    assert service.get_active_membership("sub-1").id == membership.id
    assert service.get_active_membership("sub-unknown") is None

    with pytest.raises(NotFoundError):
        service.get_membership("missing")
    with pytest.raises(NotFoundError):
        service.change_history("missing")


def test_change_history_ordering_and_paging(membership_components):
    _, _, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)
    service.pause_membership(membership.id)
    clock.advance(hours=1)
    service.resume_membership(membership.id)
    clock.advance(hours=1)
    service.renew_membership(membership.id)

    newest = service.change_history(membership.id)
    assert [entry.reason for entry in newest] == [
        ChangeReason.RENEWAL,
        ChangeReason.RESUME,
        ChangeReason.PAUSE,
    ]
    oldest = service.change_history(membership.id, newest_first=False, limit=2, offset=1)
    assert [entry.reason for entry in oldest] == [ChangeReason.RESUME, ChangeReason.RENEWAL]


def test_failed_operation_rolls_back_every_store(membership_components):
    unit_of_work, event_logger, _, service = membership_components
    membership = service.create_membership("sub-1", 1)

    def broken_append(entry):
        raise RuntimeError("audit store offline")

    unit_of_work.change_log.append = broken_append  # type: ignore[method-assign]

    with pytest.raises(RuntimeError):
        service.cancel_membership(membership.id)

    assert service.get_membership(membership.id).status == MembershipStatus.ACTIVE
    assert event_logger.entries == []


def test_transaction_conflicts_are_retried():
    inner = InMemoryUnitOfWork(tiers=_tiers())
    flaky = FlakyUnitOfWork(inner, failures=2)
    service = MembershipService(
        unit_of_work=flaky,
        event_logger=RecordingEventLogger(),
        config=MembershipConfig(transaction_retries=3),
        clock=_fixed_clock,
    )

    membership = service.create_membership("sub-1", 1)

    assert flaky.attempts == 3
    assert inner.memberships.count() == 1
    assert inner.memberships.get(membership.id) is not None


def test_retry_budget_exhaustion_surfaces_conflict():
    inner = InMemoryUnitOfWork(tiers=_tiers())
    service = MembershipService(
        unit_of_work=inner,
        event_logger=RecordingEventLogger(),
        config=MembershipConfig(transaction_retries=2),
        clock=_fixed_clock,
    )
    membership = service.create_membership("sub-1", 1)
    service.unit_of_work = FlakyUnitOfWork(inner, failures=5)

    with pytest.raises(ConflictError):
        service.consume_quota(membership.id, QuotaResource.CONSULTATIONS)

    assert service.unit_of_work.attempts == 2
    entry = inner.ledger.find_current_period(membership.id, _fixed_clock())
    assert entry.used(QuotaResource.CONSULTATIONS) == 0


def test_tier_change_statistics(membership_components):
    _, _, clock, service = membership_components
    start = clock.now
    first = service.create_membership("sub-1", 1)
    service.upgrade(first.id, 2)
    second = service.create_membership("sub-2", 2)
    service.downgrade(second.id, 1, apply_immediately=True)
    service.cancel_membership(second.id)
    service.reactivate_membership(second.id, months=1)
    third = service.create_membership("sub-3", 2)
    service.downgrade(third.id, 1)
    clock.now = third.end_date
    assert service.apply_pending_tier_changes().processed_ids == [third.id]

    stats = service.tier_change_statistics(start, clock.now + timedelta(seconds=1))

    # the deferred downgrade counts once, when it takes effect
    assert stats.upgrades == 1
    assert stats.downgrades == 2
    assert stats.cancellations == 1
    assert stats.reactivations == 1
    assert stats.total == 5

    with pytest.raises(MembershipValidationError):
        service.tier_change_statistics(clock.now, start - timedelta(days=1))


def test_price_is_copied_from_tier(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 2)

    assert membership.price.amount == Decimal("200")
    assert membership.billing_cycle == BillingCycle.MONTHLY


def test_list_tiers_and_lookup_by_name(membership_components):
    _, _, _, service = membership_components

    assert [tier.id for tier in service.list_tiers()] == [1, 2]
    assert [tier.id for tier in service.list_tiers(active_only=False)] == [1, 4, 2]

    assert service.get_tier_by_name(" premium ").id == 2
    with pytest.raises(NotFoundError) as excinfo:
        service.get_tier_by_name("Gold")
    assert excinfo.value.payload["name"] == "Gold"


def test_cancelled_membership_only_allows_reactivation(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)
    service.cancel_membership(membership.id)

    assert service.membership_status(membership.id).allowed_actions == ["reactivate"]
