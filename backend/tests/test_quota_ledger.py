"""Quota ledger tests: allowance checks, period rollover, and concurrent consumption."""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from backend.app.membership import (
    BillingCycle,
    InvalidStateError,
    MembershipService,
    MembershipTier,
    MembershipValidationError,
    Money,
    QuotaExceededError,
    QuotaResource,
)
from backend.app.membership.memory import InMemoryUnitOfWork
from backend.app.membership.quota import assert_quota, evaluate_quota


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingEventLogger:
    def __init__(self) -> None:
        self.entries = []

    def log(self, entry) -> None:
        self.entries.append(entry)


def _tier(tier_id: int, name: str, price: int, quota) -> MembershipTier:
    return MembershipTier(
        id=tier_id,
        name=name,
        price=Money.of(price, "SAR"),
        billing_cycle=BillingCycle.MONTHLY,
        quota=quota,
    )


@pytest.fixture
def membership_components():
    clock = MutableClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
    unit_of_work = InMemoryUnitOfWork(
        tiers=[
            _tier(
                1,
                "Basic",
                100,
                {
                    QuotaResource.CONSULTATIONS: 5,
                    QuotaResource.OPINIONS: 2,
                    QuotaResource.SERVICES: 3,
                    QuotaResource.CASES: 1,
                    QuotaResource.CALL_MINUTES: 60,
                },
            ),
            _tier(2, "Premium", 200, {QuotaResource.CONSULTATIONS: 20}),
        ]
    )
    event_logger = RecordingEventLogger()
    service = MembershipService(unit_of_work=unit_of_work, event_logger=event_logger, clock=clock)
    return unit_of_work, event_logger, clock, service


def test_consume_until_limit_then_reject(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)

    for expected_used in range(1, 6):
        status = service.consume_quota(membership.id, QuotaResource.CONSULTATIONS)
        assert status.used == expected_used

    assert status.remaining == 0
    assert status.available is False

    with pytest.raises(QuotaExceededError) as excinfo:
        service.consume_quota(membership.id, QuotaResource.CONSULTATIONS)

    error = excinfo.value
    assert error.status_code == 403
    assert error.message == "consultations quota exceeded. Limit: 5, Current: 5"
    assert error.payload["requested"] == 1
    assert service.check_quota(membership.id, QuotaResource.CONSULTATIONS).used == 5


def test_bulk_consumption_is_all_or_nothing(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)
    service.consume_quota(membership.id, "call_minutes", amount=45)

    with pytest.raises(QuotaExceededError):
        service.consume_quota(membership.id, "call_minutes", amount=20)

    status = service.check_quota(membership.id, "CALL_MINUTES")
    assert status.used == 45
    assert status.remaining == 15


@pytest.mark.parametrize("amount", [0, -3, True, 1.5])
def test_consume_rejects_invalid_amounts(membership_components, amount):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)

    with pytest.raises(MembershipValidationError) as excinfo:
        service.consume_quota(membership.id, QuotaResource.CONSULTATIONS, amount=amount)

    assert excinfo.value.reason == "invalid_amount"


def test_unknown_resource_is_rejected(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)

    with pytest.raises(MembershipValidationError) as excinfo:
        service.check_quota(membership.id, "documents")

    assert excinfo.value.reason == "unknown_resource"


def test_unlimited_resource_never_blocks(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 2)

    status = service.consume_quota(membership.id, QuotaResource.OPINIONS, amount=500)

    assert status.used == 500
    assert status.limit is None
    assert status.remaining is None
    assert status.available is True


def test_consumption_requires_active_membership(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)
    service.cancel_membership(membership.id)

    with pytest.raises(InvalidStateError) as excinfo:
        service.consume_quota(membership.id, QuotaResource.CASES)

    assert excinfo.value.current_state == "cancelled"


def test_new_period_opens_after_the_previous_one_ends(membership_components):
    unit_of_work, _, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)
    service.consume_quota(membership.id, QuotaResource.CASES)

    clock.now = datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert service.check_quota(membership.id, QuotaResource.CASES).used == 0

    status = service.consume_quota(membership.id, QuotaResource.CASES)
    assert status.used == 1

    entries = unit_of_work.ledger.list_for_membership(membership.id)
    assert len(entries) == 2
    assert entries[1].period_start == clock.now
    assert entries[1].period_end == clock.now + timedelta(days=30)


def test_reset_quota_closes_current_period(membership_components):
    unit_of_work, _, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)
    service.consume_quota(membership.id, QuotaResource.CONSULTATIONS, amount=3)
    clock.advance(days=2)

    fresh = service.reset_quota(membership.id)

    assert fresh.period_start == clock.now
    assert fresh.period_end == membership.end_date
    assert all(value == 0 for value in fresh.usage.values())
    assert service.check_quota(membership.id, QuotaResource.CONSULTATIONS).used == 0

    closed, current = unit_of_work.ledger.list_for_membership(membership.id)
    assert closed.period_end == clock.now
    assert closed.used(QuotaResource.CONSULTATIONS) == 3
    assert current.id == fresh.id


def test_cancel_and_reactivate_realign_the_ledger(membership_components):
    unit_of_work, _, clock, service = membership_components
    membership = service.create_membership("sub-1", 1)
    service.consume_quota(membership.id, QuotaResource.CONSULTATIONS, amount=5)

    clock.now = datetime(2024, 1, 3, tzinfo=timezone.utc)
    service.cancel_membership(membership.id)
    assert service.check_quota(membership.id, QuotaResource.CONSULTATIONS).used == 0

    clock.now = datetime(2024, 1, 4, tzinfo=timezone.utc)
    service.reactivate_membership(membership.id, months=1)

    status = service.check_quota(membership.id, QuotaResource.CONSULTATIONS)
    assert status.used == 0
    assert status.remaining == 5

    closed, current = unit_of_work.ledger.list_for_membership(membership.id)
    assert closed.period_end == datetime(2024, 1, 3, tzinfo=timezone.utc)
    assert closed.used(QuotaResource.CONSULTATIONS) == 5
    assert current.period_start == clock.now
    assert current.period_end == datetime(2024, 2, 4, tzinfo=timezone.utc)

    assert service.consume_quota(membership.id, QuotaResource.CONSULTATIONS).used == 1


def test_concurrent_consumers_cannot_overrun_the_limit(membership_components):
    _, _, _, service = membership_components
    membership = service.create_membership("sub-1", 1)
    workers = 8
    barrier = threading.Barrier(workers)
    successes: List[int] = []
    rejections: List[QuotaExceededError] = []
    lock = threading.Lock()

    def consume() -> None:
        barrier.wait()
        try:
            status = service.consume_quota(membership.id, QuotaResource.CASES)
        except QuotaExceededError as exc:
            with lock:
                rejections.append(exc)
        else:
            with lock:
                successes.append(status.used)

    threads = [threading.Thread(target=consume) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert successes == [1]
    assert len(rejections) == workers - 1
    assert service.check_quota(membership.id, QuotaResource.CASES).used == 1


def test_evaluate_quota_reports_projection():
    evaluation = evaluate_quota(resource=QuotaResource.SERVICES, used=2, limit=3, requested=2)

    assert evaluation.allowed is False
    assert evaluation.projected == 4
    assert evaluation.remaining == 1
    assert evaluation.to_dict()["resource"] == "services"

    unlimited = evaluate_quota(resource=QuotaResource.SERVICES, used=99, limit=None)
    assert unlimited.allowed is True
    assert unlimited.unlimited is True
    assert unlimited.remaining is None


def test_assert_quota_allows_exact_fit():
    evaluation = assert_quota(resource=QuotaResource.OPINIONS, used=1, limit=2)
    assert evaluation.projected == 2

    with pytest.raises(MembershipValidationError):
        assert_quota(resource=QuotaResource.OPINIONS, used=0, limit=2, requested=0)
