from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Tuple

import psycopg2.errors
import psycopg2.extras
import pytest
from psycopg2 import sql

from backend.app.membership import (
    ConflictError,
    Money,
    QuotaResource,
    Redemption,
    TransactionConflict,
)
from backend.app.membership.repository import (
    PostgresCouponStore,
    PostgresMembershipTransaction,
    PostgresQuotaLedgerStore,
    PostgresRedemptionStore,
    PostgresUnitOfWork,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeConnection:
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.session = {}

    def set_session(self, **kwargs) -> None:
        self.session = kwargs
        self.calls.append("set_session")

    def commit(self) -> None:
        self.calls.append("commit")

    def rollback(self) -> None:
        self.calls.append("rollback")

    def close(self) -> None:
        self.calls.append("close")


def test_transaction_commits_on_success():
    connection = FakeConnection()
    unit_of_work = PostgresUnitOfWork(connect=lambda: connection)

    with unit_of_work.transaction() as tx:
        assert isinstance(tx, PostgresMembershipTransaction)
        assert tx.connection is connection

    assert connection.session["isolation_level"] == "SERIALIZABLE"
    assert connection.calls == ["set_session", "commit", "close"]


def test_serialization_failure_becomes_transaction_conflict():
    connection = FakeConnection()
    unit_of_work = PostgresUnitOfWork(connect=lambda: connection)

    with pytest.raises(TransactionConflict):
        with unit_of_work.transaction():
            raise psycopg2.errors.SerializationFailure("could not serialize access")

    assert connection.calls == ["set_session", "rollback", "close"]


def test_other_errors_roll_back_and_propagate():
    connection = FakeConnection()
    unit_of_work = PostgresUnitOfWork(connect=lambda: connection)

    with pytest.raises(ValueError):
        with unit_of_work.transaction():
            raise ValueError("boom")

    assert connection.calls == ["set_session", "rollback", "close"]


class FakeCursor:
    def __init__(
        self,
        *,
        rows: Optional[List[Any]] = None,
        rowcount: int = 0,
        error: Optional[Exception] = None,
    ) -> None:
        self.rows = list(rows or [])
        self.rowcount = rowcount
        self.error = error
        self.executed: List[Tuple[Any, Any]] = []
        self.closed = False

    def execute(self, query, params=None) -> None:
        self.executed.append((query, params))
        if self.error is not None:
            raise self.error

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None

    def fetchall(self):
        rows, self.rows = self.rows, []
        return rows

    def close(self) -> None:
        self.closed = True


class FakeCursorConnection:
    def __init__(self, cursor: FakeCursor) -> None:
        self._cursor = cursor
        self.cursor_factories: List[Any] = []

    def cursor(self, cursor_factory=None) -> FakeCursor:
        self.cursor_factories.append(cursor_factory)
        return self._cursor


def _flatten(query) -> List[Any]:
    if isinstance(query, sql.Composed):
        return [part for item in query.seq for part in _flatten(item)]
    return [query]


def _sql_text(query) -> str:
    if isinstance(query, str):
        return query
    return "".join(part.string for part in _flatten(query) if isinstance(part, sql.SQL))


def _ledger_row(**overrides):
    row = {
        "id": "entry-1",
        "membership_id": "membership-1",
        "period_start": NOW,
        "period_end": datetime(2024, 2, 1, tzinfo=timezone.utc),
        "consultations_used": 0,
        "opinions_used": 0,
        "services_used": 0,
        "cases_used": 0,
        "call_minutes_used": 0,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_increment_usage_guards_the_limit_in_the_update():
    cursor = FakeCursor(rows=[_ledger_row(cases_used=2)])
    store = PostgresQuotaLedgerStore(FakeCursorConnection(cursor))

    entry = store.increment_usage("entry-1", QuotaResource.CASES, 2, 3)

    query, params = cursor.executed[0]
    parts = _flatten(query)
    assert parts.count(sql.Identifier("cases_used")) == 3
    assert "WHERE id = %s AND " in _sql_text(query)
    assert " + %s <= %s" in _sql_text(query)
    assert params == (2, "entry-1", 2, 3)
    assert entry.used(QuotaResource.CASES) == 2
    assert cursor.closed is True


def test_increment_usage_returns_none_when_the_guard_matches_no_row():
    cursor = FakeCursor(rows=[])
    connection = FakeCursorConnection(cursor)
    store = PostgresQuotaLedgerStore(connection)

    assert store.increment_usage("entry-1", QuotaResource.CONSULTATIONS, 1, 5) is None
    assert connection.cursor_factories == [psycopg2.extras.RealDictCursor]


def test_increment_usage_without_limit_skips_the_guard():
    cursor = FakeCursor(rows=[_ledger_row(call_minutes_used=90)])
    store = PostgresQuotaLedgerStore(FakeCursorConnection(cursor))

    entry = store.increment_usage("entry-1", QuotaResource.CALL_MINUTES, 90, None)

    query, params = cursor.executed[0]
    assert "<=" not in _sql_text(query)
    assert _flatten(query).count(sql.Identifier("call_minutes_used")) == 2
    assert params == (90, "entry-1")
    assert entry.used(QuotaResource.CALL_MINUTES) == 90


@pytest.mark.parametrize("rowcount, expected", [(1, True), (0, False)])
def test_coupon_usage_increment_reports_the_row_guard(rowcount, expected):
    cursor = FakeCursor(rowcount=rowcount)
    store = PostgresCouponStore(FakeCursorConnection(cursor))

    assert store.increment_usage("coupon-1") is expected

    query, params = cursor.executed[0]
    assert "used_count = used_count + 1" in query
    assert "WHERE id = %s AND used_count < usage_limit" in query
    assert params == ("coupon-1",)


def _redemption() -> Redemption:
    return Redemption(
        id="redemption-1",
        membership_id="membership-1",
        coupon_id="coupon-1",
        discount_amount=Money.of("20.00", "SAR"),
        redeemed_at=NOW,
    )


def test_redemption_insert_maps_the_returned_row():
    row = {
        "id": "redemption-1",
        "membership_id": "membership-1",
        "coupon_id": "coupon-1",
        "discount_amount": Decimal("20.00"),
        "currency": "SAR",
        "redeemed_at": NOW,
    }
    cursor = FakeCursor(rows=[row])
    store = PostgresRedemptionStore(FakeCursorConnection(cursor))

    stored = store.create(_redemption())

    query, params = cursor.executed[0]
    assert "INSERT INTO membership_coupon_redemptions" in query
    assert params == ("redemption-1", "membership-1", "coupon-1", Decimal("20.00"), "SAR", NOW)
    assert stored.discount_amount == Money.of("20.00", "SAR")


def test_duplicate_redemption_becomes_conflict():
    cursor = FakeCursor(error=psycopg2.errors.UniqueViolation("duplicate key value"))
    store = PostgresRedemptionStore(FakeCursorConnection(cursor))

    with pytest.raises(ConflictError) as excinfo:
        store.create(_redemption())

    assert excinfo.value.status_code == 409
    assert excinfo.value.payload["membership_id"] == "membership-1"
    assert isinstance(excinfo.value.__cause__, psycopg2.errors.UniqueViolation)
    assert cursor.closed is True
