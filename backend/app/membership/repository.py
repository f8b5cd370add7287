"""PostgreSQL persistence for memberships, quota ledgers, and coupons."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .catalog import QUOTA_FIELD_CATALOG, get_quota_field, quota_from_tier_fields
from .exceptions import ConflictError, TransactionConflict
from .models import (
    BillingCycle,
    ChangeLogEntry,
    ChangeReason,
    Coupon,
    DiscountType,
    Membership,
    MembershipStatus,
    MembershipTier,
    Money,
    PendingTierChange,
    QuotaLedgerEntry,
    QuotaResource,
    Redemption,
    normalize_coupon_code,
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]

_RETRYABLE_ERRORS = (psycopg2.errors.SerializationFailure, psycopg2.errors.DeadlockDetected)


def _row_to_membership(row: dict) -> Membership:
    return Membership(
        id=str(row["id"]),
        subscriber_id=str(row["subscriber_id"]),
        tier_id=int(row["tier_id"]),
        price=Money(amount=Decimal(row["price"]), currency=row["currency"]),
        billing_cycle=BillingCycle.parse(row["billing_cycle"]),
        status=MembershipStatus(row["status"]),
        start_date=row["start_date"],
        end_date=row.get("end_date"),
        auto_renew=bool(row["auto_renew"]),
        paused_at=row.get("paused_at"),
        pause_until=row.get("pause_until"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_tier(row: dict) -> MembershipTier:
    return MembershipTier(
        id=int(row["id"]),
        name=row["name"],
        name_ar=row.get("name_ar"),
        description=row.get("description"),
        description_ar=row.get("description_ar"),
        price=Money(amount=Decimal(row["price"]), currency=row["currency"]),
        billing_cycle=BillingCycle.parse(row["billing_cycle"]),
        quota=quota_from_tier_fields(row, columns=True),
        benefits=list(row.get("benefits") or []),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_ledger_entry(row: dict) -> QuotaLedgerEntry:
    usage = {
        resource: int(row.get(definition.ledger_column) or 0)
        for resource, definition in QUOTA_FIELD_CATALOG.items()
    }
    return QuotaLedgerEntry(
        id=str(row["id"]),
        membership_id=str(row["membership_id"]),
        period_start=row["period_start"],
        period_end=row["period_end"],
        usage=usage,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_coupon(row: dict) -> Coupon:
    discount_amount = None
    if row.get("discount_amount") is not None:
        discount_amount = Money(amount=Decimal(row["discount_amount"]), currency=row["discount_currency"])
    return Coupon(
        id=str(row["id"]),
        code=row["code"],
        discount_type=DiscountType(row["discount_type"]),
        discount_percentage=row.get("discount_percentage"),
        discount_amount=discount_amount,
        valid_from=row["valid_from"],
        valid_until=row["valid_until"],
        usage_limit=int(row["usage_limit"]),
        used_count=int(row["used_count"]),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_redemption(row: dict) -> Redemption:
    return Redemption(
        id=str(row["id"]),
        membership_id=str(row["membership_id"]),
        coupon_id=str(row["coupon_id"]),
        discount_amount=Money(amount=Decimal(row["discount_amount"]), currency=row["currency"]),
        redeemed_at=row["redeemed_at"],
    )


def _row_to_change_log_entry(row: dict) -> ChangeLogEntry:
    return ChangeLogEntry(
        id=str(row["id"]),
        membership_id=str(row["membership_id"]),
        old_tier_id=row.get("old_tier_id"),
        new_tier_id=row.get("new_tier_id"),
        reason=ChangeReason(row["reason"]),
        changed_by=row.get("changed_by"),
        metadata=row.get("metadata") or {},
        changed_at=row["changed_at"],
    )


def _row_to_pending_change(row: dict) -> PendingTierChange:
    return PendingTierChange(
        id=str(row["id"]),
        membership_id=str(row["membership_id"]),
        from_tier_id=int(row["from_tier_id"]),
        to_tier_id=int(row["to_tier_id"]),
        effective_at=row["effective_at"],
        requested_by=row.get("requested_by"),
        created_at=row["created_at"],
        applied_at=row.get("applied_at"),
        cancelled_at=row.get("cancelled_at"),
    )


def _lock_clause(for_update: bool) -> str:
    return " FOR UPDATE" if for_update else ""


class _PostgresStore:
    """Base class binding a store to the transaction's connection."""

    def __init__(self, conn: PgConnection) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        try:
            yield cursor
        finally:
            cursor.close()


class PostgresMembershipStore(_PostgresStore):
    def create(self, membership: Membership) -> Membership:
        with self._cursor() as cursor:
            try:
                cursor.execute(
                    """
                    INSERT INTO memberships (
                        id, subscriber_id, tier_id, price, currency, billing_cycle, status,
                        start_date, end_date, auto_renew, paused_at, pause_until,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        membership.id,
                        membership.subscriber_id,
                        membership.tier_id,
                        membership.price.amount,
                        membership.price.currency,
                        membership.billing_cycle.value,
                        membership.status.value,
                        membership.start_date,
                        membership.end_date,
                        membership.auto_renew,
                        membership.paused_at,
                        membership.pause_until,
                        membership.created_at,
                        membership.updated_at,
                    ),
                )
            except psycopg2.errors.UniqueViolation as exc:
                # memberships_one_active_per_subscriber partial unique index
                raise ConflictError(
                    "Subscriber already has an active membership",
                    detail={"subscriber_id": membership.subscriber_id},
                ) from exc
            row = cursor.fetchone()
        return _row_to_membership(row)

    def get(self, membership_id: str, *, for_update: bool = False) -> Optional[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM memberships WHERE id = %s" + _lock_clause(for_update),
                (membership_id,),
            )
            row = cursor.fetchone()
        return _row_to_membership(row) if row else None

    def find_by_subscriber(self, subscriber_id: str) -> List[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM memberships WHERE subscriber_id = %s ORDER BY created_at DESC",
                (subscriber_id,),
            )
            rows = cursor.fetchall()
        return [_row_to_membership(row) for row in rows]

    def find_active_by_subscriber(self, subscriber_id: str) -> Optional[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM memberships
                WHERE subscriber_id = %s AND status = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (subscriber_id, MembershipStatus.ACTIVE.value),
            )
            row = cursor.fetchone()
        return _row_to_membership(row) if row else None

    def find_current_by_subscriber(self, subscriber_id: str) -> Optional[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM memberships
                WHERE subscriber_id = %s AND status IN (%s, %s)
                ORDER BY created_at DESC
                LIMIT 1
                FOR UPDATE
                """,
                (subscriber_id, MembershipStatus.ACTIVE.value, MembershipStatus.PAUSED.value),
            )
            row = cursor.fetchone()
        return _row_to_membership(row) if row else None

    def update(self, membership: Membership) -> Membership:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE memberships
                SET tier_id = %s,
                    price = %s,
                    currency = %s,
                    billing_cycle = %s,
                    status = %s,
                    start_date = %s,
                    end_date = %s,
                    auto_renew = %s,
                    paused_at = %s,
                    pause_until = %s,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    membership.tier_id,
                    membership.price.amount,
                    membership.price.currency,
                    membership.billing_cycle.value,
                    membership.status.value,
                    membership.start_date,
                    membership.end_date,
                    membership.auto_renew,
                    membership.paused_at,
                    membership.pause_until,
                    membership.updated_at,
                    membership.id,
                ),
            )
            row = cursor.fetchone()
        if row is None:
            raise KeyError(membership.id)
        return _row_to_membership(row)

    def _where(
        self,
        status: Optional[MembershipStatus],
        tier_id: Optional[int],
        subscriber_id: Optional[str],
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if tier_id is not None:
            clauses.append("tier_id = %s")
            params.append(tier_id)
        if subscriber_id is not None:
            clauses.append("subscriber_id = %s")
            params.append(subscriber_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list(
        self,
        *,
        status: Optional[MembershipStatus] = None,
        tier_id: Optional[int] = None,
        subscriber_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Membership]:
        where, params = self._where(status, tier_id, subscriber_id)
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM memberships {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            )
            rows = cursor.fetchall()
        return [_row_to_membership(row) for row in rows]

    def count(
        self,
        *,
        status: Optional[MembershipStatus] = None,
        tier_id: Optional[int] = None,
        subscriber_id: Optional[str] = None,
    ) -> int:
        where, params = self._where(status, tier_id, subscriber_id)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total FROM memberships {where}", tuple(params))
            row = cursor.fetchone()
        return int(row["total"]) if row else 0

    def find_expiring_soon(self, now: datetime, days: int) -> List[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM memberships
                WHERE status = %s
                  AND end_date IS NOT NULL
                  AND end_date >= %s
                  AND end_date <= %s + make_interval(days => %s)
                ORDER BY end_date ASC
                """,
                (MembershipStatus.ACTIVE.value, now, now, days),
            )
            rows = cursor.fetchall()
        return [_row_to_membership(row) for row in rows]

    def find_expired(self, now: datetime) -> List[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM memberships
                WHERE status = %s AND end_date IS NOT NULL AND end_date < %s
                ORDER BY end_date ASC
                """,
                (MembershipStatus.ACTIVE.value, now),
            )
            rows = cursor.fetchall()
        return [_row_to_membership(row) for row in rows]


class PostgresTierCatalog(_PostgresStore):
    def get(self, tier_id: int) -> Optional[MembershipTier]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM membership_tiers WHERE id = %s", (tier_id,))
            row = cursor.fetchone()
        return _row_to_tier(row) if row else None

    def find_by_name(self, name: str) -> Optional[MembershipTier]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM membership_tiers WHERE LOWER(name) = LOWER(%s)", (name.strip(),))
            row = cursor.fetchone()
        return _row_to_tier(row) if row else None

    def list(self, *, active_only: bool = True) -> List[MembershipTier]:
        query = "SELECT * FROM membership_tiers"
        if active_only:
            query += " WHERE is_active = TRUE"
        with self._cursor() as cursor:
            cursor.execute(query + " ORDER BY price ASC")
            rows = cursor.fetchall()
        return [_row_to_tier(row) for row in rows]


class PostgresQuotaLedgerStore(_PostgresStore):
    def find_current_period(
        self, membership_id: str, now: datetime, *, for_update: bool = False
    ) -> Optional[QuotaLedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM membership_quota_ledger
                WHERE membership_id = %s AND period_start <= %s AND period_end > %s
                ORDER BY period_start DESC
                LIMIT 1
                """
                + _lock_clause(for_update),
                (membership_id, now, now),
            )
            row = cursor.fetchone()
        return _row_to_ledger_entry(row) if row else None

    def create(self, entry: QuotaLedgerEntry) -> QuotaLedgerEntry:
        columns = [definition.ledger_column for definition in QUOTA_FIELD_CATALOG.values()]
        query = sql.SQL(
            """
            INSERT INTO membership_quota_ledger (
                id, membership_id, period_start, period_end, {columns}, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, {placeholders}, %s, %s)
            RETURNING *
            """
        ).format(
            columns=sql.SQL(", ").join(sql.Identifier(column) for column in columns),
            placeholders=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        usage = [entry.used(resource) for resource in QUOTA_FIELD_CATALOG]
        with self._cursor() as cursor:
            cursor.execute(
                query,
                (
                    entry.id,
                    entry.membership_id,
                    entry.period_start,
                    entry.period_end,
                    *usage,
                    entry.created_at,
                    entry.updated_at,
                ),
            )
            row = cursor.fetchone()
        return _row_to_ledger_entry(row)

    def increment_usage(
        self,
        entry_id: str,
        resource: QuotaResource,
        amount: int,
        limit: Optional[int],
    ) -> Optional[QuotaLedgerEntry]:
        column = sql.Identifier(get_quota_field(resource).ledger_column)
        params: Tuple[Any, ...]
        if limit is None:
            query = sql.SQL(
                """
                UPDATE membership_quota_ledger
                SET {column} = {column} + %s, updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """
            ).format(column=column)
            params = (amount, entry_id)
        else:
            query = sql.SQL(
                """
                UPDATE membership_quota_ledger
                SET {column} = {column} + %s, updated_at = NOW()
                WHERE id = %s AND {column} + %s <= %s
                RETURNING *
                """
            ).format(column=column)
            params = (amount, entry_id, amount, limit)
        with self._cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
        return _row_to_ledger_entry(row) if row else None

    def close_period(self, entry_id: str, now: datetime) -> Optional[QuotaLedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE membership_quota_ledger
                SET period_end = GREATEST(period_start, %s), updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, now, entry_id),
            )
            row = cursor.fetchone()
        return _row_to_ledger_entry(row) if row else None


class PostgresCouponStore(_PostgresStore):
    def find_by_code(self, code: str, *, for_update: bool = False) -> Optional[Coupon]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM membership_coupons WHERE code = %s" + _lock_clause(for_update),
                (normalize_coupon_code(code),),
            )
            row = cursor.fetchone()
        return _row_to_coupon(row) if row else None

    def increment_usage(self, coupon_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE membership_coupons
                SET used_count = used_count + 1, updated_at = NOW()
                WHERE id = %s AND used_count < usage_limit
                """,
                (coupon_id,),
            )
            return cursor.rowcount == 1


class PostgresRedemptionStore(_PostgresStore):
    def create(self, redemption: Redemption) -> Redemption:
        with self._cursor() as cursor:
            try:
                cursor.execute(
                    """
                    INSERT INTO membership_coupon_redemptions (
                        id, membership_id, coupon_id, discount_amount, currency, redeemed_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        redemption.id,
                        redemption.membership_id,
                        redemption.coupon_id,
                        redemption.discount_amount.amount,
                        redemption.discount_amount.currency,
                        redemption.redeemed_at,
                    ),
                )
            except psycopg2.errors.UniqueViolation as exc:
                raise ConflictError(
                    "Coupon already applied to this membership",
                    detail={"membership_id": redemption.membership_id},
                ) from exc
            row = cursor.fetchone()
        return _row_to_redemption(row)

    def has_redeemed(self, membership_id: str, coupon_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT 1 FROM membership_coupon_redemptions
                WHERE membership_id = %s AND coupon_id = %s
                """,
                (membership_id, coupon_id),
            )
            return cursor.fetchone() is not None

    def list_for_membership(self, membership_id: str) -> List[Redemption]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM membership_coupon_redemptions
                WHERE membership_id = %s
                ORDER BY redeemed_at ASC
                """,
                (membership_id,),
            )
            rows = cursor.fetchall()
        return [_row_to_redemption(row) for row in rows]


class PostgresChangeLogStore(_PostgresStore):
    def append(self, entry: ChangeLogEntry) -> ChangeLogEntry:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO membership_change_log (
                    id, membership_id, old_tier_id, new_tier_id, reason, changed_by, metadata, changed_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    entry.id,
                    entry.membership_id,
                    entry.old_tier_id,
                    entry.new_tier_id,
                    entry.reason.value,
                    entry.changed_by,
                    psycopg2.extras.Json(entry.metadata),
                    entry.changed_at,
                ),
            )
            row = cursor.fetchone()
        return _row_to_change_log_entry(row)

    def list_for_membership(
        self,
        membership_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        newest_first: bool = True,
    ) -> List[ChangeLogEntry]:
        order = "DESC" if newest_first else "ASC"
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT * FROM membership_change_log
                WHERE membership_id = %s
                ORDER BY changed_at {order}, seq {order}
                LIMIT %s OFFSET %s
                """,
                (membership_id, limit, offset),
            )
            rows = cursor.fetchall()
        return [_row_to_change_log_entry(row) for row in rows]

    def latest(self, membership_id: str) -> Optional[ChangeLogEntry]:
        entries = self.list_for_membership(membership_id, limit=1, newest_first=True)
        return entries[0] if entries else None

    def find_by_date_range(
        self,
        start: datetime,
        end: datetime,
        *,
        membership_id: Optional[str] = None,
        reason: Optional[ChangeReason] = None,
    ) -> List[ChangeLogEntry]:
        clauses = ["changed_at >= %s", "changed_at <= %s"]
        params: List[Any] = [start, end]
        if membership_id is not None:
            clauses.append("membership_id = %s")
            params.append(membership_id)
        if reason is not None:
            clauses.append("reason = %s")
            params.append(reason.value)
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM membership_change_log WHERE {' AND '.join(clauses)} ORDER BY changed_at ASC, seq ASC",
                tuple(params),
            )
            rows = cursor.fetchall()
        return [_row_to_change_log_entry(row) for row in rows]

    def count_by_reason(self, start: datetime, end: datetime) -> Dict[ChangeReason, int]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT reason, COUNT(*) AS total
                FROM membership_change_log
                WHERE changed_at >= %s AND changed_at <= %s
                GROUP BY reason
                """,
                (start, end),
            )
            rows = cursor.fetchall()
        return {ChangeReason(row["reason"]): int(row["total"]) for row in rows}


class PostgresPendingTierChangeStore(_PostgresStore):
    def find_open(self, membership_id: str) -> Optional[PendingTierChange]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM membership_pending_tier_changes
                WHERE membership_id = %s AND applied_at IS NULL AND cancelled_at IS NULL
                ORDER BY created_at DESC
                LIMIT 1
                FOR UPDATE
                """,
                (membership_id,),
            )
            row = cursor.fetchone()
        return _row_to_pending_change(row) if row else None

    def create(self, change: PendingTierChange) -> PendingTierChange:
        with self._cursor() as cursor:
            try:
                cursor.execute(
                    """
                    INSERT INTO membership_pending_tier_changes (
                        id, membership_id, from_tier_id, to_tier_id, effective_at,
                        requested_by, created_at, applied_at, cancelled_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        change.id,
                        change.membership_id,
                        change.from_tier_id,
                        change.to_tier_id,
                        change.effective_at,
                        change.requested_by,
                        change.created_at,
                        change.applied_at,
                        change.cancelled_at,
                    ),
                )
            except psycopg2.errors.UniqueViolation as exc:
                raise ConflictError(
                    "Membership already has a pending tier change",
                    detail={"membership_id": change.membership_id},
                ) from exc
            row = cursor.fetchone()
        return _row_to_pending_change(row)

    def _mark(self, change_id: str, column: str, now: datetime) -> Optional[PendingTierChange]:
        query = sql.SQL(
            """
            UPDATE membership_pending_tier_changes
            SET {column} = %s
            WHERE id = %s AND applied_at IS NULL AND cancelled_at IS NULL
            RETURNING *
            """
        ).format(column=sql.Identifier(column))
        with self._cursor() as cursor:
            cursor.execute(query, (now, change_id))
            row = cursor.fetchone()
        return _row_to_pending_change(row) if row else None

    def mark_applied(self, change_id: str, now: datetime) -> Optional[PendingTierChange]:
        return self._mark(change_id, "applied_at", now)

    def mark_cancelled(self, change_id: str, now: datetime) -> Optional[PendingTierChange]:
        return self._mark(change_id, "cancelled_at", now)

    def find_due(self, now: datetime) -> List[PendingTierChange]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM membership_pending_tier_changes
                WHERE applied_at IS NULL AND cancelled_at IS NULL AND effective_at <= %s
                ORDER BY effective_at ASC
                """,
                (now,),
            )
            rows = cursor.fetchall()
        return [_row_to_pending_change(row) for row in rows]


class PostgresMembershipTransaction:
    """All membership stores bound to one open connection."""

    def __init__(self, conn: PgConnection) -> None:
        self.connection = conn
        self.memberships = PostgresMembershipStore(conn)
        self.tiers = PostgresTierCatalog(conn)
        self.ledger = PostgresQuotaLedgerStore(conn)
        self.coupons = PostgresCouponStore(conn)
        self.redemptions = PostgresRedemptionStore(conn)
        self.change_log = PostgresChangeLogStore(conn)
        self.pending_changes = PostgresPendingTierChangeStore(conn)


class PostgresUnitOfWork:
    """Opens SERIALIZABLE transactions on connections from ``get_conn``."""

    def __init__(self, *, connect: Optional[Callable[[], PgConnection]] = None) -> None:
        self._connect = connect or get_conn

    @contextmanager
    def transaction(self) -> Iterator[PostgresMembershipTransaction]:
        connection = self._connect()
        try:
            connection.set_session(isolation_level="SERIALIZABLE", autocommit=False)
            yield PostgresMembershipTransaction(connection)
            connection.commit()
        except _RETRYABLE_ERRORS as exc:
            connection.rollback()
            raise TransactionConflict(str(exc)) from exc
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()


__all__ = [
    "PostgresChangeLogStore",
    "PostgresCouponStore",
    "PostgresMembershipStore",
    "PostgresMembershipTransaction",
    "PostgresPendingTierChangeStore",
    "PostgresQuotaLedgerStore",
    "PostgresRedemptionStore",
    "PostgresTierCatalog",
    "PostgresUnitOfWork",
]
