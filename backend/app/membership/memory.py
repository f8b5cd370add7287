"""In-memory unit of work suitable for tests and local development."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Sequence

from .exceptions import ConflictError
from .models import (
    ChangeLogEntry,
    ChangeReason,
    Coupon,
    Membership,
    MembershipStatus,
    MembershipTier,
    PendingTierChange,
    QuotaLedgerEntry,
    QuotaResource,
    Redemption,
    normalize_coupon_code,
)


class _DictStore:
    """Keeps records in an ordered dict that can be snapshotted and restored."""

    def __init__(self) -> None:
        self._items: Dict[str, object] = {}

    def _snapshot(self) -> Dict[str, object]:
        # Records are frozen models, so a shallow copy is a full snapshot.
        return dict(self._items)

    def _restore(self, snapshot: Dict[str, object]) -> None:
        self._items = snapshot

    def clear(self) -> None:
        self._items.clear()


class InMemoryMembershipStore(_DictStore):
    _items: Dict[str, Membership]  # type: ignore[assignment]

    def create(self, membership: Membership) -> Membership:
        if membership.id in self._items:
            raise ConflictError("Membership already exists", detail={"membership_id": membership.id})
        self._items[membership.id] = membership
        return membership

    def get(self, membership_id: str, *, for_update: bool = False) -> Optional[Membership]:
        return self._items.get(membership_id)

    def find_by_subscriber(self, subscriber_id: str) -> List[Membership]:
        return [item for item in self._items.values() if item.subscriber_id == subscriber_id]

    def find_active_by_subscriber(self, subscriber_id: str) -> Optional[Membership]:
        for item in self._items.values():
            if item.subscriber_id == subscriber_id and item.status == MembershipStatus.ACTIVE:
                return item
        return None

    def find_current_by_subscriber(self, subscriber_id: str) -> Optional[Membership]:
        for item in self._items.values():
            if item.subscriber_id == subscriber_id and item.status in {
                MembershipStatus.ACTIVE,
                MembershipStatus.PAUSED,
            }:
                return item
        return None

    def update(self, membership: Membership) -> Membership:
        if membership.id not in self._items:
            raise KeyError(membership.id)
        self._items[membership.id] = membership
        return membership

    def _filtered(
        self,
        status: Optional[MembershipStatus],
        tier_id: Optional[int],
        subscriber_id: Optional[str],
    ) -> List[Membership]:
        items = [
            item
            for item in self._items.values()
            if (status is None or item.status == status)
            and (tier_id is None or item.tier_id == tier_id)
            and (subscriber_id is None or item.subscriber_id == subscriber_id)
        ]
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    def list(
        self,
        *,
        status: Optional[MembershipStatus] = None,
        tier_id: Optional[int] = None,
        subscriber_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Membership]:
        return self._filtered(status, tier_id, subscriber_id)[offset : offset + limit]

    def count(
        self,
        *,
        status: Optional[MembershipStatus] = None,
        tier_id: Optional[int] = None,
        subscriber_id: Optional[str] = None,
    ) -> int:
        return len(self._filtered(status, tier_id, subscriber_id))

    def find_expiring_soon(self, now: datetime, days: int) -> List[Membership]:
        horizon = now + timedelta(days=days)
        items = [
            item
            for item in self._items.values()
            if item.status == MembershipStatus.ACTIVE
            and item.end_date is not None
            and now <= item.end_date <= horizon
        ]
        return sorted(items, key=lambda item: item.end_date)

    def find_expired(self, now: datetime) -> List[Membership]:
        return [
            item
            for item in self._items.values()
            if item.status == MembershipStatus.ACTIVE and item.is_lapsed(now)
        ]


class InMemoryTierCatalog:
    """Tier catalog seeded by tests; not part of the transactional state."""

    def __init__(self, tiers: Sequence[MembershipTier] = ()) -> None:
        self._tiers: Dict[int, MembershipTier] = {tier.id: tier for tier in tiers}

    def add(self, tier: MembershipTier) -> MembershipTier:
        self._tiers[tier.id] = tier
        return tier

    def get(self, tier_id: int) -> Optional[MembershipTier]:
        return self._tiers.get(tier_id)

    def find_by_name(self, name: str) -> Optional[MembershipTier]:
        lowered = name.strip().lower()
        for tier in self._tiers.values():
            if tier.name.lower() == lowered:
                return tier
        return None

    def list(self, *, active_only: bool = True) -> List[MembershipTier]:
        tiers = sorted(self._tiers.values(), key=lambda tier: tier.price.amount)
        return [tier for tier in tiers if tier.is_active or not active_only]


class InMemoryQuotaLedgerStore(_DictStore):
    _items: Dict[str, QuotaLedgerEntry]  # type: ignore[assignment]

    def find_current_period(
        self, membership_id: str, now: datetime, *, for_update: bool = False
    ) -> Optional[QuotaLedgerEntry]:
        matches = [
            entry
            for entry in self._items.values()
            if entry.membership_id == membership_id and entry.covers(now)
        ]
        if not matches:
            return None
        return max(matches, key=lambda entry: entry.period_start)

    def create(self, entry: QuotaLedgerEntry) -> QuotaLedgerEntry:
        if entry.id in self._items:
            raise ConflictError("Ledger entry already exists", detail={"entry_id": entry.id})
        self._items[entry.id] = entry
        return entry

    def increment_usage(
        self,
        entry_id: str,
        resource: QuotaResource,
        amount: int,
        limit: Optional[int],
    ) -> Optional[QuotaLedgerEntry]:
        entry = self._items.get(entry_id)
        if entry is None:
            return None
        if limit is not None and entry.used(resource) + amount > limit:
            return None
        updated = entry.incremented(resource, amount)
        self._items[entry_id] = updated
        return updated

    def close_period(self, entry_id: str, now: datetime) -> Optional[QuotaLedgerEntry]:
        entry = self._items.get(entry_id)
        if entry is None:
            return None
        closed = entry.model_copy(update={"period_end": max(now, entry.period_start), "updated_at": now})
        self._items[entry_id] = closed
        return closed

    def list_for_membership(self, membership_id: str) -> List[QuotaLedgerEntry]:
        entries = [entry for entry in self._items.values() if entry.membership_id == membership_id]
        return sorted(entries, key=lambda entry: entry.period_start)


class InMemoryCouponStore(_DictStore):
    _items: Dict[str, Coupon]  # type: ignore[assignment]

    def add(self, coupon: Coupon) -> Coupon:
        self._items[coupon.id] = coupon
        return coupon

    def get(self, coupon_id: str) -> Optional[Coupon]:
        return self._items.get(coupon_id)

    def find_by_code(self, code: str, *, for_update: bool = False) -> Optional[Coupon]:
        normalized = normalize_coupon_code(code)
        for coupon in self._items.values():
            if coupon.code == normalized:
                return coupon
        return None

    def increment_usage(self, coupon_id: str) -> bool:
        coupon = self._items.get(coupon_id)
        if coupon is None or coupon.used_count >= coupon.usage_limit:
            return False
        self._items[coupon_id] = coupon.model_copy(update={"used_count": coupon.used_count + 1})
        return True


class InMemoryRedemptionStore(_DictStore):
    _items: Dict[str, Redemption]  # type: ignore[assignment]

    def create(self, redemption: Redemption) -> Redemption:
        if self.has_redeemed(redemption.membership_id, redemption.coupon_id):
            raise ConflictError(
                "Coupon already applied to this membership",
                detail={"membership_id": redemption.membership_id},
            )
        self._items[redemption.id] = redemption
        return redemption

    def has_redeemed(self, membership_id: str, coupon_id: str) -> bool:
        return any(
            item.membership_id == membership_id and item.coupon_id == coupon_id
            for item in self._items.values()
        )

    def list_for_membership(self, membership_id: str) -> List[Redemption]:
        return [item for item in self._items.values() if item.membership_id == membership_id]


class InMemoryChangeLogStore(_DictStore):
    _items: Dict[str, ChangeLogEntry]  # type: ignore[assignment]

    def append(self, entry: ChangeLogEntry) -> ChangeLogEntry:
        self._items[entry.id] = entry
        return entry

    def _for_membership(self, membership_id: str) -> List[ChangeLogEntry]:
        # Insertion order breaks ties between entries written at the same instant.
        entries = [entry for entry in self._items.values() if entry.membership_id == membership_id]
        return sorted(entries, key=lambda entry: entry.changed_at)

    def list_for_membership(
        self,
        membership_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        newest_first: bool = True,
    ) -> List[ChangeLogEntry]:
        entries = self._for_membership(membership_id)
        if newest_first:
            entries.reverse()
        return entries[offset : offset + limit]

    def latest(self, membership_id: str) -> Optional[ChangeLogEntry]:
        entries = self._for_membership(membership_id)
        return entries[-1] if entries else None

    def find_by_date_range(
        self,
        start: datetime,
        end: datetime,
        *,
        membership_id: Optional[str] = None,
        reason: Optional[ChangeReason] = None,
    ) -> List[ChangeLogEntry]:
        return [
            entry
            for entry in self._items.values()
            if start <= entry.changed_at <= end
            and (membership_id is None or entry.membership_id == membership_id)
            and (reason is None or entry.reason == reason)
        ]

    def count_by_reason(self, start: datetime, end: datetime) -> Dict[ChangeReason, int]:
        counts: Dict[ChangeReason, int] = {}
        for entry in self.find_by_date_range(start, end):
            counts[entry.reason] = counts.get(entry.reason, 0) + 1
        return counts


class InMemoryPendingTierChangeStore(_DictStore):
    _items: Dict[str, PendingTierChange]  # type: ignore[assignment]

    def find_open(self, membership_id: str) -> Optional[PendingTierChange]:
        for change in self._items.values():
            if change.membership_id == membership_id and change.is_open:
                return change
        return None

    def create(self, change: PendingTierChange) -> PendingTierChange:
        if self.find_open(change.membership_id) is not None:
            raise ConflictError(
                "Membership already has a pending tier change",
                detail={"membership_id": change.membership_id},
            )
        self._items[change.id] = change
        return change

    def _mark(self, change_id: str, field: str, now: datetime) -> Optional[PendingTierChange]:
        change = self._items.get(change_id)
        if change is None or not change.is_open:
            return None
        updated = change.model_copy(update={field: now})
        self._items[change_id] = updated
        return updated

    def mark_applied(self, change_id: str, now: datetime) -> Optional[PendingTierChange]:
        return self._mark(change_id, "applied_at", now)

    def mark_cancelled(self, change_id: str, now: datetime) -> Optional[PendingTierChange]:
        return self._mark(change_id, "cancelled_at", now)

    def find_due(self, now: datetime) -> List[PendingTierChange]:
        return sorted(
            (change for change in self._items.values() if change.is_due(now)),
            key=lambda change: change.effective_at,
        )


class InMemoryUnitOfWork:
    """Serialises transactions behind one re-entrant lock.

    The unit of work doubles as the transaction object: its stores are shared
    across transactions, and every store's records are restored when the
    transaction body raises.
    """

    def __init__(self, tiers: Sequence[MembershipTier] = ()) -> None:
        self._lock = threading.RLock()
        self.memberships = InMemoryMembershipStore()
        self.tiers = InMemoryTierCatalog(tiers)
        self.ledger = InMemoryQuotaLedgerStore()
        self.coupons = InMemoryCouponStore()
        self.redemptions = InMemoryRedemptionStore()
        self.change_log = InMemoryChangeLogStore()
        self.pending_changes = InMemoryPendingTierChangeStore()

    def _stores(self) -> List[_DictStore]:
        return [
            self.memberships,
            self.ledger,
            self.coupons,
            self.redemptions,
            self.change_log,
            self.pending_changes,
        ]

    @contextmanager
    def transaction(self) -> Iterator["InMemoryUnitOfWork"]:
        with self._lock:
            snapshots = [store._snapshot() for store in self._stores()]
            try:
                yield self
            except BaseException:
                for store, snapshot in zip(self._stores(), snapshots):
                    store._restore(snapshot)
                raise


__all__ = [
    "InMemoryChangeLogStore",
    "InMemoryCouponStore",
    "InMemoryMembershipStore",
    "InMemoryPendingTierChangeStore",
    "InMemoryQuotaLedgerStore",
    "InMemoryRedemptionStore",
    "InMemoryTierCatalog",
    "InMemoryUnitOfWork",
]
