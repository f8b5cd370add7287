"""Core service coordinating the membership lifecycle, quotas, and coupons."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, ContextManager, Dict, List, Optional, Protocol, Sequence, TypeVar

from .config import MembershipConfig
from .exceptions import (
    ConflictError,
    InvalidStateError,
    MembershipError,
    MembershipValidationError,
    NotFoundError,
    QuotaExceededError,
    TransactionConflict,
)
from .models import (
    SYSTEM_ACTOR,
    BatchFailure,
    BatchResult,
    ChangeLogEntry,
    ChangeReason,
    Coupon,
    CouponApplication,
    CouponValidation,
    Membership,
    MembershipPage,
    MembershipStatus,
    MembershipStatusReport,
    MembershipTier,
    PendingTierChange,
    QuotaLedgerEntry,
    QuotaResource,
    QuotaStatus,
    Redemption,
    TierChangeResult,
    TierChangeStatistics,
    add_months,
    normalize_coupon_code,
)
from .quota import assert_quota, quota_status
from .state import MembershipAction, allowed_actions, can_transition, transition

logger = logging.getLogger("membership")

T = TypeVar("T")

_CENT = Decimal("0.01")
_SECONDS_PER_DAY = 86400


class MembershipStore(Protocol):
    """Persistence operations for membership records."""

    def create(self, membership: Membership) -> Membership:
        ...

    def get(self, membership_id: str, *, for_update: bool = False) -> Optional[Membership]:
        ...

    def find_by_subscriber(self, subscriber_id: str) -> Sequence[Membership]:
        ...

    def find_active_by_subscriber(self, subscriber_id: str) -> Optional[Membership]:
        ...

    def find_current_by_subscriber(self, subscriber_id: str) -> Optional[Membership]:
        """Return the subscriber's active or paused membership, if any."""

    def update(self, membership: Membership) -> Membership:
        ...

    def list(
        self,
        *,
        status: Optional[MembershipStatus] = None,
        tier_id: Optional[int] = None,
        subscriber_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Sequence[Membership]:
        ...

    def count(
        self,
        *,
        status: Optional[MembershipStatus] = None,
        tier_id: Optional[int] = None,
        subscriber_id: Optional[str] = None,
    ) -> int:
        ...

    def find_expiring_soon(self, now: datetime, days: int) -> Sequence[Membership]:
        """Active memberships whose end date falls within ``days`` of ``now``."""

    def find_expired(self, now: datetime) -> Sequence[Membership]:
        """Active memberships whose end date is already behind ``now``."""


class TierCatalog(Protocol):
    """Read access to the published membership tiers."""

    def get(self, tier_id: int) -> Optional[MembershipTier]:
        ...

    def find_by_name(self, name: str) -> Optional[MembershipTier]:
        ...

    def list(self, *, active_only: bool = True) -> Sequence[MembershipTier]:
        ...


class QuotaLedgerStore(Protocol):
    """Per-period usage counters."""

    def find_current_period(
        self, membership_id: str, now: datetime, *, for_update: bool = False
    ) -> Optional[QuotaLedgerEntry]:
        ...

    def create(self, entry: QuotaLedgerEntry) -> QuotaLedgerEntry:
        ...

    def increment_usage(
        self,
        entry_id: str,
        resource: QuotaResource,
        amount: int,
        limit: Optional[int],
    ) -> Optional[QuotaLedgerEntry]:
        """Add ``amount`` unless it would pass ``limit``; ``None`` when the guard fails."""

    def close_period(self, entry_id: str, now: datetime) -> Optional[QuotaLedgerEntry]:
        ...


class CouponStore(Protocol):
    """Coupon lookup and usage accounting."""

    def find_by_code(self, code: str, *, for_update: bool = False) -> Optional[Coupon]:
        ...

    def increment_usage(self, coupon_id: str) -> bool:
        """Bump ``used_count`` unless the usage limit has been reached."""


class RedemptionStore(Protocol):
    """Ledger of coupons applied to memberships."""

    def create(self, redemption: Redemption) -> Redemption:
        ...

    def has_redeemed(self, membership_id: str, coupon_id: str) -> bool:
        ...

    def list_for_membership(self, membership_id: str) -> Sequence[Redemption]:
        ...


class ChangeLogStore(Protocol):
    """Append-only membership history."""

    def append(self, entry: ChangeLogEntry) -> ChangeLogEntry:
        ...

    def list_for_membership(
        self,
        membership_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        newest_first: bool = True,
    ) -> Sequence[ChangeLogEntry]:
        ...

    def latest(self, membership_id: str) -> Optional[ChangeLogEntry]:
        ...

    def find_by_date_range(
        self,
        start: datetime,
        end: datetime,
        *,
        membership_id: Optional[str] = None,
        reason: Optional[ChangeReason] = None,
    ) -> Sequence[ChangeLogEntry]:
        ...

    def count_by_reason(self, start: datetime, end: datetime) -> Dict[ChangeReason, int]:
        ...


class PendingTierChangeStore(Protocol):
    """Tier changes scheduled for the end of a billing period."""

    def find_open(self, membership_id: str) -> Optional[PendingTierChange]:
        ...

    def create(self, change: PendingTierChange) -> PendingTierChange:
        ...

    def mark_applied(self, change_id: str, now: datetime) -> Optional[PendingTierChange]:
        ...

    def mark_cancelled(self, change_id: str, now: datetime) -> Optional[PendingTierChange]:
        ...

    def find_due(self, now: datetime) -> Sequence[PendingTierChange]:
        ...


class MembershipTransaction(Protocol):
    """Stores bound to one open transaction."""

    memberships: MembershipStore
    tiers: TierCatalog
    ledger: QuotaLedgerStore
    coupons: CouponStore
    redemptions: RedemptionStore
    change_log: ChangeLogStore
    pending_changes: PendingTierChangeStore


class UnitOfWork(Protocol):
    """Opens transactions that commit on success and roll back on error."""

    def transaction(self) -> ContextManager[MembershipTransaction]:
        ...


class MembershipEventLogger(Protocol):
    """Receives every committed change-log entry."""

    def log(self, entry: ChangeLogEntry) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / _SECONDS_PER_DAY)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_resource(resource: QuotaResource | str) -> QuotaResource:
    if isinstance(resource, QuotaResource):
        return resource
    try:
        return QuotaResource(str(resource).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in QuotaResource)
        raise MembershipValidationError(
            f"Unknown quota resource: {resource}. Allowed values: {allowed}",
            reason="unknown_resource",
        ) from exc


def _reason_for_price_change(old_price: Decimal, new_price: Decimal) -> ChangeReason:
    if new_price > old_price:
        return ChangeReason.UPGRADE
    if new_price < old_price:
        return ChangeReason.DOWNGRADE
    return ChangeReason.ADMIN_CHANGE


Operation = Callable[[MembershipTransaction, List[ChangeLogEntry]], T]


@dataclass
class MembershipService:
    """Runs every membership use case inside a single store transaction."""

    unit_of_work: UnitOfWork
    event_logger: MembershipEventLogger
    config: MembershipConfig = field(default_factory=MembershipConfig)
    clock: Callable[[], datetime] = _utcnow

    def _now(self) -> datetime:
        return self.clock()

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------
    def _run(self, operation: Operation[T], *, name: str) -> T:
        """Execute ``operation`` in a transaction, retrying serialization aborts.

        Change-log entries collected by the operation are handed to the event
        logger only once the transaction has committed.
        """

        attempts = max(1, self.config.transaction_retries)
        for attempt in range(1, attempts + 1):
            events: List[ChangeLogEntry] = []
            try:
                with self.unit_of_work.transaction() as tx:
                    result = operation(tx, events)
            except TransactionConflict as exc:
                if attempt >= attempts:
                    logger.warning("Giving up on %s after %s conflicting attempts", name, attempt)
                    raise ConflictError(
                        "The membership was modified concurrently, please retry",
                        detail={"operation": name},
                    ) from exc
                logger.debug("Retrying %s after transaction conflict (attempt %s)", name, attempt)
                continue

            for entry in events:
                self.event_logger.log(entry)
            return result

        raise RuntimeError("unreachable")  # pragma: no cover

    def _record(self, tx: MembershipTransaction, events: List[ChangeLogEntry], entry: ChangeLogEntry) -> ChangeLogEntry:
        stored = tx.change_log.append(entry)
        events.append(stored)
        return stored

    def _require_membership(
        self, tx: MembershipTransaction, membership_id: str, *, for_update: bool = False
    ) -> Membership:
        membership = tx.memberships.get(membership_id, for_update=for_update)
        if membership is None:
            raise NotFoundError("Membership not found", detail={"membership_id": membership_id})
        return membership

    def _require_tier(self, tx: MembershipTransaction, tier_id: int) -> MembershipTier:
        tier = tx.tiers.get(tier_id)
        if tier is None:
            raise NotFoundError("Membership tier not found", detail={"tier_id": tier_id})
        return tier

    def _require_subscribable(self, tier: MembershipTier, action: MembershipAction) -> None:
        if not tier.can_be_subscribed():
            raise InvalidStateError(
                f"Tier {tier.name} is not available for subscription",
                action=action.value,
            )
        if tier.price.currency != self.config.default_currency:
            raise MembershipValidationError(
                f"Tier {tier.name} is priced in {tier.price.currency}, expected {self.config.default_currency}",
                reason="currency_mismatch",
            )

    def _check_months(self, months: int) -> int:
        if isinstance(months, bool) or not isinstance(months, int):
            raise MembershipValidationError("months must be an integer", reason="invalid_months")
        maximum = self.config.max_renewal_months
        if months < 1 or months > maximum:
            raise MembershipValidationError(
                f"Duration must be between 1 and {maximum} months",
                reason="invalid_months",
            )
        return months

    def _period_end(self, membership: Membership, now: datetime) -> datetime:
        if membership.end_date is not None and membership.end_date > now:
            return membership.end_date
        return now + timedelta(days=self.config.ledger_fallback_days)

    def _open_ledger_period(
        self, tx: MembershipTransaction, membership_id: str, start: datetime, end: datetime
    ) -> QuotaLedgerEntry:
        return tx.ledger.create(
            QuotaLedgerEntry(
                membership_id=membership_id,
                period_start=start,
                period_end=end,
                created_at=start,
                updated_at=start,
            )
        )

    def _close_ledger_period(
        self, tx: MembershipTransaction, membership_id: str, now: datetime
    ) -> Optional[QuotaLedgerEntry]:
        current = tx.ledger.find_current_period(membership_id, now, for_update=True)
        if current is not None:
            tx.ledger.close_period(current.id, now)
        return current

    def _cancel_open_pending_change(
        self, tx: MembershipTransaction, membership_id: str, now: datetime
    ) -> Optional[PendingTierChange]:
        pending = tx.pending_changes.find_open(membership_id)
        if pending is not None:
            tx.pending_changes.mark_cancelled(pending.id, now)
        return pending

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_membership(
        self,
        subscriber_id: str,
        tier_id: int,
        *,
        auto_renew: bool = True,
        coupon_code: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Membership:
        """Subscribe ``subscriber_id`` to a tier and open the first quota period."""

        if not subscriber_id:
            raise MembershipValidationError("subscriber_id is required", reason="missing_subscriber")

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> Membership:
            tier = self._require_tier(tx, tier_id)
            self._require_subscribable(tier, MembershipAction.CREATE)

            current = tx.memberships.find_current_by_subscriber(subscriber_id)
            if current is not None:
                raise ConflictError(
                    "Subscriber already has an active membership",
                    detail={"membership_id": current.id},
                )
            if self.config.one_membership_per_subscriber and tx.memberships.find_by_subscriber(subscriber_id):
                raise ConflictError(
                    "Subscriber already has a membership. Use reactivate instead.",
                    detail={"subscriber_id": subscriber_id},
                )

            now = self._now()
            end_date = tier.billing_cycle.end_date(now)
            membership = tx.memberships.create(
                Membership(
                    subscriber_id=subscriber_id,
                    tier_id=tier.id,
                    price=tier.price,
                    billing_cycle=tier.billing_cycle,
                    status=transition(None, MembershipAction.CREATE),
                    start_date=now,
                    end_date=end_date,
                    auto_renew=auto_renew,
                    created_at=now,
                    updated_at=now,
                )
            )
            self._open_ledger_period(tx, membership.id, now, end_date)
            if coupon_code:
                self._redeem_coupon(tx, membership, tier, coupon_code, now)
            return membership

        membership = self._run(operation, name="create_membership")
        logger.info(
            "Created membership %s for subscriber %s on tier %s (by %s)",
            membership.id,
            subscriber_id,
            tier_id,
            created_by or subscriber_id,
        )
        return membership

    def cancel_membership(
        self,
        membership_id: str,
        *,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Membership:
        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> Membership:
            membership = self._require_membership(tx, membership_id, for_update=True)
            new_status = transition(membership.status, MembershipAction.CANCEL)
            now = self._now()

            pending = self._cancel_open_pending_change(tx, membership.id, now)
            self._close_ledger_period(tx, membership.id, now)

            updated = tx.memberships.update(
                membership.model_copy(
                    update={
                        "status": new_status,
                        "end_date": now,
                        "auto_renew": False,
                        "paused_at": None,
                        "pause_until": None,
                        "updated_at": now,
                    }
                )
            )
            metadata: Dict[str, object] = {"previous_status": membership.status.value}
            if reason:
                metadata["reason"] = reason
            if pending is not None:
                metadata["cancelled_pending_change_id"] = pending.id
            self._record(
                tx,
                events,
                ChangeLogEntry(
                    membership_id=membership.id,
                    old_tier_id=membership.tier_id,
                    new_tier_id=None,
                    reason=ChangeReason.CANCELLATION,
                    changed_by=cancelled_by,
                    metadata=metadata,
                    changed_at=now,
                ),
            )
            return updated

        return self._run(operation, name="cancel_membership")

    def pause_membership(
        self,
        membership_id: str,
        *,
        paused_by: Optional[str] = None,
        reason: Optional[str] = None,
        pause_until: Optional[datetime] = None,
    ) -> Membership:
        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> Membership:
            membership = self._require_membership(tx, membership_id, for_update=True)
            new_status = transition(membership.status, MembershipAction.PAUSE)
            now = self._now()
            if pause_until is not None and pause_until <= now:
                raise MembershipValidationError("pause_until must be in the future", reason="invalid_pause_until")

            updated = tx.memberships.update(
                membership.model_copy(
                    update={
                        "status": new_status,
                        "paused_at": now,
                        "pause_until": pause_until,
                        "updated_at": now,
                    }
                )
            )
            self._record(
                tx,
                events,
                ChangeLogEntry(
                    membership_id=membership.id,
                    old_tier_id=membership.tier_id,
                    new_tier_id=membership.tier_id,
                    reason=ChangeReason.PAUSE,
                    changed_by=paused_by,
                    metadata={
                        "reason": reason,
                        "paused_at": _iso(now),
                        "pause_until": _iso(pause_until),
                    },
                    changed_at=now,
                ),
            )
            return updated

        return self._run(operation, name="pause_membership")

    def resume_membership(
        self,
        membership_id: str,
        *,
        resumed_by: Optional[str] = None,
        extend_end_date: bool = False,
    ) -> Membership:
        """Resume a paused membership, optionally pushing the end date out.

        The extension is the paused duration rounded up to whole 30-day
        months.
        """

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> Membership:
            membership = self._require_membership(tx, membership_id, for_update=True)
            new_status = transition(membership.status, MembershipAction.RESUME)
            now = self._now()

            update: Dict[str, object] = {
                "status": new_status,
                "paused_at": None,
                "pause_until": None,
                "updated_at": now,
            }
            metadata: Dict[str, object] = {"extend_end_date": extend_end_date}
            if extend_end_date and membership.paused_at is not None and membership.end_date is not None:
                extension_days = max(_ceil_days(now - membership.paused_at), 0)
                extension_months = math.ceil(extension_days / 30)
                if extension_months > 0:
                    update["end_date"] = add_months(membership.end_date, extension_months)
                metadata["extension_days"] = extension_days
                metadata["extension_months"] = extension_months

            updated = tx.memberships.update(membership.model_copy(update=update))
            self._record(
                tx,
                events,
                ChangeLogEntry(
                    membership_id=membership.id,
                    old_tier_id=membership.tier_id,
                    new_tier_id=membership.tier_id,
                    reason=ChangeReason.RESUME,
                    changed_by=resumed_by,
                    metadata=metadata,
                    changed_at=now,
                ),
            )
            return updated

        return self._run(operation, name="resume_membership")

    def renew_membership(
        self,
        membership_id: str,
        *,
        months: Optional[int] = None,
        renewed_by: Optional[str] = None,
    ) -> Membership:
        """Extend the end date by ``months`` (the billing cycle by default)."""

        if months is not None:
            self._check_months(months)

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> Membership:
            membership = self._require_membership(tx, membership_id, for_update=True)
            new_status = transition(membership.status, MembershipAction.RENEW)
            now = self._now()

            pending = tx.pending_changes.find_open(membership.id)
            if pending is not None and pending.is_due(now):
                membership = self._apply_pending_change(tx, events, membership, pending, now)

            duration = months if months is not None else membership.billing_cycle.months
            self._check_months(duration)
            base = membership.end_date or now
            new_end = add_months(base, duration)

            updated = tx.memberships.update(
                membership.model_copy(
                    update={"status": new_status, "end_date": new_end, "updated_at": now}
                )
            )
            self._record(
                tx,
                events,
                ChangeLogEntry(
                    membership_id=membership.id,
                    old_tier_id=membership.tier_id,
                    new_tier_id=membership.tier_id,
                    reason=ChangeReason.RENEWAL,
                    changed_by=renewed_by,
                    metadata={
                        "months": duration,
                        "previous_status": membership.status.value,
                        "previous_end_date": _iso(membership.end_date),
                        "new_end_date": _iso(new_end),
                    },
                    changed_at=now,
                ),
            )
            return updated

        return self._run(operation, name="renew_membership")

    def reactivate_membership(
        self,
        membership_id: str,
        *,
        months: int,
        tier_id: Optional[int] = None,
        reactivated_by: Optional[str] = None,
    ) -> Membership:
        """Bring a cancelled or expired membership back for ``months`` months."""

        self._check_months(months)

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> Membership:
            membership = self._require_membership(tx, membership_id, for_update=True)
            new_status = transition(membership.status, MembershipAction.REACTIVATE)

            other = tx.memberships.find_current_by_subscriber(membership.subscriber_id)
            if other is not None and other.id != membership.id:
                raise ConflictError(
                    "Subscriber already has an active membership",
                    detail={"membership_id": other.id},
                )

            tier = self._require_tier(tx, tier_id if tier_id is not None else membership.tier_id)
            self._require_subscribable(tier, MembershipAction.REACTIVATE)

            now = self._now()
            new_end = add_months(now, months)
            pending = self._cancel_open_pending_change(tx, membership.id, now)
            self._close_ledger_period(tx, membership.id, now)
            self._open_ledger_period(tx, membership.id, now, new_end)

            updated = tx.memberships.update(
                membership.model_copy(
                    update={
                        "status": new_status,
                        "tier_id": tier.id,
                        "price": tier.price,
                        "billing_cycle": tier.billing_cycle,
                        "start_date": now,
                        "end_date": new_end,
                        "auto_renew": True,
                        "paused_at": None,
                        "pause_until": None,
                        "updated_at": now,
                    }
                )
            )
            metadata: Dict[str, object] = {
                "months": months,
                "previous_status": membership.status.value,
                "previous_tier_id": membership.tier_id,
            }
            if pending is not None:
                metadata["cancelled_pending_change_id"] = pending.id
            self._record(
                tx,
                events,
                ChangeLogEntry(
                    membership_id=membership.id,
                    old_tier_id=None,
                    new_tier_id=tier.id,
                    reason=ChangeReason.REACTIVATION,
                    changed_by=reactivated_by,
                    metadata=metadata,
                    changed_at=now,
                ),
            )
            return updated

        return self._run(operation, name="reactivate_membership")

    def toggle_auto_renew(
        self,
        membership_id: str,
        *,
        enabled: Optional[bool] = None,
        changed_by: Optional[str] = None,
    ) -> Membership:
        """Flip (or explicitly set) the auto-renew flag."""

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> Membership:
            membership = self._require_membership(tx, membership_id, for_update=True)
            transition(membership.status, MembershipAction.TOGGLE_AUTO_RENEW)
            value = (not membership.auto_renew) if enabled is None else enabled
            if value == membership.auto_renew:
                return membership

            now = self._now()
            updated = tx.memberships.update(
                membership.model_copy(update={"auto_renew": value, "updated_at": now})
            )
            self._record(
                tx,
                events,
                ChangeLogEntry(
                    membership_id=membership.id,
                    old_tier_id=membership.tier_id,
                    new_tier_id=membership.tier_id,
                    reason=ChangeReason.ADMIN_CHANGE,
                    changed_by=changed_by,
                    metadata={"auto_renew": value},
                    changed_at=now,
                ),
            )
            return updated

        return self._run(operation, name="toggle_auto_renew")

    # ------------------------------------------------------------------
    # Tier changes
    # ------------------------------------------------------------------
    def change_tier(
        self,
        membership_id: str,
        new_tier_id: int,
        *,
        changed_by: Optional[str] = None,
        apply_immediately: bool = True,
        reason: Optional[str] = None,
    ) -> TierChangeResult:
        return self._change_tier(
            membership_id,
            new_tier_id,
            changed_by=changed_by,
            apply_immediately=apply_immediately,
            reason=reason,
            direction=None,
        )

    def upgrade(
        self,
        membership_id: str,
        new_tier_id: int,
        *,
        changed_by: Optional[str] = None,
        apply_immediately: bool = True,
        reason: Optional[str] = None,
    ) -> TierChangeResult:
        return self._change_tier(
            membership_id,
            new_tier_id,
            changed_by=changed_by,
            apply_immediately=apply_immediately,
            reason=reason,
            direction=ChangeReason.UPGRADE,
        )

    def downgrade(
        self,
        membership_id: str,
        new_tier_id: int,
        *,
        changed_by: Optional[str] = None,
        apply_immediately: bool = False,
        reason: Optional[str] = None,
    ) -> TierChangeResult:
        """Move to a cheaper tier, by default at the end of the current period."""

        return self._change_tier(
            membership_id,
            new_tier_id,
            changed_by=changed_by,
            apply_immediately=apply_immediately,
            reason=reason,
            direction=ChangeReason.DOWNGRADE,
        )

    def _change_tier(
        self,
        membership_id: str,
        new_tier_id: int,
        *,
        changed_by: Optional[str],
        apply_immediately: bool,
        reason: Optional[str],
        direction: Optional[ChangeReason],
    ) -> TierChangeResult:
        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> TierChangeResult:
            membership = self._require_membership(tx, membership_id, for_update=True)
            transition(membership.status, MembershipAction.CHANGE_TIER)
            if new_tier_id == membership.tier_id:
                raise ConflictError(
                    "Membership is already on this tier",
                    detail={"tier_id": new_tier_id},
                )

            new_tier = self._require_tier(tx, new_tier_id)
            self._require_subscribable(new_tier, MembershipAction.CHANGE_TIER)
            if new_tier.price.currency != membership.price.currency:
                raise MembershipValidationError(
                    f"Currency mismatch: {membership.price.currency} vs {new_tier.price.currency}",
                    reason="currency_mismatch",
                )

            difference = new_tier.price.amount - membership.price.amount
            change_reason = _reason_for_price_change(membership.price.amount, new_tier.price.amount)
            if direction == ChangeReason.UPGRADE and difference <= 0:
                raise MembershipValidationError(
                    "New tier must be more expensive than the current tier for an upgrade",
                    reason="not_an_upgrade",
                )
            if direction == ChangeReason.DOWNGRADE and difference >= 0:
                raise MembershipValidationError(
                    "New tier must be cheaper than the current tier for a downgrade",
                    reason="not_a_downgrade",
                )

            now = self._now()
            previous = tx.pending_changes.find_open(membership.id)
            if previous is not None:
                tx.pending_changes.mark_cancelled(previous.id, now)

            prorated: Optional[Decimal] = None
            pending: Optional[PendingTierChange] = None
            if apply_immediately:
                prorated = self.calculate_proration(membership, difference, now)
                tx.memberships.update(
                    membership.model_copy(
                        update={
                            "tier_id": new_tier.id,
                            "price": new_tier.price,
                            "billing_cycle": new_tier.billing_cycle,
                            "updated_at": now,
                        }
                    )
                )
                effective_date = now
            else:
                if membership.end_date is None:
                    raise MembershipValidationError(
                        "A deferred tier change needs a membership end date",
                        reason="missing_end_date",
                    )
                pending = tx.pending_changes.create(
                    PendingTierChange(
                        membership_id=membership.id,
                        from_tier_id=membership.tier_id,
                        to_tier_id=new_tier.id,
                        effective_at=membership.end_date,
                        requested_by=changed_by,
                        created_at=now,
                    )
                )
                effective_date = membership.end_date

            metadata: Dict[str, object] = {
                "apply_immediately": apply_immediately,
                "prorated_amount": str(prorated) if prorated is not None else None,
                "currency": membership.price.currency,
                "old_price": str(membership.price.amount),
                "new_price": str(new_tier.price.amount),
            }
            if reason:
                metadata["reason"] = reason
            logged_reason = change_reason
            if pending is not None:
                # the upgrade/downgrade itself is logged when the change applies
                logged_reason = ChangeReason.ADMIN_CHANGE
                metadata["deferred"] = True
                metadata["requested_reason"] = change_reason.value
                metadata["effective_at"] = _iso(pending.effective_at)
                metadata["pending_change_id"] = pending.id
            entry = self._record(
                tx,
                events,
                ChangeLogEntry(
                    membership_id=membership.id,
                    old_tier_id=membership.tier_id,
                    new_tier_id=new_tier.id,
                    reason=logged_reason,
                    changed_by=changed_by,
                    metadata=metadata,
                    changed_at=now,
                ),
            )
            return TierChangeResult(
                membership_id=membership.id,
                old_tier_id=membership.tier_id,
                new_tier_id=new_tier.id,
                reason=change_reason,
                applied_immediately=apply_immediately,
                effective_date=effective_date,
                prorated_amount=prorated,
                currency=membership.price.currency,
                change_log_id=entry.id,
                pending_change_id=pending.id if pending is not None else None,
            )

        return self._run(operation, name="change_tier")

    def calculate_proration(
        self, membership: Membership, price_difference: Decimal, now: datetime
    ) -> Optional[Decimal]:
        """Signed charge (or credit) for the unused part of the current period."""

        if membership.end_date is None:
            return None
        total_days = _ceil_days(membership.end_date - membership.current_period_start())
        remaining_days = _ceil_days(membership.end_date - now)
        if total_days <= 0 or remaining_days <= 0:
            return None
        remaining_days = min(remaining_days, total_days)
        amount = price_difference / Decimal(total_days) * Decimal(remaining_days)
        return amount.quantize(_CENT, rounding=ROUND_HALF_UP)

    def _apply_pending_change(
        self,
        tx: MembershipTransaction,
        events: List[ChangeLogEntry],
        membership: Membership,
        pending: PendingTierChange,
        now: datetime,
    ) -> Membership:
        tier = self._require_tier(tx, pending.to_tier_id)
        updated = tx.memberships.update(
            membership.model_copy(
                update={
                    "tier_id": tier.id,
                    "price": tier.price,
                    "billing_cycle": tier.billing_cycle,
                    "updated_at": now,
                }
            )
        )
        tx.pending_changes.mark_applied(pending.id, now)
        self._record(
            tx,
            events,
            ChangeLogEntry(
                membership_id=membership.id,
                old_tier_id=membership.tier_id,
                new_tier_id=tier.id,
                reason=_reason_for_price_change(membership.price.amount, tier.price.amount),
                changed_by=SYSTEM_ACTOR,
                metadata={
                    "deferred": True,
                    "pending_change_id": pending.id,
                    "requested_by": pending.requested_by,
                    "effective_at": _iso(pending.effective_at),
                },
                changed_at=now,
            ),
        )
        return updated

    def apply_pending_tier_changes(self, now: Optional[datetime] = None) -> BatchResult:
        """Apply every due deferred tier change, one transaction per membership."""

        moment = now or self._now()
        due = self._run(lambda tx, events: list(tx.pending_changes.find_due(moment)), name="find_due_changes")

        processed: List[str] = []
        failures: List[BatchFailure] = []
        for change in due:

            def operation(
                tx: MembershipTransaction,
                events: List[ChangeLogEntry],
                change: PendingTierChange = change,
            ) -> bool:
                current = tx.pending_changes.find_open(change.membership_id)
                if current is None or current.id != change.id:
                    return False
                membership = self._require_membership(tx, change.membership_id, for_update=True)
                if not can_transition(membership.status, MembershipAction.CHANGE_TIER):
                    return False
                self._apply_pending_change(tx, events, membership, current, moment)
                return True

            try:
                applied = self._run(operation, name="apply_pending_tier_change")
            except MembershipError as exc:
                logger.warning("Pending tier change %s failed: %s", change.id, exc.message)
                failures.append(BatchFailure(membership_id=change.membership_id, error=exc.message))
                continue
            except Exception as exc:
                logger.exception("Unexpected error applying pending tier change %s", change.id)
                failures.append(BatchFailure(membership_id=change.membership_id, error=str(exc)))
                continue
            if applied:
                processed.append(change.membership_id)

        if due:
            logger.info("Applied %s of %s due tier changes", len(processed), len(due))
        return BatchResult(processed_ids=processed, failures=failures)

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------
    def apply_coupon(
        self,
        membership_id: str,
        code: str,
        *,
        applied_by: Optional[str] = None,
    ) -> CouponApplication:
        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> CouponApplication:
            membership = self._require_membership(tx, membership_id, for_update=True)
            tier = self._require_tier(tx, membership.tier_id)
            return self._redeem_coupon(tx, membership, tier, code, self._now())

        application = self._run(operation, name="apply_coupon")
        logger.info(
            "Coupon %s applied to membership %s by %s: %s off",
            application.coupon_code,
            membership_id,
            applied_by or "subscriber",
            application.discount_amount,
        )
        return application

    def _redeem_coupon(
        self,
        tx: MembershipTransaction,
        membership: Membership,
        tier: MembershipTier,
        code: str,
        now: datetime,
    ) -> CouponApplication:
        normalized = normalize_coupon_code(code)
        coupon = tx.coupons.find_by_code(normalized, for_update=True)
        if coupon is None:
            raise NotFoundError("Coupon not found", detail={"code": normalized})

        validation = coupon.redeemability(now)
        if not validation.valid:
            logger.warning("Rejected coupon %s for membership %s: %s", normalized, membership.id, validation.reason)
            raise MembershipValidationError(validation.reason or "Coupon is not valid", reason=validation.reason)

        if tx.redemptions.has_redeemed(membership.id, coupon.id):
            raise ConflictError(
                "Coupon already applied to this membership",
                detail={"code": normalized, "membership_id": membership.id},
            )

        original_price = tier.price
        discount = coupon.calculate_discount(original_price)
        if not tx.coupons.increment_usage(coupon.id):
            raise MembershipValidationError("Usage limit reached", reason="Usage limit reached")

        redemption = tx.redemptions.create(
            Redemption(
                membership_id=membership.id,
                coupon_id=coupon.id,
                discount_amount=discount,
                redeemed_at=now,
            )
        )
        return CouponApplication(
            membership_id=membership.id,
            coupon_code=coupon.code,
            redemption_id=redemption.id,
            original_price=original_price,
            discount_amount=discount,
            final_price=original_price.subtract(discount),
        )

    def validate_coupon(self, code: str) -> CouponValidation:
        """Check a coupon without redeeming it."""

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> CouponValidation:
            coupon = tx.coupons.find_by_code(normalize_coupon_code(code))
            if coupon is None:
                return CouponValidation(valid=False, reason="Coupon not found")
            return coupon.redeemability(self._now())

        return self._run(operation, name="validate_coupon")

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------
    def check_quota(self, membership_id: str, resource: QuotaResource | str) -> QuotaStatus:
        quota_resource = _parse_resource(resource)

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> QuotaStatus:
            membership = self._require_membership(tx, membership_id)
            tier = self._require_tier(tx, membership.tier_id)
            entry = tx.ledger.find_current_period(membership.id, self._now())
            return quota_status(quota_resource, tier.quota_limit(quota_resource), entry)

        return self._run(operation, name="check_quota")

    def consume_quota(
        self,
        membership_id: str,
        resource: QuotaResource | str,
        amount: int = 1,
    ) -> QuotaStatus:
        """Atomically check the allowance and record ``amount`` units of usage."""

        quota_resource = _parse_resource(resource)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise MembershipValidationError("amount must be a positive integer", reason="invalid_amount")

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> QuotaStatus:
            membership = self._require_membership(tx, membership_id, for_update=True)
            if not membership.is_active:
                raise InvalidStateError(
                    "Membership is not active",
                    current_state=membership.status.value,
                    action="consume_quota",
                )
            tier = self._require_tier(tx, membership.tier_id)
            limit = tier.quota_limit(quota_resource)
            now = self._now()

            entry = tx.ledger.find_current_period(membership.id, now, for_update=True)
            used = entry.used(quota_resource) if entry is not None else 0
            evaluation = assert_quota(resource=quota_resource, used=used, limit=limit, requested=amount)
            logger.debug("Quota check for membership %s: %s", membership.id, evaluation.to_dict())

            if entry is None:
                entry = self._open_ledger_period(
                    tx, membership.id, now, self._period_end(membership, now)
                )
            updated = tx.ledger.increment_usage(entry.id, quota_resource, amount, limit)
            if updated is None:
                raise QuotaExceededError(
                    resource=quota_resource.value,
                    limit=int(limit or 0),
                    used=used,
                    requested=amount,
                )
            return quota_status(quota_resource, limit, updated)

        try:
            return self._run(operation, name="consume_quota")
        except QuotaExceededError as exc:
            logger.warning(
                "Quota exceeded for membership %s: %s used %s of %s, requested %s",
                membership_id,
                exc.resource,
                exc.used,
                exc.limit,
                exc.requested,
            )
            raise

    def reset_quota(self, membership_id: str) -> QuotaLedgerEntry:
        """Close the current period and open a fresh one with zeroed counters."""

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> QuotaLedgerEntry:
            membership = self._require_membership(tx, membership_id, for_update=True)
            now = self._now()
            current = self._close_ledger_period(tx, membership.id, now)
            period_end = self._period_end(membership, now)
            if current is not None and current.period_end > now:
                period_end = current.period_end
            return self._open_ledger_period(tx, membership.id, now, period_end)

        entry = self._run(operation, name="reset_quota")
        logger.info("Reset quota ledger for membership %s", membership_id)
        return entry

    # ------------------------------------------------------------------
    # Expiration
    # ------------------------------------------------------------------
    def expire_memberships(self, now: Optional[datetime] = None) -> BatchResult:
        """Move every lapsed active membership to EXPIRED, one at a time.

        Lapsed memberships land in EXPIRED rather than CANCELLED so reports
        can tell a missed renewal from a subscriber cancelling; both states
        can be reactivated.
        """

        moment = now or self._now()
        candidates = self._run(lambda tx, events: list(tx.memberships.find_expired(moment)), name="find_expired")

        processed: List[str] = []
        failures: List[BatchFailure] = []
        for candidate in candidates:

            def operation(
                tx: MembershipTransaction,
                events: List[ChangeLogEntry],
                membership_id: str = candidate.id,
            ) -> bool:
                membership = self._require_membership(tx, membership_id, for_update=True)
                if not (membership.is_active and membership.is_lapsed(moment)):
                    return False
                new_status = transition(membership.status, MembershipAction.EXPIRE)
                tx.memberships.update(
                    membership.model_copy(update={"status": new_status, "updated_at": moment})
                )
                self._record(
                    tx,
                    events,
                    ChangeLogEntry(
                        membership_id=membership.id,
                        old_tier_id=membership.tier_id,
                        new_tier_id=None,
                        reason=ChangeReason.EXPIRATION,
                        changed_by=SYSTEM_ACTOR,
                        metadata={"end_date": _iso(membership.end_date)},
                        changed_at=moment,
                    ),
                )
                return True

            try:
                expired = self._run(operation, name="expire_membership")
            except MembershipError as exc:
                logger.warning("Failed to expire membership %s: %s", candidate.id, exc.message)
                failures.append(BatchFailure(membership_id=candidate.id, error=exc.message))
                continue
            except Exception as exc:
                logger.exception("Unexpected error expiring membership %s", candidate.id)
                failures.append(BatchFailure(membership_id=candidate.id, error=str(exc)))
                continue
            if expired:
                processed.append(candidate.id)

        if candidates:
            logger.info("Expired %s memberships (%s failures)", len(processed), len(failures))
        return BatchResult(processed_ids=processed, failures=failures)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_tiers(self, *, active_only: bool = True) -> List[MembershipTier]:
        """Published tiers, cheapest first."""
        return self._run(
            lambda tx, events: list(tx.tiers.list(active_only=active_only)),
            name="list_tiers",
        )

    def get_tier_by_name(self, name: str) -> MembershipTier:
        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> MembershipTier:
            tier = tx.tiers.find_by_name(name)
            if tier is None:
                raise NotFoundError("Membership tier not found", detail={"name": name})
            return tier

        return self._run(operation, name="get_tier_by_name")

    def get_membership(self, membership_id: str) -> Membership:
        return self._run(
            lambda tx, events: self._require_membership(tx, membership_id),
            name="get_membership",
        )

    def get_active_membership(self, subscriber_id: str) -> Optional[Membership]:
        return self._run(
            lambda tx, events: tx.memberships.find_active_by_subscriber(subscriber_id),
            name="get_active_membership",
        )

    def list_memberships(
        self,
        *,
        status: Optional[MembershipStatus] = None,
        tier_id: Optional[int] = None,
        subscriber_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> MembershipPage:
        page_size = self.config.default_page_size if limit is None else limit
        if page_size < 1:
            raise MembershipValidationError("limit must be >= 1", reason="invalid_limit")
        if offset < 0:
            raise MembershipValidationError("offset must be >= 0", reason="invalid_offset")

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> MembershipPage:
            items = tx.memberships.list(
                status=status,
                tier_id=tier_id,
                subscriber_id=subscriber_id,
                limit=page_size,
                offset=offset,
            )
            total = tx.memberships.count(status=status, tier_id=tier_id, subscriber_id=subscriber_id)
            return MembershipPage(items=list(items), total=total, limit=page_size, offset=offset)

        return self._run(operation, name="list_memberships")

    def find_expiring(
        self,
        days: Optional[int] = None,
        *,
        include_auto_renew: bool = True,
    ) -> List[Membership]:
        """Active memberships ending within ``days``.

        With ``include_auto_renew=False`` only memberships that will really
        lapse are returned.
        """

        window = self.config.expiring_soon_days if days is None else days
        if window < 0:
            raise MembershipValidationError("days must be >= 0", reason="invalid_days")

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> List[Membership]:
            found = tx.memberships.find_expiring_soon(self._now(), window)
            return [item for item in found if include_auto_renew or not item.auto_renew]

        return self._run(operation, name="find_expiring")

    def membership_status(self, membership_id: str) -> MembershipStatusReport:
        membership = self.get_membership(membership_id)
        now = self._now()

        days_until_expiry: Optional[int] = None
        if membership.end_date is not None:
            days_until_expiry = _ceil_days(membership.end_date - now)
        is_expired = membership.status == MembershipStatus.EXPIRED or membership.is_lapsed(now)
        is_expiring_soon = (
            membership.is_active
            and not is_expired
            and days_until_expiry is not None
            and days_until_expiry <= self.config.expiring_soon_days
        )
        return MembershipStatusReport(
            membership_id=membership.id,
            status=membership.status,
            is_active=membership.is_active,
            is_expired=is_expired,
            is_expiring_soon=is_expiring_soon,
            days_until_expiry=days_until_expiry,
            auto_renew=membership.auto_renew,
            allowed_actions=sorted(action.value for action in allowed_actions(membership.status)),
        )

    def change_history(
        self,
        membership_id: str,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> List[ChangeLogEntry]:
        page_size = self.config.default_page_size if limit is None else limit
        if page_size < 1 or offset < 0:
            raise MembershipValidationError("limit must be >= 1 and offset >= 0", reason="invalid_page")

        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> List[ChangeLogEntry]:
            self._require_membership(tx, membership_id)
            return list(
                tx.change_log.list_for_membership(
                    membership_id, limit=page_size, offset=offset, newest_first=newest_first
                )
            )

        return self._run(operation, name="change_history")

    def latest_change(self, membership_id: str) -> Optional[ChangeLogEntry]:
        def operation(tx: MembershipTransaction, events: List[ChangeLogEntry]) -> Optional[ChangeLogEntry]:
            self._require_membership(tx, membership_id)
            return tx.change_log.latest(membership_id)

        return self._run(operation, name="latest_change")

    def tier_change_statistics(self, start: datetime, end: datetime) -> TierChangeStatistics:
        if end < start:
            raise MembershipValidationError("end must not precede start", reason="invalid_range")

        counts = self._run(lambda tx, events: tx.change_log.count_by_reason(start, end), name="tier_change_statistics")
        return TierChangeStatistics(
            upgrades=counts.get(ChangeReason.UPGRADE, 0),
            downgrades=counts.get(ChangeReason.DOWNGRADE, 0),
            cancellations=counts.get(ChangeReason.CANCELLATION, 0),
            reactivations=counts.get(ChangeReason.REACTIVATION, 0),
        )


__all__ = [
    "ChangeLogStore",
    "CouponStore",
    "MembershipEventLogger",
    "MembershipService",
    "MembershipStore",
    "MembershipTransaction",
    "PendingTierChangeStore",
    "QuotaLedgerStore",
    "RedemptionStore",
    "TierCatalog",
    "UnitOfWork",
]
