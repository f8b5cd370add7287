"""Domain models for memberships, tiers, quota ledgers, and coupons."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import MembershipValidationError

_CENT = Decimal("0.01")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class Money(BaseModel):
    """Immutable amount and ISO currency pair."""

    amount: Decimal = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if not value.isalpha():
            raise ValueError("currency must be an ISO 4217 code")
        return value

    @classmethod
    def of(cls, amount: Decimal | int | float | str, currency: str) -> "Money":
        try:
            return cls(amount=Decimal(str(amount)), currency=currency)
        except (ValueError, ArithmeticError) as exc:
            raise MembershipValidationError(f"Invalid money value: {amount} {currency}") from exc

    def _require_same_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise MembershipValidationError(
                f"Currency mismatch: {self.currency} vs {other.currency}",
                reason="currency_mismatch",
            )

    def subtract(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        if other.amount > self.amount:
            raise MembershipValidationError("Amount cannot be negative")
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def multiply(self, factor: Decimal | int) -> "Money":
        factor = Decimal(str(factor))
        if factor < 0:
            raise MembershipValidationError("Amount cannot be negative")
        return Money(amount=self.amount * factor, currency=self.currency)

    def percentage(self, percent: Decimal | int) -> "Money":
        """Return ``percent`` percent of this amount, rounded to cents."""

        return self.multiply(Decimal(str(percent)) / Decimal(100)).quantize()

    def min(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return self if self.amount <= other.amount else other

    def quantize(self) -> "Money":
        return Money(amount=self.amount.quantize(_CENT, rounding=ROUND_HALF_UP), currency=self.currency)

    def to_dict(self) -> Dict[str, str]:
        return {"amount": str(self.amount), "currency": self.currency}

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"


class BillingCycle(str, Enum):
    """Recurring period length used for tier pricing."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value: str) -> "BillingCycle":
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(cycle.value for cycle in cls)
            raise MembershipValidationError(
                f"Invalid billing cycle: {value}. Allowed values: {allowed}"
            ) from exc

    @property
    def months(self) -> int:
        return _CYCLE_MONTHS[self]

    def end_date(self, start: datetime) -> datetime:
        """Return ``start`` advanced by one full cycle."""

        return add_months(start, self.months)


_CYCLE_MONTHS: Dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; day-of-month is clamped to the target month."""

    return moment + relativedelta(months=months)


class QuotaResource(str, Enum):
    """Metered actions with a per-period allowance."""

    CONSULTATIONS = "consultations"
    OPINIONS = "opinions"
    SERVICES = "services"
    CASES = "cases"
    CALL_MINUTES = "call_minutes"


class MembershipStatus(str, Enum):
    """Closed set of lifecycle states for a membership."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Membership(BaseModel):
    """One subscriber's subscription record."""

    id: str = Field(default_factory=_new_id)
    subscriber_id: str
    tier_id: int
    price: Money
    billing_cycle: BillingCycle
    status: MembershipStatus = MembershipStatus.ACTIVE
    start_date: datetime
    end_date: Optional[datetime] = None
    auto_renew: bool = True
    paused_at: Optional[datetime] = None
    pause_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE

    def is_lapsed(self, now: datetime) -> bool:
        """Return ``True`` when the paid period has run out."""

        return self.end_date is not None and self.end_date < now

    def current_period_start(self) -> datetime:
        """Start of the billing period that ends at ``end_date``."""

        if self.end_date is None:
            return self.start_date
        candidate = add_months(self.end_date, -self.billing_cycle.months)
        return max(candidate, self.start_date)


class MembershipTier(BaseModel):
    """Subscription tier as published by the tier catalog."""

    id: int
    name: str
    name_ar: Optional[str] = None
    description: Optional[str] = None
    description_ar: Optional[str] = None
    price: Money
    billing_cycle: BillingCycle
    quota: Dict[QuotaResource, Optional[int]] = Field(default_factory=dict)
    benefits: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("quota")
    @classmethod
    def _validate_quota(cls, value: Dict[QuotaResource, Optional[int]]) -> Dict[QuotaResource, Optional[int]]:
        for resource, limit in value.items():
            if limit is not None and limit < 0:
                raise ValueError(f"quota for {resource.value} must be >= 0")
        return value

    def can_be_subscribed(self) -> bool:
        return self.is_active

    def quota_limit(self, resource: QuotaResource) -> Optional[int]:
        """Return the per-period allowance, ``None`` meaning unlimited."""

        return self.quota.get(resource)

    def has_unlimited_quota(self, resource: QuotaResource) -> bool:
        return self.quota_limit(resource) is None


def _empty_usage() -> Dict[QuotaResource, int]:
    return {resource: 0 for resource in QuotaResource}


class QuotaLedgerEntry(BaseModel):
    """Usage counters of one membership for one billing period."""

    id: str = Field(default_factory=_new_id)
    membership_id: str
    period_start: datetime
    period_end: datetime
    usage: Dict[QuotaResource, int] = Field(default_factory=_empty_usage)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("usage")
    @classmethod
    def _fill_counters(cls, value: Dict[QuotaResource, int]) -> Dict[QuotaResource, int]:
        filled = _empty_usage()
        filled.update(value)
        return filled

    @model_validator(mode="after")
    def _check_period(self) -> "QuotaLedgerEntry":
        if self.period_end < self.period_start:
            raise ValueError("period_end must not precede period_start")
        return self

    def covers(self, moment: datetime) -> bool:
        """Half-open check so a closed period and its successor never overlap."""

        return self.period_start <= moment < self.period_end

    def used(self, resource: QuotaResource) -> int:
        return self.usage.get(resource, 0)

    def incremented(self, resource: QuotaResource, amount: int, *, now: Optional[datetime] = None) -> "QuotaLedgerEntry":
        if amount <= 0:
            raise MembershipValidationError("amount must be a positive integer")
        usage = dict(self.usage)
        usage[resource] = usage.get(resource, 0) + amount
        return self.model_copy(update={"usage": usage, "updated_at": now or _utcnow()})


class DiscountType(str, Enum):
    """How a coupon reduces the tier price."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class Coupon(BaseModel):
    """Discount code with a validity window and a usage cap."""

    id: str = Field(default_factory=_new_id)
    code: str = Field(min_length=1)
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_percentage: Optional[Decimal] = None
    discount_amount: Optional[Money] = None
    valid_from: datetime
    valid_until: datetime
    usage_limit: int = Field(ge=1)
    used_count: int = Field(default=0, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return normalize_coupon_code(value)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Coupon":
        if self.valid_until < self.valid_from:
            raise ValueError("valid_until must not precede valid_from")
        if self.used_count > self.usage_limit:
            raise ValueError("used_count cannot exceed usage_limit")
        if self.discount_type == DiscountType.PERCENTAGE:
            pct = self.discount_percentage
            if pct is None or pct < 1 or pct > 100:
                raise ValueError("discount_percentage must be between 1 and 100")
        elif self.discount_amount is None or self.discount_amount.amount <= 0:
            raise ValueError("fixed amount coupons require a positive discount_amount")
        return self

    def redeemability(self, now: datetime) -> "CouponValidation":
        """Check whether the coupon may be redeemed at ``now``."""

        if not self.is_active:
            return CouponValidation(valid=False, reason="Coupon is inactive")
        if now < self.valid_from:
            return CouponValidation(valid=False, reason="Coupon not yet valid")
        if now > self.valid_until:
            return CouponValidation(valid=False, reason="Coupon expired")
        if self.used_count >= self.usage_limit:
            return CouponValidation(valid=False, reason="Usage limit reached")
        return CouponValidation(valid=True, coupon=self)

    def calculate_discount(self, price: Money) -> Money:
        """Return the discount for ``price``; never more than the price itself."""

        if self.discount_type == DiscountType.FIXED_AMOUNT and self.discount_amount is not None:
            return self.discount_amount.min(price).quantize()
        if self.discount_percentage is None:
            return Money(amount=Decimal(0), currency=price.currency)
        return price.percentage(self.discount_percentage).min(price)


def normalize_coupon_code(code: str) -> str:
    return code.strip().upper()


class CouponValidation(BaseModel):
    """Outcome of a coupon redeemability check."""

    valid: bool
    reason: Optional[str] = None
    coupon: Optional[Coupon] = None

    model_config = ConfigDict(frozen=True)


class Redemption(BaseModel):
    """Durable proof that a membership applied a coupon once."""

    id: str = Field(default_factory=_new_id)
    membership_id: str
    coupon_id: str
    discount_amount: Money
    redeemed_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ChangeReason(str, Enum):
    """Why a membership changed."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    REACTIVATION = "reactivation"
    PAUSE = "pause"
    RESUME = "resume"
    EXPIRATION = "expiration"
    ADMIN_CHANGE = "admin_change"


SYSTEM_ACTOR = "system"


class ChangeLogEntry(BaseModel):
    """Append-only audit record of a lifecycle transition."""

    id: str = Field(default_factory=_new_id)
    membership_id: str
    old_tier_id: Optional[int] = None
    new_tier_id: Optional[int] = None
    reason: ChangeReason
    changed_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    changed_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def description(self) -> str:
        if self.reason == ChangeReason.CANCELLATION:
            return "Membership cancelled"
        if self.reason == ChangeReason.EXPIRATION:
            return "Membership expired"
        if self.reason == ChangeReason.REACTIVATION:
            return f"Membership reactivated with tier {self.new_tier_id}"
        if self.reason == ChangeReason.UPGRADE:
            return f"Upgraded from tier {self.old_tier_id} to tier {self.new_tier_id}"
        if self.reason == ChangeReason.DOWNGRADE:
            return f"Downgraded from tier {self.old_tier_id} to tier {self.new_tier_id}"
        return f"Change: {self.reason.value}"


class PendingTierChange(BaseModel):
    """Tier change scheduled for the end of the current billing period."""

    id: str = Field(default_factory=_new_id)
    membership_id: str
    from_tier_id: int
    to_tier_id: int
    effective_at: datetime
    requested_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    applied_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_open(self) -> bool:
        return self.applied_at is None and self.cancelled_at is None

    def is_due(self, now: datetime) -> bool:
        return self.is_open and self.effective_at <= now


class QuotaStatus(BaseModel):
    """Read-only view of a resource allowance for the current period."""

    resource: QuotaResource
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @property
    def available(self) -> bool:
        return self.remaining is None or self.remaining > 0


class MembershipStatusReport(BaseModel):
    """Derived expiry information for a membership."""

    membership_id: str
    status: MembershipStatus
    is_active: bool
    is_expired: bool
    is_expiring_soon: bool
    days_until_expiry: Optional[int] = None
    auto_renew: bool
    allowed_actions: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class TierChangeResult(BaseModel):
    """Outcome of an upgrade, downgrade, or lateral tier change."""

    membership_id: str
    old_tier_id: int
    new_tier_id: int
    reason: ChangeReason
    applied_immediately: bool
    effective_date: datetime
    prorated_amount: Optional[Decimal] = None
    currency: str
    change_log_id: str
    pending_change_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CouponApplication(BaseModel):
    """Discount granted by applying a coupon to a membership."""

    membership_id: str
    coupon_code: str
    redemption_id: str
    original_price: Money
    discount_amount: Money
    final_price: Money

    model_config = ConfigDict(frozen=True)


class BatchFailure(BaseModel):
    """A single record a batch job could not process."""

    membership_id: str
    error: str

    model_config = ConfigDict(frozen=True)


class BatchResult(BaseModel):
    """Outcome of a best-effort batch over memberships."""

    processed_ids: List[str] = Field(default_factory=list)
    failures: List[BatchFailure] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @property
    def processed(self) -> int:
        return len(self.processed_ids)


class TierChangeStatistics(BaseModel):
    """Counts of tier-affecting changes inside a date range."""

    upgrades: int = 0
    downgrades: int = 0
    cancellations: int = 0
    reactivations: int = 0

    model_config = ConfigDict(frozen=True)

    @property
    def total(self) -> int:
        return self.upgrades + self.downgrades + self.cancellations + self.reactivations


class MembershipPage(BaseModel):
    """Slice of a filtered membership listing."""

    items: List[Membership]
    total: int
    limit: int
    offset: int

    model_config = ConfigDict(frozen=True)
