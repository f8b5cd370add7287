"""API schemas for membership endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..membership import (
    BatchResult,
    BillingCycle,
    ChangeLogEntry,
    ChangeReason,
    CouponApplication,
    CouponValidation,
    Membership,
    MembershipPage,
    MembershipStatus,
    MembershipStatusReport,
    MembershipTier,
    Money,
    QuotaLedgerEntry,
    QuotaResource,
    QuotaStatus,
    TierChangeResult,
    TierChangeStatistics,
)
from ..membership.catalog import quota_to_tier_fields


class MembershipCreateRequest(BaseModel):
    subscriber_id: str = Field(alias="subscriberId", min_length=1)
    tier_id: int = Field(alias="tierId")
    auto_renew: bool = Field(alias="autoRenew", default=True)
    coupon_code: Optional[str] = Field(alias="couponCode", default=None)
    created_by: Optional[str] = Field(alias="createdBy", default=None)

    model_config = ConfigDict(populate_by_name=True)


class MembershipCancelRequest(BaseModel):
    reason: Optional[str] = None
    cancelled_by: Optional[str] = Field(alias="cancelledBy", default=None)

    model_config = ConfigDict(populate_by_name=True)


class MembershipPauseRequest(BaseModel):
    reason: Optional[str] = None
    pause_until: Optional[datetime] = Field(alias="pauseUntil", default=None)
    paused_by: Optional[str] = Field(alias="pausedBy", default=None)

    model_config = ConfigDict(populate_by_name=True)


class MembershipResumeRequest(BaseModel):
    extend_end_date: bool = Field(alias="extendEndDate", default=False)
    resumed_by: Optional[str] = Field(alias="resumedBy", default=None)

    model_config = ConfigDict(populate_by_name=True)


class MembershipRenewRequest(BaseModel):
    months: Optional[int] = None
    renewed_by: Optional[str] = Field(alias="renewedBy", default=None)

    model_config = ConfigDict(populate_by_name=True)


class MembershipReactivateRequest(BaseModel):
    months: int
    tier_id: Optional[int] = Field(alias="tierId", default=None)
    reactivated_by: Optional[str] = Field(alias="reactivatedBy", default=None)

    model_config = ConfigDict(populate_by_name=True)


class AutoRenewRequest(BaseModel):
    enabled: Optional[bool] = None
    changed_by: Optional[str] = Field(alias="changedBy", default=None)

    model_config = ConfigDict(populate_by_name=True)


class TierChangeRequest(BaseModel):
    new_tier_id: int = Field(alias="newTierId")
    apply_immediately: Optional[bool] = Field(alias="applyImmediately", default=None)
    reason: Optional[str] = None
    changed_by: Optional[str] = Field(alias="changedBy", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ApplyCouponRequest(BaseModel):
    code: str = Field(min_length=1)
    applied_by: Optional[str] = Field(alias="appliedBy", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ConsumeQuotaRequest(BaseModel):
    amount: int = Field(default=1, ge=1)

    model_config = ConfigDict(populate_by_name=True)


class MoneyResponse(BaseModel):
    amount: Decimal
    currency: str

    @classmethod
    def from_money(cls, money: Money) -> "MoneyResponse":
        return cls(amount=money.amount, currency=money.currency)


class MembershipResponse(BaseModel):
    id: str
    subscriber_id: str = Field(alias="subscriberId")
    tier_id: int = Field(alias="tierId")
    price: MoneyResponse
    billing_cycle: BillingCycle = Field(alias="billingCycle")
    status: MembershipStatus
    start_date: datetime = Field(alias="startDate")
    end_date: Optional[datetime] = Field(alias="endDate", default=None)
    auto_renew: bool = Field(alias="autoRenew")
    paused_at: Optional[datetime] = Field(alias="pausedAt", default=None)
    pause_until: Optional[datetime] = Field(alias="pauseUntil", default=None)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_membership(cls, membership: Membership) -> "MembershipResponse":
        return cls(
            id=membership.id,
            subscriber_id=membership.subscriber_id,
            tier_id=membership.tier_id,
            price=MoneyResponse.from_money(membership.price),
            billing_cycle=membership.billing_cycle,
            status=membership.status,
            start_date=membership.start_date,
            end_date=membership.end_date,
            auto_renew=membership.auto_renew,
            paused_at=membership.paused_at,
            pause_until=membership.pause_until,
            created_at=membership.created_at,
            updated_at=membership.updated_at,
        )


class MembershipListResponse(BaseModel):
    items: List[MembershipResponse]
    total: int
    limit: int
    offset: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_page(cls, page: MembershipPage) -> "MembershipListResponse":
        return cls(
            items=[MembershipResponse.from_membership(item) for item in page.items],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        )


class MembershipTierResponse(BaseModel):
    id: int
    name: str
    name_ar: Optional[str] = Field(alias="nameAr", default=None)
    description: Optional[str] = None
    description_ar: Optional[str] = Field(alias="descriptionAr", default=None)
    price: MoneyResponse
    billing_cycle: BillingCycle = Field(alias="billingCycle")
    quota: Dict[str, Optional[int]]
    benefits: List[str] = Field(default_factory=list)
    is_active: bool = Field(alias="isActive")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_tier(cls, tier: MembershipTier) -> "MembershipTierResponse":
        return cls(
            id=tier.id,
            name=tier.name,
            name_ar=tier.name_ar,
            description=tier.description,
            description_ar=tier.description_ar,
            price=MoneyResponse.from_money(tier.price),
            billing_cycle=tier.billing_cycle,
            quota=quota_to_tier_fields(tier.quota),
            benefits=list(tier.benefits),
            is_active=tier.is_active,
        )


class MembershipTierListResponse(BaseModel):
    items: List[MembershipTierResponse]
    total: int

    @classmethod
    def from_tiers(cls, tiers: List[MembershipTier]) -> "MembershipTierListResponse":
        return cls(items=[MembershipTierResponse.from_tier(tier) for tier in tiers], total=len(tiers))


class MembershipStatusResponse(BaseModel):
    membership_id: str = Field(alias="membershipId")
    status: MembershipStatus
    is_active: bool = Field(alias="isActive")
    is_expired: bool = Field(alias="isExpired")
    is_expiring_soon: bool = Field(alias="isExpiringSoon")
    days_until_expiry: Optional[int] = Field(alias="daysUntilExpiry", default=None)
    auto_renew: bool = Field(alias="autoRenew")
    allowed_actions: List[str] = Field(alias="allowedActions", default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_report(cls, report: MembershipStatusReport) -> "MembershipStatusResponse":
        return cls(**report.model_dump())


class TierChangeResponse(BaseModel):
    membership_id: str = Field(alias="membershipId")
    old_tier_id: int = Field(alias="oldTierId")
    new_tier_id: int = Field(alias="newTierId")
    reason: ChangeReason
    applied_immediately: bool = Field(alias="appliedImmediately")
    effective_date: datetime = Field(alias="effectiveDate")
    prorated_amount: Optional[Decimal] = Field(alias="proratedAmount", default=None)
    currency: str
    change_log_id: str = Field(alias="changeLogId")
    pending_change_id: Optional[str] = Field(alias="pendingChangeId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: TierChangeResult) -> "TierChangeResponse":
        return cls(**result.model_dump())


class CouponApplicationResponse(BaseModel):
    membership_id: str = Field(alias="membershipId")
    coupon_code: str = Field(alias="couponCode")
    redemption_id: str = Field(alias="redemptionId")
    original_price: MoneyResponse = Field(alias="originalPrice")
    discount_amount: MoneyResponse = Field(alias="discountAmount")
    final_price: MoneyResponse = Field(alias="finalPrice")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_application(cls, application: CouponApplication) -> "CouponApplicationResponse":
        return cls(
            membership_id=application.membership_id,
            coupon_code=application.coupon_code,
            redemption_id=application.redemption_id,
            original_price=MoneyResponse.from_money(application.original_price),
            discount_amount=MoneyResponse.from_money(application.discount_amount),
            final_price=MoneyResponse.from_money(application.final_price),
        )


class CouponValidationResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def from_validation(cls, validation: CouponValidation) -> "CouponValidationResponse":
        return cls(
            valid=validation.valid,
            reason=validation.reason,
            code=validation.coupon.code if validation.coupon else None,
        )


class QuotaStatusResponse(BaseModel):
    resource: QuotaResource
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    available: bool

    @classmethod
    def from_status(cls, quota: QuotaStatus) -> "QuotaStatusResponse":
        return cls(
            resource=quota.resource,
            used=quota.used,
            limit=quota.limit,
            remaining=quota.remaining,
            available=quota.available,
        )


class QuotaPeriodResponse(BaseModel):
    id: str
    membership_id: str = Field(alias="membershipId")
    period_start: datetime = Field(alias="periodStart")
    period_end: datetime = Field(alias="periodEnd")
    usage: Dict[QuotaResource, int]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entry(cls, entry: QuotaLedgerEntry) -> "QuotaPeriodResponse":
        return cls(
            id=entry.id,
            membership_id=entry.membership_id,
            period_start=entry.period_start,
            period_end=entry.period_end,
            usage=dict(entry.usage),
        )


class ChangeLogEntryResponse(BaseModel):
    id: str
    membership_id: str = Field(alias="membershipId")
    old_tier_id: Optional[int] = Field(alias="oldTierId", default=None)
    new_tier_id: Optional[int] = Field(alias="newTierId", default=None)
    reason: ChangeReason
    description: str
    changed_by: Optional[str] = Field(alias="changedBy", default=None)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    changed_at: datetime = Field(alias="changedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entry(cls, entry: ChangeLogEntry) -> "ChangeLogEntryResponse":
        return cls(
            id=entry.id,
            membership_id=entry.membership_id,
            old_tier_id=entry.old_tier_id,
            new_tier_id=entry.new_tier_id,
            reason=entry.reason,
            description=entry.description,
            changed_by=entry.changed_by,
            metadata=dict(entry.metadata),
            changed_at=entry.changed_at,
        )


class ChangeHistoryResponse(BaseModel):
    entries: List[ChangeLogEntryResponse]

    model_config = ConfigDict(populate_by_name=True)


class TierChangeStatisticsResponse(BaseModel):
    upgrades: int
    downgrades: int
    cancellations: int
    reactivations: int
    total: int

    @classmethod
    def from_statistics(cls, stats: TierChangeStatistics) -> "TierChangeStatisticsResponse":
        return cls(
            upgrades=stats.upgrades,
            downgrades=stats.downgrades,
            cancellations=stats.cancellations,
            reactivations=stats.reactivations,
            total=stats.total,
        )


class BatchFailureResponse(BaseModel):
    membership_id: str = Field(alias="membershipId")
    error: str

    model_config = ConfigDict(populate_by_name=True)


class BatchResultResponse(BaseModel):
    processed: int
    processed_ids: List[str] = Field(alias="processedIds")
    failures: List[BatchFailureResponse]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: BatchResult) -> "BatchResultResponse":
        return cls(
            processed=result.processed,
            processed_ids=list(result.processed_ids),
            failures=[
                BatchFailureResponse(membership_id=failure.membership_id, error=failure.error)
                for failure in result.failures
            ],
        )
