"""API routes exposing the membership lifecycle and quota engine."""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, TypeVar

from fastapi import APIRouter, HTTPException, Query, status

from ..membership import MembershipError, MembershipStatus, QuotaResource
from ..schemas.membership import (
    ApplyCouponRequest,
    AutoRenewRequest,
    BatchResultResponse,
    ChangeHistoryResponse,
    ChangeLogEntryResponse,
    ConsumeQuotaRequest,
    CouponApplicationResponse,
    CouponValidationResponse,
    MembershipCancelRequest,
    MembershipCreateRequest,
    MembershipListResponse,
    MembershipPauseRequest,
    MembershipReactivateRequest,
    MembershipRenewRequest,
    MembershipResponse,
    MembershipResumeRequest,
    MembershipStatusResponse,
    MembershipTierListResponse,
    MembershipTierResponse,
    QuotaPeriodResponse,
    QuotaStatusResponse,
    TierChangeRequest,
    TierChangeResponse,
    TierChangeStatisticsResponse,
)
from ..services.membership import get_membership_service

T = TypeVar("T")

router = APIRouter(prefix="/api/memberships", tags=["memberships"])


def _call(operation: Callable[[], T]) -> T:
    try:
        return operation()
    except MembershipError as exc:
        raise exc.to_http_exception() from exc


@router.post("", response_model=MembershipResponse, status_code=status.HTTP_201_CREATED)
def create_membership(payload: MembershipCreateRequest) -> MembershipResponse:
    service = get_membership_service()
    membership = _call(
        lambda: service.create_membership(
            payload.subscriber_id,
            payload.tier_id,
            auto_renew=payload.auto_renew,
            coupon_code=payload.coupon_code,
            created_by=payload.created_by,
        )
    )
    return MembershipResponse.from_membership(membership)


@router.get("", response_model=MembershipListResponse)
def list_memberships(
    status_filter: Optional[MembershipStatus] = Query(default=None, alias="status"),
    tier_id: Optional[int] = Query(default=None, alias="tierId"),
    subscriber_id: Optional[str] = Query(default=None, alias="subscriberId"),
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> MembershipListResponse:
    service = get_membership_service()
    page = _call(
        lambda: service.list_memberships(
            status=status_filter,
            tier_id=tier_id,
            subscriber_id=subscriber_id,
            limit=limit,
            offset=offset,
        )
    )
    return MembershipListResponse.from_page(page)


@router.get("/expiring", response_model=MembershipListResponse)
def list_expiring_memberships(
    days: Optional[int] = Query(default=None, ge=0),
    include_auto_renew: bool = Query(default=True, alias="includeAutoRenew"),
) -> MembershipListResponse:
    service = get_membership_service()
    items = _call(lambda: service.find_expiring(days, include_auto_renew=include_auto_renew))
    return MembershipListResponse(
        items=[MembershipResponse.from_membership(item) for item in items],
        total=len(items),
        limit=len(items),
        offset=0,
    )


@router.get("/tiers", response_model=MembershipTierListResponse)
def list_tiers(active_only: bool = Query(default=True, alias="activeOnly")) -> MembershipTierListResponse:
    service = get_membership_service()
    tiers = _call(lambda: service.list_tiers(active_only=active_only))
    return MembershipTierListResponse.from_tiers(tiers)


@router.get("/tiers/by-name/{name}", response_model=MembershipTierResponse)
def get_tier_by_name(name: str) -> MembershipTierResponse:
    service = get_membership_service()
    return MembershipTierResponse.from_tier(_call(lambda: service.get_tier_by_name(name)))


@router.get("/subscribers/{subscriber_id}/active", response_model=MembershipResponse)
def get_active_membership(subscriber_id: str) -> MembershipResponse:
    service = get_membership_service()
    membership = _call(lambda: service.get_active_membership(subscriber_id))
    if membership is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": "No active membership for subscriber"},
        )
    return MembershipResponse.from_membership(membership)


@router.get("/coupons/{code}/validation", response_model=CouponValidationResponse)
def validate_coupon(code: str) -> CouponValidationResponse:
    service = get_membership_service()
    return CouponValidationResponse.from_validation(_call(lambda: service.validate_coupon(code)))


@router.get("/statistics/tier-changes", response_model=TierChangeStatisticsResponse)
def tier_change_statistics(start: datetime, end: datetime) -> TierChangeStatisticsResponse:
    service = get_membership_service()
    stats = _call(lambda: service.tier_change_statistics(start, end))
    return TierChangeStatisticsResponse.from_statistics(stats)


@router.post("/jobs/expire", response_model=BatchResultResponse)
def run_expiration() -> BatchResultResponse:
    service = get_membership_service()
    return BatchResultResponse.from_result(service.expire_memberships())


@router.post("/jobs/pending-tier-changes", response_model=BatchResultResponse)
def run_pending_tier_changes() -> BatchResultResponse:
    service = get_membership_service()
    return BatchResultResponse.from_result(service.apply_pending_tier_changes())


@router.get("/{membership_id}", response_model=MembershipResponse)
def get_membership(membership_id: str) -> MembershipResponse:
    service = get_membership_service()
    return MembershipResponse.from_membership(_call(lambda: service.get_membership(membership_id)))


@router.get("/{membership_id}/status", response_model=MembershipStatusResponse)
def get_membership_status(membership_id: str) -> MembershipStatusResponse:
    service = get_membership_service()
    return MembershipStatusResponse.from_report(_call(lambda: service.membership_status(membership_id)))


@router.post("/{membership_id}/cancel", response_model=MembershipResponse)
def cancel_membership(membership_id: str, payload: MembershipCancelRequest) -> MembershipResponse:
    service = get_membership_service()
    membership = _call(
        lambda: service.cancel_membership(
            membership_id, cancelled_by=payload.cancelled_by, reason=payload.reason
        )
    )
    return MembershipResponse.from_membership(membership)


@router.post("/{membership_id}/pause", response_model=MembershipResponse)
def pause_membership(membership_id: str, payload: MembershipPauseRequest) -> MembershipResponse:
    service = get_membership_service()
    membership = _call(
        lambda: service.pause_membership(
            membership_id,
            paused_by=payload.paused_by,
            reason=payload.reason,
            pause_until=payload.pause_until,
        )
    )
    return MembershipResponse.from_membership(membership)


@router.post("/{membership_id}/resume", response_model=MembershipResponse)
def resume_membership(membership_id: str, payload: MembershipResumeRequest) -> MembershipResponse:
    service = get_membership_service()
    membership = _call(
        lambda: service.resume_membership(
            membership_id,
            resumed_by=payload.resumed_by,
            extend_end_date=payload.extend_end_date,
        )
    )
    return MembershipResponse.from_membership(membership)


@router.post("/{membership_id}/renew", response_model=MembershipResponse)
def renew_membership(membership_id: str, payload: MembershipRenewRequest) -> MembershipResponse:
    service = get_membership_service()
    membership = _call(
        lambda: service.renew_membership(
            membership_id, months=payload.months, renewed_by=payload.renewed_by
        )
    )
    return MembershipResponse.from_membership(membership)


@router.post("/{membership_id}/reactivate", response_model=MembershipResponse)
def reactivate_membership(membership_id: str, payload: MembershipReactivateRequest) -> MembershipResponse:
    service = get_membership_service()
    membership = _call(
        lambda: service.reactivate_membership(
            membership_id,
            months=payload.months,
            tier_id=payload.tier_id,
            reactivated_by=payload.reactivated_by,
        )
    )
    return MembershipResponse.from_membership(membership)


@router.post("/{membership_id}/auto-renew", response_model=MembershipResponse)
def toggle_auto_renew(membership_id: str, payload: AutoRenewRequest) -> MembershipResponse:
    service = get_membership_service()
    membership = _call(
        lambda: service.toggle_auto_renew(
            membership_id, enabled=payload.enabled, changed_by=payload.changed_by
        )
    )
    return MembershipResponse.from_membership(membership)


@router.post("/{membership_id}/tier-change", response_model=TierChangeResponse)
def change_tier(membership_id: str, payload: TierChangeRequest) -> TierChangeResponse:
    service = get_membership_service()
    result = _call(
        lambda: service.change_tier(
            membership_id,
            payload.new_tier_id,
            changed_by=payload.changed_by,
            apply_immediately=True if payload.apply_immediately is None else payload.apply_immediately,
            reason=payload.reason,
        )
    )
    return TierChangeResponse.from_result(result)


@router.post("/{membership_id}/upgrade", response_model=TierChangeResponse)
def upgrade_membership(membership_id: str, payload: TierChangeRequest) -> TierChangeResponse:
    service = get_membership_service()
    result = _call(
        lambda: service.upgrade(
            membership_id,
            payload.new_tier_id,
            changed_by=payload.changed_by,
            apply_immediately=True if payload.apply_immediately is None else payload.apply_immediately,
            reason=payload.reason,
        )
    )
    return TierChangeResponse.from_result(result)


@router.post("/{membership_id}/downgrade", response_model=TierChangeResponse)
def downgrade_membership(membership_id: str, payload: TierChangeRequest) -> TierChangeResponse:
    service = get_membership_service()
    result = _call(
        lambda: service.downgrade(
            membership_id,
            payload.new_tier_id,
            changed_by=payload.changed_by,
            apply_immediately=bool(payload.apply_immediately),
            reason=payload.reason,
        )
    )
    return TierChangeResponse.from_result(result)


@router.post("/{membership_id}/coupons", response_model=CouponApplicationResponse)
def apply_coupon(membership_id: str, payload: ApplyCouponRequest) -> CouponApplicationResponse:
    service = get_membership_service()
    application = _call(
        lambda: service.apply_coupon(membership_id, payload.code, applied_by=payload.applied_by)
    )
    return CouponApplicationResponse.from_application(application)


@router.get("/{membership_id}/quota/{resource}", response_model=QuotaStatusResponse)
def check_quota(membership_id: str, resource: QuotaResource) -> QuotaStatusResponse:
    service = get_membership_service()
    return QuotaStatusResponse.from_status(_call(lambda: service.check_quota(membership_id, resource)))


@router.post("/{membership_id}/quota/{resource}/consume", response_model=QuotaStatusResponse)
def consume_quota(
    membership_id: str,
    resource: QuotaResource,
    payload: ConsumeQuotaRequest,
) -> QuotaStatusResponse:
    service = get_membership_service()
    quota = _call(lambda: service.consume_quota(membership_id, resource, payload.amount))
    return QuotaStatusResponse.from_status(quota)


@router.post("/{membership_id}/quota/reset", response_model=QuotaPeriodResponse)
def reset_quota(membership_id: str) -> QuotaPeriodResponse:
    service = get_membership_service()
    return QuotaPeriodResponse.from_entry(_call(lambda: service.reset_quota(membership_id)))


@router.get("/{membership_id}/history", response_model=ChangeHistoryResponse)
def change_history(
    membership_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    newest_first: bool = Query(default=True, alias="newestFirst"),
) -> ChangeHistoryResponse:
    service = get_membership_service()
    entries = _call(
        lambda: service.change_history(
            membership_id, limit=limit, offset=offset, newest_first=newest_first
        )
    )
    return ChangeHistoryResponse(entries=[ChangeLogEntryResponse.from_entry(entry) for entry in entries])


@router.get("/{membership_id}/history/latest", response_model=ChangeLogEntryResponse)
def latest_change(membership_id: str) -> ChangeLogEntryResponse:
    service = get_membership_service()
    entry = _call(lambda: service.latest_change(membership_id))
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": "No changes recorded for membership"},
        )
    return ChangeLogEntryResponse.from_entry(entry)
