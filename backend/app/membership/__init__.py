"""Membership domain package: lifecycle, quota ledger, coupons, and tier changes."""

from .config import MembershipConfig, load_membership_config
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
    BatchFailure,
    BatchResult,
    BillingCycle,
    ChangeLogEntry,
    ChangeReason,
    Coupon,
    CouponApplication,
    CouponValidation,
    DiscountType,
    Membership,
    MembershipPage,
    MembershipStatus,
    MembershipStatusReport,
    MembershipTier,
    Money,
    PendingTierChange,
    QuotaLedgerEntry,
    QuotaResource,
    QuotaStatus,
    Redemption,
    TierChangeResult,
    TierChangeStatistics,
)
from .service import (
    ChangeLogStore,
    CouponStore,
    MembershipEventLogger,
    MembershipService,
    MembershipStore,
    MembershipTransaction,
    PendingTierChangeStore,
    QuotaLedgerStore,
    RedemptionStore,
    TierCatalog,
    UnitOfWork,
)
from .state import MembershipAction, transition

__all__ = [
    "BatchFailure",
    "BatchResult",
    "BillingCycle",
    "ChangeLogEntry",
    "ChangeLogStore",
    "ChangeReason",
    "ConflictError",
    "Coupon",
    "CouponApplication",
    "CouponStore",
    "CouponValidation",
    "DiscountType",
    "InvalidStateError",
    "Membership",
    "MembershipAction",
    "MembershipConfig",
    "MembershipError",
    "MembershipEventLogger",
    "MembershipPage",
    "MembershipService",
    "MembershipStatus",
    "MembershipStatusReport",
    "MembershipStore",
    "MembershipTier",
    "MembershipTransaction",
    "MembershipValidationError",
    "Money",
    "NotFoundError",
    "PendingTierChange",
    "PendingTierChangeStore",
    "QuotaExceededError",
    "QuotaLedgerEntry",
    "QuotaLedgerStore",
    "QuotaResource",
    "QuotaStatus",
    "Redemption",
    "RedemptionStore",
    "TierCatalog",
    "TierChangeResult",
    "TierChangeStatistics",
    "TransactionConflict",
    "UnitOfWork",
    "load_membership_config",
    "transition",
]
