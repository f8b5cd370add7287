"""Quota evaluation utilities for metered membership resources."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .exceptions import MembershipValidationError, QuotaExceededError
from .models import QuotaLedgerEntry, QuotaResource, QuotaStatus


@dataclass(frozen=True)
class QuotaEvaluation:
    """Represents the outcome of a quota check for one resource."""

    resource: QuotaResource
    limit: Optional[int]
    used: int
    requested: int
    projected: int
    allowed: bool

    @property
    def unlimited(self) -> bool:
        return self.limit is None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.used, 0)

    def to_dict(self) -> dict[str, object]:
        """Serialize the evaluation for logging."""

        return {
            "resource": self.resource.value,
            "limit": self.limit,
            "used": self.used,
            "requested": self.requested,
            "projected": self.projected,
            "allowed": self.allowed,
        }


def evaluate_quota(
    *,
    resource: QuotaResource,
    used: int,
    limit: Optional[int],
    requested: int = 1,
) -> QuotaEvaluation:
    """Determine whether consuming ``requested`` units stays within ``limit``."""

    if requested <= 0:
        raise MembershipValidationError("amount must be a positive integer", reason="invalid_amount")

    projected = used + requested
    allowed = limit is None or projected <= limit

    return QuotaEvaluation(
        resource=resource,
        limit=limit,
        used=used,
        requested=requested,
        projected=projected,
        allowed=allowed,
    )


def assert_quota(
    *,
    resource: QuotaResource,
    used: int,
    limit: Optional[int],
    requested: int = 1,
) -> QuotaEvaluation:
    """Raise when consuming ``requested`` units would exceed the allowance."""

    evaluation = evaluate_quota(resource=resource, used=used, limit=limit, requested=requested)

    if not evaluation.allowed:
        raise QuotaExceededError(
            resource=resource.value,
            limit=int(limit or 0),
            used=used,
            requested=requested,
        )

    return evaluation


def quota_status(
    resource: QuotaResource,
    limit: Optional[int],
    entry: Optional[QuotaLedgerEntry],
) -> QuotaStatus:
    """Build the read-only status view; a missing entry counts as zero usage."""

    used = entry.used(resource) if entry is not None else 0
    remaining = None if limit is None else max(limit - used, 0)
    return QuotaStatus(resource=resource, used=used, limit=limit, remaining=remaining)


__all__ = ["QuotaEvaluation", "assert_quota", "evaluate_quota", "quota_status"]
