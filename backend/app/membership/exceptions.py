"""Typed failures raised by membership use cases."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class MembershipError(Exception):
    """Base class for business-rule violations surfaced to the API layer."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class NotFoundError(MembershipError):
    """A membership, tier, coupon, or ledger record does not exist."""

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(
            code="not_found",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
        )


class ConflictError(MembershipError):
    """The request collides with existing state (duplicates, no-op changes)."""

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(
            code="conflict",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class InvalidStateError(MembershipError):
    """The membership's current state forbids the requested operation."""

    def __init__(
        self,
        message: str,
        *,
        current_state: Optional[str] = None,
        action: Optional[str] = None,
    ) -> None:
        detail: Dict[str, Any] = {}
        if current_state is not None:
            detail["current_state"] = current_state
        if action is not None:
            detail["action"] = action
        super().__init__(
            code="invalid_state",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            detail=detail or None,
        )
        self.current_state = current_state
        self.action = action


class QuotaExceededError(MembershipError):
    """Consumption would take a resource beyond the tier allowance."""

    def __init__(self, *, resource: str, limit: int, used: int, requested: int) -> None:
        super().__init__(
            code="quota_exceeded",
            message=f"{resource} quota exceeded. Limit: {limit}, Current: {used}",
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "resource": resource,
                "limit": limit,
                "used": used,
                "requested": requested,
            },
        )
        self.resource = resource
        self.limit = limit
        self.used = used
        self.requested = requested


class MembershipValidationError(MembershipError):
    """Malformed input such as bad dates, amounts, or percentages."""

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(
            code="validation_error",
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"reason": reason} if reason else None,
        )
        self.reason = reason


class TransactionConflict(Exception):
    """The store aborted a transaction that may be retried from scratch."""


__all__ = [
    "ConflictError",
    "InvalidStateError",
    "MembershipError",
    "MembershipValidationError",
    "NotFoundError",
    "QuotaExceededError",
    "TransactionConflict",
]
