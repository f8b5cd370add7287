"""Explicit transition table for the membership lifecycle."""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from .exceptions import InvalidStateError
from .models import MembershipStatus


class MembershipAction(str, Enum):
    """Operations that move a membership between states."""

    CREATE = "create"
    CANCEL = "cancel"
    PAUSE = "pause"
    RESUME = "resume"
    RENEW = "renew"
    REACTIVATE = "reactivate"
    CHANGE_TIER = "change_tier"
    EXPIRE = "expire"
    TOGGLE_AUTO_RENEW = "toggle_auto_renew"


_ACTIVE = MembershipStatus.ACTIVE
_PAUSED = MembershipStatus.PAUSED
_CANCELLED = MembershipStatus.CANCELLED
_EXPIRED = MembershipStatus.EXPIRED

# ``None`` as the source state stands for "no membership yet".
TRANSITIONS: Dict[Tuple[Optional[MembershipStatus], MembershipAction], MembershipStatus] = {
    (None, MembershipAction.CREATE): _ACTIVE,
    (_ACTIVE, MembershipAction.CANCEL): _CANCELLED,
    (_PAUSED, MembershipAction.CANCEL): _CANCELLED,
    (_ACTIVE, MembershipAction.PAUSE): _PAUSED,
    (_PAUSED, MembershipAction.RESUME): _ACTIVE,
    (_ACTIVE, MembershipAction.RENEW): _ACTIVE,
    (_EXPIRED, MembershipAction.RENEW): _ACTIVE,
    (_CANCELLED, MembershipAction.REACTIVATE): _ACTIVE,
    (_EXPIRED, MembershipAction.REACTIVATE): _ACTIVE,
    (_ACTIVE, MembershipAction.CHANGE_TIER): _ACTIVE,
    (_ACTIVE, MembershipAction.EXPIRE): _EXPIRED,
    (_ACTIVE, MembershipAction.TOGGLE_AUTO_RENEW): _ACTIVE,
    (_PAUSED, MembershipAction.TOGGLE_AUTO_RENEW): _PAUSED,
}

_REJECTION_MESSAGES: Dict[Tuple[MembershipStatus, MembershipAction], str] = {
    (_CANCELLED, MembershipAction.CANCEL): "Membership is already cancelled",
    (_EXPIRED, MembershipAction.CANCEL): "Membership has already expired",
    (_PAUSED, MembershipAction.PAUSE): "Membership is already paused",
    (_ACTIVE, MembershipAction.RESUME): "Membership is already active",
    (_ACTIVE, MembershipAction.REACTIVATE): "Membership is already active. Use renew instead.",
    (_PAUSED, MembershipAction.REACTIVATE): "Membership is paused. Use resume instead.",
    (_CANCELLED, MembershipAction.RENEW): "Membership is cancelled. Use reactivate instead.",
    (_PAUSED, MembershipAction.RENEW): "Membership is paused. Resume it before renewing.",
    (_PAUSED, MembershipAction.CHANGE_TIER): "Cannot change tier on inactive membership",
    (_CANCELLED, MembershipAction.CHANGE_TIER): "Cannot change tier on inactive membership",
    (_EXPIRED, MembershipAction.CHANGE_TIER): "Cannot change tier on inactive membership",
}


def allowed_actions(status: Optional[MembershipStatus]) -> FrozenSet[MembershipAction]:
    """Return every action the table permits from ``status``."""

    return frozenset(action for (source, action) in TRANSITIONS if source == status)


def can_transition(status: Optional[MembershipStatus], action: MembershipAction) -> bool:
    return (status, action) in TRANSITIONS


def transition(status: Optional[MembershipStatus], action: MembershipAction) -> MembershipStatus:
    """Return the target state, raising when the table has no such edge."""

    try:
        return TRANSITIONS[(status, action)]
    except KeyError:
        pass

    if status is None:
        message = f"Cannot {action.value} a membership that does not exist"
    else:
        message = _REJECTION_MESSAGES.get(
            (status, action),
            f"Cannot {action.value.replace('_', ' ')} a membership that is {status.value}",
        )
    raise InvalidStateError(
        message,
        current_state=status.value if status else None,
        action=action.value,
    )


__all__ = [
    "MembershipAction",
    "TRANSITIONS",
    "allowed_actions",
    "can_transition",
    "transition",
]
