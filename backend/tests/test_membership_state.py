from __future__ import annotations

import pytest

from backend.app.membership import InvalidStateError, MembershipAction, MembershipStatus, transition
from backend.app.membership.state import TRANSITIONS, allowed_actions, can_transition


def test_transition_table_targets():
    assert transition(None, MembershipAction.CREATE) == MembershipStatus.ACTIVE
    assert transition(MembershipStatus.ACTIVE, MembershipAction.PAUSE) == MembershipStatus.PAUSED
    assert transition(MembershipStatus.PAUSED, MembershipAction.RESUME) == MembershipStatus.ACTIVE
    assert transition(MembershipStatus.PAUSED, MembershipAction.CANCEL) == MembershipStatus.CANCELLED
    assert transition(MembershipStatus.EXPIRED, MembershipAction.RENEW) == MembershipStatus.ACTIVE
    assert transition(MembershipStatus.CANCELLED, MembershipAction.REACTIVATE) == MembershipStatus.ACTIVE
    assert transition(MembershipStatus.ACTIVE, MembershipAction.EXPIRE) == MembershipStatus.EXPIRED


def test_nothing_leaves_a_state_without_an_edge():
    for status in MembershipStatus:
        for action in MembershipAction:
            if (status, action) in TRANSITIONS:
                continue
            with pytest.raises(InvalidStateError) as excinfo:
                transition(status, action)
            assert excinfo.value.status_code == 409
            assert excinfo.value.current_state == status.value
            assert excinfo.value.action == action.value


def test_rejection_messages_guide_the_caller():
    with pytest.raises(InvalidStateError, match="already cancelled"):
        transition(MembershipStatus.CANCELLED, MembershipAction.CANCEL)

    with pytest.raises(InvalidStateError, match="Use renew instead"):
        transition(MembershipStatus.ACTIVE, MembershipAction.REACTIVATE)

    with pytest.raises(InvalidStateError, match="does not exist"):
        transition(None, MembershipAction.CANCEL)


def test_allowed_actions():
    assert allowed_actions(None) == {MembershipAction.CREATE}
    assert allowed_actions(MembershipStatus.CANCELLED) == {MembershipAction.REACTIVATE}
    assert MembershipAction.CHANGE_TIER not in allowed_actions(MembershipStatus.PAUSED)
    assert can_transition(MembershipStatus.EXPIRED, MembershipAction.REACTIVATE)
    assert not can_transition(MembershipStatus.EXPIRED, MembershipAction.EXPIRE)
