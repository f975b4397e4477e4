"""Tests for the negotiation transition table and the Negotiation tracker."""

import pytest

from dmplz.permission.models import (
    TERMINAL_STATES,
    TRANSITIONS,
    NegotiationState,
    can_transition,
)
from dmplz.permission.negotiator import Negotiation


def test_terminal_states():
    assert TERMINAL_STATES == {
        NegotiationState.APPROVED,
        NegotiationState.APPROVED_SESSION,
        NegotiationState.CASCADE_REJECTED,
        NegotiationState.REJECTED_WITH_REASON,
        NegotiationState.REJECTED_NO_REASON,
        NegotiationState.LOCK_TIMEOUT,
        NegotiationState.EXPIRED,
    }


def test_terminal_states_have_no_transitions():
    for state in TERMINAL_STATES:
        assert state not in TRANSITIONS
        for target in NegotiationState:
            assert not can_transition(state, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (NegotiationState.RECEIVED, NegotiationState.WAITING_LOCK),
        (NegotiationState.RECEIVED, NegotiationState.APPROVED),
        (NegotiationState.WAITING_LOCK, NegotiationState.CASCADE_REJECTED),
        (NegotiationState.WAITING_LOCK, NegotiationState.LOCK_TIMEOUT),
        (NegotiationState.WAITING_LOCK, NegotiationState.WAITING_DECISION),
        (NegotiationState.WAITING_DECISION, NegotiationState.APPROVED),
        (NegotiationState.WAITING_DECISION, NegotiationState.APPROVED_SESSION),
        (NegotiationState.WAITING_DECISION, NegotiationState.WAITING_REASON),
        (NegotiationState.WAITING_DECISION, NegotiationState.EXPIRED),
        (NegotiationState.WAITING_REASON, NegotiationState.REJECTED_WITH_REASON),
        (NegotiationState.WAITING_REASON, NegotiationState.REJECTED_NO_REASON),
    ],
)
def test_legal_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (NegotiationState.RECEIVED, NegotiationState.WAITING_DECISION),
        (NegotiationState.WAITING_LOCK, NegotiationState.APPROVED),
        (NegotiationState.WAITING_DECISION, NegotiationState.CASCADE_REJECTED),
        (NegotiationState.WAITING_REASON, NegotiationState.APPROVED),
    ],
)
def test_illegal_transitions(current, target):
    assert not can_transition(current, target)


def test_negotiation_tracks_history():
    negotiation = Negotiation("request-1")

    negotiation.transition(NegotiationState.WAITING_LOCK)
    negotiation.transition(NegotiationState.WAITING_DECISION)
    negotiation.transition(NegotiationState.APPROVED)

    assert negotiation.is_terminal
    assert negotiation.history == [
        NegotiationState.RECEIVED,
        NegotiationState.WAITING_LOCK,
        NegotiationState.WAITING_DECISION,
        NegotiationState.APPROVED,
    ]


def test_negotiation_rejects_illegal_transition():
    negotiation = Negotiation("request-1")

    with pytest.raises(RuntimeError, match="received -> waiting_reason"):
        negotiation.transition(NegotiationState.WAITING_REASON)

    assert negotiation.state == NegotiationState.RECEIVED


def test_negotiation_cannot_leave_terminal_state():
    negotiation = Negotiation("request-1")
    negotiation.transition(NegotiationState.APPROVED)

    with pytest.raises(RuntimeError):
        negotiation.transition(NegotiationState.WAITING_LOCK)
