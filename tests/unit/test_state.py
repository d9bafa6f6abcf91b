"""Tests for the thread-type state machine."""

import pytest

from session_orchestrator.core.errors import ErrorCode
from session_orchestrator.core.state import (
    VALID_TRANSITIONS,
    can_transition,
    decide_transition,
    parse_thread_type,
)
from session_orchestrator.schemas.registry import ThreadType


class TestTransitionTable:
    """Tests for the transition table."""

    def test_every_type_has_an_entry(self) -> None:
        """Each thread type has at least one outgoing edge."""
        assert set(VALID_TRANSITIONS) == set(ThreadType)
        assert all(VALID_TRANSITIONS.values())

    @pytest.mark.parametrize(
        "source,target",
        [
            (ThreadType.BASE, ThreadType.PARALLEL),
            (ThreadType.PARALLEL, ThreadType.FUSION),
            (ThreadType.CHAINED, ThreadType.PARALLEL),
            (ThreadType.FUSION, ThreadType.BASE),
            (ThreadType.BIG, ThreadType.FUSION),
            (ThreadType.LONG, ThreadType.BASE),
        ],
    )
    def test_allowed_edges(self, source: ThreadType, target: ThreadType) -> None:
        assert can_transition(source, target)

    def test_missing_edge(self) -> None:
        """Fusion sessions can only go back to base."""
        assert not can_transition(ThreadType.FUSION, ThreadType.PARALLEL)


class TestDecideTransition:
    """Tests for transition decisions."""

    def test_same_type_is_noop(self) -> None:
        decision = decide_transition(ThreadType.PARALLEL, "parallel")
        assert decision.allowed
        assert decision.noop

    def test_valid_edge(self) -> None:
        decision = decide_transition(ThreadType.BASE, ThreadType.BIG)
        assert decision.allowed
        assert not decision.forced
        assert decision.to_type == ThreadType.BIG

    def test_invalid_edge_lists_valid_targets(self) -> None:
        """The error names the valid transitions from the current type."""
        decision = decide_transition(ThreadType.FUSION, "parallel")
        assert not decision.allowed
        assert decision.code == ErrorCode.INVALID_TRANSITION
        assert decision.error == (
            "Invalid transition: fusion -> parallel. Valid transitions from fusion: base"
        )

    def test_forced_edge(self) -> None:
        """force allows a missing edge and flags it."""
        decision = decide_transition(ThreadType.FUSION, "parallel", force=True)
        assert decision.allowed
        assert decision.forced

    def test_unknown_type_rejected_even_with_force(self) -> None:
        decision = decide_transition(ThreadType.BASE, "turbo", force=True)
        assert not decision.allowed
        assert decision.code == ErrorCode.INVALID_THREAD_TYPE

    def test_parse_is_case_insensitive(self) -> None:
        assert parse_thread_type(" Chained ") == ThreadType.CHAINED
        assert parse_thread_type("nope") is None
