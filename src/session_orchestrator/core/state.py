"""Thread-type state machine for sessions."""

from __future__ import annotations

from dataclasses import dataclass

from session_orchestrator.core.errors import ErrorCode
from session_orchestrator.schemas.registry import ThreadType

# Valid thread-type transitions
VALID_TRANSITIONS: dict[ThreadType, set[ThreadType]] = {
    ThreadType.BASE: {ThreadType.PARALLEL, ThreadType.BIG, ThreadType.LONG},
    ThreadType.PARALLEL: {ThreadType.BASE, ThreadType.FUSION, ThreadType.CHAINED},
    ThreadType.CHAINED: {ThreadType.PARALLEL, ThreadType.FUSION},
    ThreadType.FUSION: {ThreadType.BASE},
    ThreadType.BIG: {ThreadType.PARALLEL, ThreadType.FUSION},
    ThreadType.LONG: {ThreadType.BASE, ThreadType.PARALLEL},
}


@dataclass
class TransitionDecision:
    """Whether a thread transition may be applied."""

    allowed: bool
    from_type: ThreadType | None = None
    to_type: ThreadType | None = None
    noop: bool = False
    forced: bool = False
    error: str | None = None
    code: ErrorCode | None = None


def parse_thread_type(value: str | ThreadType) -> ThreadType | None:
    """Parse a thread type name, or None if it is not one."""
    if isinstance(value, ThreadType):
        return value
    try:
        return ThreadType(value.strip().lower())
    except ValueError:
        return None


def can_transition(from_type: ThreadType, to_type: ThreadType) -> bool:
    """Check whether the transition table allows from_type -> to_type."""
    return to_type in VALID_TRANSITIONS.get(from_type, set())


def decide_transition(
    from_type: ThreadType,
    target: str | ThreadType,
    force: bool = False,
) -> TransitionDecision:
    """Decide whether a session may move from one thread type to another.

    A transition to the current type is an allowed no-op. An edge absent
    from the table is rejected unless force is set, in which case it is
    allowed and flagged as forced. Unknown type names are always rejected.

    Args:
        from_type: Current thread type
        target: Requested thread type (name or enum)
        force: Allow edges missing from the table

    Returns:
        TransitionDecision describing the outcome
    """
    to_type = parse_thread_type(target)
    if to_type is None:
        valid = ", ".join(t.value for t in ThreadType)
        return TransitionDecision(
            allowed=False,
            from_type=from_type,
            error=f"Invalid thread type: {target}. Valid types: {valid}",
            code=ErrorCode.INVALID_THREAD_TYPE,
        )

    if to_type == from_type:
        return TransitionDecision(allowed=True, from_type=from_type, to_type=to_type, noop=True)

    if can_transition(from_type, to_type):
        return TransitionDecision(allowed=True, from_type=from_type, to_type=to_type)

    if force:
        return TransitionDecision(
            allowed=True, from_type=from_type, to_type=to_type, forced=True
        )

    valid_targets = ", ".join(sorted(t.value for t in VALID_TRANSITIONS[from_type]))
    return TransitionDecision(
        allowed=False,
        from_type=from_type,
        to_type=to_type,
        error=(
            f"Invalid transition: {from_type.value} -> {to_type.value}. "
            f"Valid transitions from {from_type.value}: {valid_targets}"
        ),
        code=ErrorCode.INVALID_TRANSITION,
    )
