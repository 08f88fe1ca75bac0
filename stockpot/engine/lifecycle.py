"""Tool server lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    STOPPED ──> STARTING ──┬──> RUNNING ──┬──> STOPPED
                           │              │
                           │              └──> FAILED
                           └──> FAILED

    FAILED ──> STARTING  (restart)
    FAILED ──> STOPPED   (explicit stop clears the failure)
"""
from __future__ import annotations

from .models import ServerState

VALID_TRANSITIONS: dict[ServerState, set[ServerState]] = {
    ServerState.STOPPED: {
        ServerState.STARTING,
    },
    ServerState.STARTING: {
        ServerState.RUNNING,
        ServerState.FAILED,
        ServerState.STOPPED,  # startup aborted by shutdown
    },
    ServerState.RUNNING: {
        ServerState.STOPPED,
        ServerState.FAILED,
    },
    ServerState.FAILED: {
        ServerState.STARTING,
        ServerState.STOPPED,
    },
}


def validate_transition(current: ServerState, target: ServerState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
