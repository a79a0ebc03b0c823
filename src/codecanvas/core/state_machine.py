from __future__ import annotations

from typing import Dict, List

# Stream session lifecycle
CREATED = "created"
STREAMING = "streaming"
FINALIZING = "finalizing"
COMPLETED = "completed"
ERROR = "error"
TIMEOUT = "timeout"
EVICTED = "evicted"

TERMINAL_STATES = frozenset({COMPLETED, ERROR, TIMEOUT, EVICTED})

SESSION_TRANSITIONS: Dict[str, List[str]] = {
    CREATED: [STREAMING, FINALIZING, ERROR, TIMEOUT, EVICTED],
    STREAMING: [FINALIZING, ERROR, TIMEOUT, EVICTED],
    FINALIZING: [COMPLETED, ERROR, TIMEOUT, EVICTED],
    COMPLETED: [],
    ERROR: [],
    TIMEOUT: [],
    EVICTED: [],
}


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


def is_valid_transition(current: str, target: str) -> bool:
    return target in SESSION_TRANSITIONS.get(current, [])
