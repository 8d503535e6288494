from enum import Enum
from typing import Union


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


VALID_SESSION_TRANSITIONS = {
    SessionState.CONNECTING: [SessionState.AUTHENTICATING, SessionState.CLOSED],
    SessionState.AUTHENTICATING: [SessionState.AUTHENTICATED, SessionState.CLOSED],
    SessionState.AUTHENTICATED: [SessionState.CLOSED],
    SessionState.CLOSED: [],
}

VALID_JOB_TRANSITIONS = {
    JobStatus.WAITING: [JobStatus.ACTIVE],
    JobStatus.DELAYED: [JobStatus.WAITING, JobStatus.ACTIVE],
    JobStatus.ACTIVE: [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DELAYED, JobStatus.WAITING],
    JobStatus.COMPLETED: [],
    JobStatus.FAILED: [],
}

TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

State = Union[SessionState, JobStatus]


class InvalidTransitionError(Exception):
    def __init__(self, from_state: State, to_state: State):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def _table_for(state: State) -> dict:
    if isinstance(state, SessionState):
        return VALID_SESSION_TRANSITIONS
    return VALID_JOB_TRANSITIONS


def can_transition(from_state: State, to_state: State) -> bool:
    """Check if transition is valid."""
    if type(from_state) is not type(to_state):
        return False
    allowed = _table_for(from_state).get(from_state, [])
    return to_state in allowed


def transition(from_state: State, to_state: State) -> State:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def begin_authentication(current_state: SessionState) -> SessionState:
    """Auth frame received on a fresh connection."""
    return transition(current_state, SessionState.AUTHENTICATING)


def authenticate(current_state: SessionState) -> SessionState:
    """Ticket consumed successfully."""
    return transition(current_state, SessionState.AUTHENTICATED)


def close(current_state: SessionState) -> SessionState:
    """Close from any live state."""
    return transition(current_state, SessionState.CLOSED)


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_JOB_STATUSES
