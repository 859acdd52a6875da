"""Session lifecycle rules.

recording -> paused | processing
paused    -> recording | processing
processing -> completed
completed is terminal.
"""
import logging
from enum import Enum

from db.database import Database

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    RECORDING = "recording"
    PAUSED = "paused"
    PROCESSING = "processing"
    COMPLETED = "completed"


TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.RECORDING: frozenset({SessionState.PAUSED, SessionState.PROCESSING}),
    SessionState.PAUSED: frozenset({SessionState.RECORDING, SessionState.PROCESSING}),
    SessionState.PROCESSING: frozenset({SessionState.COMPLETED}),
    SessionState.COMPLETED: frozenset(),
}


class InvalidTransition(Exception):
    def __init__(self, current: SessionState | str, requested: SessionState | str):
        self.current = SessionState(current)
        self.requested = SessionState(requested)
        super().__init__(
            f"Cannot move session from '{self.current.value}' to '{self.requested.value}'"
        )


def transition(current: SessionState | str, requested: SessionState | str) -> SessionState:
    current = SessionState(current)
    requested = SessionState(requested)
    if requested not in TRANSITIONS[current]:
        raise InvalidTransition(current, requested)
    return requested


class SessionStateMachine:
    """Applies validated transitions to persisted sessions.

    The check and the write happen as one conditional update, so two
    concurrent transitions on the same session cannot both succeed.
    """

    def __init__(self, db: Database):
        self.db = db

    def apply(self, session: dict, requested: SessionState | str, **fields) -> dict:
        new_state = transition(session["state"], requested)
        updated = self.db.transition_session(
            session["id"], session["state"], new_state.value, **fields
        )
        if updated is None:
            # Lost the race; report against whatever is persisted now.
            current = self.db.get_session(session["id"])
            raise InvalidTransition(current["state"] if current else session["state"], new_state)
        logger.info("Session %s: %s -> %s", session["id"], session["state"], new_state.value)
        return updated
