"""Session status state machine."""

import logging

from .session import AutopilotSession, SessionStatus

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Invalid state transition."""

    pass


class SessionMachine:
    """Validates session status changes.

    ``paused`` is advisory: the executor honors ``pause_requested``
    cooperatively, so a paused session can still finish in any terminal
    state.
    """

    TRANSITIONS = {
        SessionStatus.PENDING: [
            SessionStatus.RUNNING,
            SessionStatus.FAILED,  # Worker crash before start
            SessionStatus.CANCELLED,
        ],
        SessionStatus.RUNNING: [
            SessionStatus.RUNNING,  # Worker restarted by resume
            SessionStatus.PAUSED,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        ],
        SessionStatus.PAUSED: [
            SessionStatus.RUNNING,  # Resume
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        ],
        SessionStatus.COMPLETED: [],  # Terminal
        SessionStatus.FAILED: [],  # Terminal
        SessionStatus.CANCELLED: [],  # Terminal
    }

    def can_transition(self, current: SessionStatus, new: SessionStatus) -> bool:
        return new in self.TRANSITIONS.get(current, [])

    def is_terminal(self, status: SessionStatus) -> bool:
        return not self.TRANSITIONS.get(status)

    def transition(self, session: AutopilotSession, new_status: SessionStatus) -> None:
        """Move ``session`` to ``new_status``.

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        if not self.can_transition(session.status, new_status):
            raise StateTransitionError(
                f"Invalid transition from {session.status.value} to {new_status.value}"
            )

        if session.status != new_status:
            logger.info(
                "Session %s: %s -> %s", session.id, session.status.value, new_status.value
            )
        session.status = new_status
