"""Active-session bookkeeping used to detect stale asynchronous work."""

from dataclasses import dataclass
from typing import Optional

from loguru import logger


@dataclass(frozen=True)
class Ticket:
    """What an asynchronous sequence was started under."""
    session_id: Optional[str]
    epoch: int


class ConsistencyGuard:
    """
    Holds the active session id and a monotonically increasing epoch.

    Every asynchronous sequence takes a ticket when it starts and, after each
    await, asks `is_current(ticket)`; a False answer means a session switch
    happened in between and the sequence must return without side effects.
    This relies on the single-threaded event loop: only awaits can interleave
    a switch, plain synchronous code cannot be preempted.
    """

    def __init__(self):
        self._session_id: Optional[str] = None
        self._epoch = 0

    @property
    def active_session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def epoch(self) -> int:
        return self._epoch

    def begin_session(self, session_id: Optional[str]) -> int:
        """Make `session_id` active and return a fresh epoch."""
        self._session_id = session_id
        self._epoch += 1
        logger.debug(f"Session {short_id(session_id)} active at epoch {self._epoch}")
        return self._epoch

    def invalidate(self) -> int:
        """Bump the epoch without changing session, orphaning in-flight work."""
        self._epoch += 1
        return self._epoch

    def ticket(self) -> Ticket:
        return Ticket(self._session_id, self._epoch)

    def is_active(self, session_id: Optional[str]) -> bool:
        return bool(session_id) and session_id == self._session_id

    def is_current(self, ticket: Ticket) -> bool:
        return ticket.epoch == self._epoch and ticket.session_id == self._session_id


def short_id(session_id: Optional[str]) -> str:
    """First 8 chars of a session id, for log lines."""
    return session_id[:8] if session_id else "-"
