import asyncio
import logging
import time
from enum import Enum
from typing import Dict, FrozenSet, Set

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    CLOSING = "closing"
    CLOSED = "closed"


_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.CONNECTING: frozenset({SessionState.AUTHENTICATED, SessionState.CLOSING}),
    SessionState.AUTHENTICATED: frozenset({SessionState.STREAMING, SessionState.CLOSING}),
    SessionState.STREAMING: frozenset({SessionState.TOOL_DISPATCH, SessionState.CLOSING}),
    SessionState.TOOL_DISPATCH: frozenset({SessionState.STREAMING, SessionState.CLOSING}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


class Session:
    """One long-lived event stream and everything it owns.

    Outbound frames go through ``outbox``; ``None`` in the queue marks the end
    of the stream. The session is in exactly one ``SessionState`` at a time.
    """

    def __init__(
        self,
        session_id: str,
        credential: str,
        client: str | None = None,
        idle_timeout: float = 1800.0,
    ) -> None:
        self.id = session_id
        self.credential = credential
        self.client = client
        self.idle_timeout = idle_timeout
        self.created_at = time.monotonic()
        self.last_activity = self.created_at
        self.state = SessionState.CONNECTING
        self.protocol_errors = 0
        self.outbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.closed = asyncio.Event()
        self.tasks: Set[asyncio.Task] = set()
        self._in_flight: Set[str] = set()

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, state={self.state.value})"

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid session transition {self.state.value} -> {new_state.value}")
        logger.debug("Session %s: %s -> %s", self.id, self.state.value, new_state.value)
        self.state = new_state

    @property
    def is_open(self) -> bool:
        return self.state in (SessionState.STREAMING, SessionState.TOOL_DISPATCH)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def is_dispatching(self, correlation_id: str) -> bool:
        return correlation_id in self._in_flight

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def begin_dispatch(self, correlation_id: str) -> None:
        self._in_flight.add(correlation_id)
        if self.state == SessionState.STREAMING:
            self.transition(SessionState.TOOL_DISPATCH)

    def end_dispatch(self, correlation_id: str) -> None:
        self._in_flight.discard(correlation_id)
        self.touch()
        if not self._in_flight and self.state == SessionState.TOOL_DISPATCH:
            self.transition(SessionState.STREAMING)

    def seconds_until_idle(self) -> float | None:
        """Remaining idle budget, or None while a dispatch is in flight."""
        if self._in_flight:
            return None
        return self.idle_timeout - (time.monotonic() - self.last_activity)

    def emit(self, frame: str) -> bool:
        """Queue an encoded frame. Frames emitted after close are dropped."""
        if self.state == SessionState.CLOSED:
            logger.debug("Session %s closed; dropping frame", self.id)
            return False
        self.outbox.put_nowait(frame)
        return True
