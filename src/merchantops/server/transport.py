import asyncio
import logging
import secrets
import time
import uuid
from typing import Any, AsyncIterator, Dict, List

from ..errors import (
    AuthenticationError,
    ProtocolError,
    ToolExecutionError,
    TransportError,
    ValidationError,
)
from ..models import ResourceQuery, ToolInvocationRequest, ToolInvocationResult, utc_timestamp
from ..protocol import (
    EVENT_CONNECTED,
    EVENT_HEARTBEAT,
    EVENT_PROTOCOL_ERROR,
    EVENT_RESOURCE_RESULT,
    EVENT_TIMEOUT,
    EVENT_TOOL_ERROR,
    EVENT_TOOL_RESULT,
    PROTOCOL_NAME,
    encode_event,
    parse_inbound,
)
from ..settings import Settings
from ..tools.dispatcher import ToolDispatcher
from .session import Session, SessionState

logger = logging.getLogger(__name__)

MESSAGES_PATH = "/mcp/messages"


class SessionTransport:
    """Owns every open session of the tool host.

    Each session streams frames from its own queue; inbound tool calls and
    resource queries run as separate tasks so a slow tool never blocks the
    stream or another session.
    """

    def __init__(self, dispatcher: ToolDispatcher, settings: Settings) -> None:
        self._dispatcher = dispatcher
        self._api_key = settings.mcp_api_key or ""
        self._idle_timeout = settings.session_idle_timeout_seconds
        self._heartbeat_interval = settings.heartbeat_interval_seconds
        self._max_protocol_errors = settings.max_protocol_errors
        self._server_name = settings.server_name
        self._server_version = settings.server_version
        self._sessions: Dict[str, Session] = {}

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    @property
    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def authenticate(self, credential: str | None) -> None:
        """Constant-time check of the shared secret. An unset key rejects everyone."""
        if not self._api_key or not credential or not secrets.compare_digest(
            credential.encode("utf-8"), self._api_key.encode("utf-8")
        ):
            logger.warning("Rejected connection: invalid or missing API key")
            raise AuthenticationError("Invalid or missing X-MCP-Api-Key header")

    def open(self, credential: str | None, client: str | None = None) -> Session:
        """Authenticate and start a session; the ``connected`` frame is queued first.

        Raises:
            AuthenticationError: Before any session state is created.
        """
        self.authenticate(credential)

        session = Session(
            session_id=uuid.uuid4().hex,
            credential=credential or "",
            client=client,
            idle_timeout=self._idle_timeout,
        )
        session.transition(SessionState.AUTHENTICATED)
        self._sessions[session.id] = session

        session.emit(
            encode_event(
                EVENT_CONNECTED,
                {
                    "server": self._server_name,
                    "version": self._server_version,
                    "protocol": PROTOCOL_NAME,
                    "sessionId": session.id,
                    "endpoint": f"{MESSAGES_PATH}?session_id={session.id}",
                    "timestamp": utc_timestamp(),
                },
            )
        )
        session.transition(SessionState.STREAMING)
        session.touch()
        logger.info("Session %s opened (client=%s)", session.id, client or "unknown")
        return session

    def _poll_timeout(self, remaining: float | None, last_sent: float) -> float | None:
        if self._heartbeat_interval <= 0:
            return remaining
        until_heartbeat = max(0.0, self._heartbeat_interval - (time.monotonic() - last_sent))
        return until_heartbeat if remaining is None else min(remaining, until_heartbeat)

    async def stream(self, session: Session) -> AsyncIterator[str]:
        """Yield encoded frames until the session closes or idles out."""
        last_sent = time.monotonic()
        try:
            while True:
                remaining = session.seconds_until_idle()
                if remaining is not None and remaining <= 0:
                    logger.info("Session %s idle for %.0fs; timing out", session.id, session.idle_timeout)
                    yield encode_event(
                        EVENT_TIMEOUT,
                        {"message": "Connection timeout", "timestamp": utc_timestamp()},
                    )
                    break

                try:
                    frame = await asyncio.wait_for(
                        session.outbox.get(),
                        timeout=self._poll_timeout(remaining, last_sent),
                    )
                except asyncio.TimeoutError:
                    if (
                        self._heartbeat_interval > 0
                        and time.monotonic() - last_sent >= self._heartbeat_interval
                    ):
                        last_sent = time.monotonic()
                        yield encode_event(EVENT_HEARTBEAT, {"timestamp": utc_timestamp()})
                    continue

                if frame is None:
                    break
                last_sent = time.monotonic()
                yield frame
        finally:
            self.close(session, reason="stream ended")

    async def connect_stream(self, credential: str | None, client: str | None = None) -> AsyncIterator[str]:
        """Open a session when the body is first read, then stream it.

        A client that goes away before reading anything never gets a session
        registered.
        """
        session = self.open(credential, client=client)
        try:
            async for frame in self.stream(session):
                yield frame
        finally:
            self.close(session, reason="stream ended")

    def close(self, session: Session, reason: str = "closed") -> None:
        """Close the session exactly once; later calls are no-ops.

        Pending dispatches are cancelled and their waiters fail with
        TransportError.
        """
        if session.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        session.transition(SessionState.CLOSING)
        self._sessions.pop(session.id, None)
        session.outbox.put_nowait(None)
        session.closed.set()
        for task in list(session.tasks):
            task.cancel()
        session.transition(SessionState.CLOSED)
        logger.info("Session %s closed: %s", session.id, reason)

    def close_all(self, reason: str = "shutdown") -> None:
        for session in self.sessions:
            self.close(session, reason=reason)

    def _require_open(self, session: Session) -> None:
        if not session.is_open:
            raise TransportError(f"Session {session.id} is {session.state.value}")

    def _spawn(self, session: Session, correlation_id: str, coro: Any) -> asyncio.Task:
        session.begin_dispatch(correlation_id)
        task = asyncio.create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return task

    async def _run_tool_call(self, session: Session, request: ToolInvocationRequest) -> ToolInvocationResult:
        try:
            result = await self._dispatcher.execute_request(request)
        except Exception as e:
            logger.exception("Tool %s crashed outside its handler", request.tool)
            result = ToolInvocationResult.failure(
                request.correlation_id,
                request.tool,
                ToolExecutionError(request.tool, f"Unexpected error: {e}"),
            )
        finally:
            session.end_dispatch(request.correlation_id)
        event = EVENT_TOOL_RESULT if result.ok else EVENT_TOOL_ERROR
        session.emit(encode_event(event, result.to_event_data(), event_id=result.correlation_id))
        return result

    async def _run_resource_query(self, session: Session, query: ResourceQuery) -> Dict[str, Any]:
        data: Dict[str, Any] = {"correlationId": query.correlation_id, "resource": query.uri}
        try:
            data["result"] = await self._dispatcher.query_resource(query)
        except (ValidationError, ToolExecutionError) as e:
            logger.warning("Resource query %s failed: %s", query.uri, e.message)
            data["error"] = e.to_dict()
        finally:
            session.end_dispatch(query.correlation_id)
        data["timestamp"] = utc_timestamp()
        session.emit(encode_event(EVENT_RESOURCE_RESULT, data, event_id=query.correlation_id))
        return data

    async def _await_unless_closed(self, session: Session, task: asyncio.Task, correlation_id: str) -> Any:
        closed_waiter = asyncio.ensure_future(session.closed.wait())
        try:
            done, _ = await asyncio.wait({task, closed_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed_waiter.cancel()
        if task in done and not task.cancelled():
            return task.result()
        raise TransportError(f"Session {session.id} closed before {correlation_id} completed")

    async def submit_tool_call(
        self, session: Session, request: ToolInvocationRequest
    ) -> ToolInvocationResult:
        """Dispatch one tool call and wait for its result.

        The result is also written to the stream as ``tool_result`` or
        ``tool_error`` carrying the same correlation id.

        Raises:
            TransportError: If the session is not open or closes first.
        """
        self._require_open(session)
        session.touch()
        task = self._spawn(session, request.correlation_id, self._run_tool_call(session, request))
        return await self._await_unless_closed(session, task, request.correlation_id)

    async def query_resource(self, session: Session, query: ResourceQuery) -> Dict[str, Any]:
        """Read a resource through the session; the ``resource_result`` data is returned."""
        self._require_open(session)
        session.touch()
        task = self._spawn(session, query.correlation_id, self._run_resource_query(session, query))
        return await self._await_unless_closed(session, task, query.correlation_id)

    def receive(self, session_id: str, payload: Any) -> str:
        """Accept an out-of-band message for ``session_id`` and start dispatching it.

        Returns:
            str: The correlation id of the accepted message.

        Raises:
            TransportError: If the session does not exist or is closed.
            ProtocolError: If the message is malformed; it is also reported
                on the stream, and the session closes when the error is fatal.
        """
        session = self._sessions.get(session_id)
        if session is None or not session.is_open:
            raise TransportError(f"Unknown session: {session_id}")

        try:
            message = parse_inbound(payload)
            if session.is_dispatching(message.correlation_id):
                raise ProtocolError(
                    f"Duplicate correlationId: {message.correlation_id}",
                    correlation_id=message.correlation_id,
                )
        except ProtocolError as e:
            self._report_protocol_error(session, e)
            raise

        session.touch()
        if isinstance(message, ResourceQuery):
            self._spawn(session, message.correlation_id, self._run_resource_query(session, message))
        else:
            self._spawn(session, message.correlation_id, self._run_tool_call(session, message))
        return message.correlation_id

    def _report_protocol_error(self, session: Session, error: ProtocolError) -> None:
        session.protocol_errors += 1
        if session.protocol_errors > self._max_protocol_errors:
            error.fatal = True
        logger.warning(
            "Protocol error on session %s (%d so far): %s",
            session.id,
            session.protocol_errors,
            error.message,
        )
        data: Dict[str, Any] = {
            "error": "Protocol error",
            "message": error.message,
            "timestamp": utc_timestamp(),
        }
        if error.correlation_id:
            data["correlationId"] = error.correlation_id
        session.emit(encode_event(EVENT_PROTOCOL_ERROR, data))
        if error.fatal:
            self.close(session, reason="fatal protocol error")
