import asyncio
import re
from typing import List
from unittest.mock import AsyncMock, patch

import pytest

from merchantops.errors import AuthenticationError, ProtocolError, TransportError
from merchantops.models import ResourceQuery, ToolInvocationRequest
from merchantops.protocol import SseEvent, decode_frames
from merchantops.server.session import Session, SessionState
from merchantops.server.transport import SessionTransport
from merchantops.settings import Settings
from merchantops.tools import CATALOG_URI, ToolDispatcher

from conftest import API_KEY


def drain(session: Session) -> List[SseEvent]:
    """Pop every queued frame without blocking and decode it."""
    frames = []
    while not session.outbox.empty():
        frame = session.outbox.get_nowait()
        if frame is not None:
            frames.append(frame)
    return decode_frames("".join(frames))


async def collect(transport: SessionTransport, session: Session) -> List[SseEvent]:
    frames = [frame async for frame in transport.stream(session)]
    return decode_frames("".join(frames))


def variant(dispatcher: ToolDispatcher, settings: Settings, **overrides) -> SessionTransport:
    return SessionTransport(dispatcher, settings.model_copy(update=overrides))


@pytest.mark.asyncio
async def test_open_emits_connected_first(transport: SessionTransport) -> None:
    """A new session is streaming and its first frame announces the endpoint."""
    session = transport.open(API_KEY, client="pytest")
    assert session.state == SessionState.STREAMING
    assert transport.get(session.id) is session

    events = drain(session)
    assert events[0].event == "connected"
    assert events[0].data["sessionId"] == session.id
    assert events[0].data["endpoint"] == f"/mcp/messages?session_id={session.id}"
    assert events[0].data["server"] == "Test Host"


@pytest.mark.asyncio
@pytest.mark.parametrize("credential", [None, "", "wrong-key"])
async def test_open_rejects_bad_credentials(transport: SessionTransport, credential) -> None:
    """Authentication failures leave no session behind."""
    with pytest.raises(AuthenticationError):
        transport.open(credential)
    assert transport.sessions == []


@pytest.mark.asyncio
async def test_unset_key_rejects_everyone(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Without a configured key no credential is accepted."""
    transport = variant(dispatcher, settings, mcp_api_key=None)
    with pytest.raises(AuthenticationError):
        transport.open("")
    with pytest.raises(AuthenticationError):
        transport.open(API_KEY)


@pytest.mark.asyncio
async def test_submit_tool_call_streams_result(transport: SessionTransport) -> None:
    """The awaited result and the stream frame share the correlation id."""
    session = transport.open(API_KEY)
    request = ToolInvocationRequest(tool="echo", arguments={"text": "hi"})
    result = await transport.submit_tool_call(session, request)
    assert result.ok
    assert result.payload == {"echo": "hi"}

    events = drain(session)
    assert [e.event for e in events] == ["connected", "tool_result"]
    assert events[1].id == request.correlation_id
    assert events[1].data["correlationId"] == request.correlation_id
    assert events[1].data["result"] == {"echo": "hi"}


@pytest.mark.asyncio
async def test_failed_call_streams_tool_error(transport: SessionTransport) -> None:
    """Per-call failures are reported on the stream and keep the session open."""
    session = transport.open(API_KEY)
    result = await transport.submit_tool_call(session, ToolInvocationRequest(tool="explode"))
    assert not result.ok
    events = drain(session)
    assert events[-1].event == "tool_error"
    assert events[-1].data["error"] == {"type": "ToolExecutionError", "message": "boom"}
    assert session.is_open



@pytest.mark.asyncio
async def test_unexpected_dispatch_failure_still_answers(transport: SessionTransport) -> None:
    """A crash outside the tool handler is still answered with one tool_error."""
    session = transport.open(API_KEY)
    crash = AsyncMock(side_effect=re.error("unterminated character set"))
    with patch.object(transport.dispatcher, "execute_request", crash):
        request = ToolInvocationRequest(tool="echo", correlation_id="c-7")
        result = await transport.submit_tool_call(session, request)
    assert not result.ok
    assert result.error["type"] == "ToolExecutionError"
    events = drain(session)
    assert [e.event for e in events].count("tool_error") == 1
    assert events[-1].data["correlationId"] == "c-7"
    assert session.state == SessionState.STREAMING


@pytest.mark.asyncio
async def test_concurrent_calls_keep_their_correlation(transport: SessionTransport) -> None:
    """Results that complete out of order still match their requests."""
    session = transport.open(API_KEY)
    slow = ToolInvocationRequest(tool="slow", arguments={"label": "slow", "delay": 0.05})
    fast = ToolInvocationRequest(tool="echo", arguments={"text": "fast"})
    slow_result, fast_result = await asyncio.gather(
        transport.submit_tool_call(session, slow),
        transport.submit_tool_call(session, fast),
    )
    assert slow_result.correlation_id == slow.correlation_id
    assert slow_result.payload == {"label": "slow"}
    assert fast_result.correlation_id == fast.correlation_id

    results = [e for e in drain(session) if e.event == "tool_result"]
    assert [e.id for e in results] == [fast.correlation_id, slow.correlation_id]


@pytest.mark.asyncio
async def test_state_during_dispatch(transport: SessionTransport) -> None:
    """The session reports TOOL_DISPATCH while a call runs, then returns to STREAMING."""
    session = transport.open(API_KEY)
    task = asyncio.create_task(
        transport.submit_tool_call(session, ToolInvocationRequest(tool="slow", arguments={"delay": 0.1}))
    )
    await asyncio.sleep(0.02)
    assert session.state == SessionState.TOOL_DISPATCH
    assert session.in_flight == 1
    await task
    assert session.state == SessionState.STREAMING
    assert session.in_flight == 0


@pytest.mark.asyncio
async def test_close_is_idempotent(transport: SessionTransport) -> None:
    """Closing twice is harmless and the session is forgotten."""
    session = transport.open(API_KEY)
    transport.close(session)
    transport.close(session)
    assert session.state == SessionState.CLOSED
    assert transport.get(session.id) is None
    assert not session.emit("late frame")


@pytest.mark.asyncio
async def test_close_fails_pending_dispatch(transport: SessionTransport) -> None:
    """A call in flight when the session closes fails with TransportError."""
    session = transport.open(API_KEY)
    task = asyncio.create_task(
        transport.submit_tool_call(session, ToolInvocationRequest(tool="slow", arguments={"delay": 5}))
    )
    await asyncio.sleep(0.02)
    transport.close(session, reason="client went away")
    with pytest.raises(TransportError):
        await task
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_submit_on_closed_session(transport: SessionTransport) -> None:
    session = transport.open(API_KEY)
    transport.close(session)
    with pytest.raises(TransportError):
        await transport.submit_tool_call(session, ToolInvocationRequest(tool="echo", arguments={"text": "x"}))


@pytest.mark.asyncio
async def test_idle_session_times_out(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """An idle stream ends with a timeout frame and the session is closed."""
    transport = variant(dispatcher, settings, session_idle_timeout_seconds=0.05)
    session = transport.open(API_KEY)
    events = await asyncio.wait_for(collect(transport, session), timeout=2)
    assert [e.event for e in events] == ["connected", "timeout"]
    assert events[1].data["message"] == "Connection timeout"
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_idle_clock_paused_during_dispatch(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """A call longer than the idle timeout still delivers its result."""
    transport = variant(dispatcher, settings, session_idle_timeout_seconds=0.05)
    session = transport.open(API_KEY)
    request = ToolInvocationRequest(tool="slow", arguments={"label": "late", "delay": 0.2})
    events, result = await asyncio.wait_for(
        asyncio.gather(collect(transport, session), transport.submit_tool_call(session, request)),
        timeout=2,
    )
    assert result.payload == {"label": "late"}
    assert [e.event for e in events] == ["connected", "tool_result", "timeout"]


@pytest.mark.asyncio
async def test_heartbeats_do_not_reset_idle(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Heartbeats are sent while idle but the session still times out."""
    transport = variant(
        dispatcher,
        settings,
        session_idle_timeout_seconds=0.15,
        heartbeat_interval_seconds=0.03,
    )
    session = transport.open(API_KEY)
    events = await asyncio.wait_for(collect(transport, session), timeout=2)
    names = [e.event for e in events]
    assert names[0] == "connected"
    assert "heartbeat" in names
    assert names[-1] == "timeout"


@pytest.mark.asyncio
async def test_receive_dispatches_in_background(transport: SessionTransport) -> None:
    """receive returns the correlation id at once; the result arrives on the stream."""
    session = transport.open(API_KEY)
    correlation_id = transport.receive(
        session.id,
        {"correlationId": "c-1", "toolName": "echo", "arguments": {"text": "yo"}},
    )
    assert correlation_id == "c-1"
    await asyncio.wait(set(session.tasks))
    events = drain(session)
    assert events[-1].event == "tool_result"
    assert events[-1].id == "c-1"


@pytest.mark.asyncio
async def test_receive_resource_query(transport: SessionTransport) -> None:
    session = transport.open(API_KEY)
    transport.receive(session.id, {"type": "resource_query", "correlationId": "r-1", "uri": CATALOG_URI})
    await asyncio.wait(set(session.tasks))
    event = drain(session)[-1]
    assert event.event == "resource_result"
    assert event.data["resource"] == CATALOG_URI
    assert "echo" in [entry["name"] for entry in event.data["result"]]


@pytest.mark.asyncio
async def test_receive_unknown_session(transport: SessionTransport) -> None:
    with pytest.raises(TransportError):
        transport.receive("missing", {"correlationId": "c", "toolName": "echo"})


@pytest.mark.asyncio
async def test_receive_malformed_reports_protocol_error(transport: SessionTransport) -> None:
    """A malformed message is rejected and reported, but the session survives."""
    session = transport.open(API_KEY)
    with pytest.raises(ProtocolError) as exc_info:
        transport.receive(session.id, b"{broken")
    assert exc_info.value.fatal is False
    events = drain(session)
    assert events[-1].event == "protocol_error"
    assert events[-1].data["error"] == "Protocol error"
    assert session.is_open
    assert session.protocol_errors == 1


@pytest.mark.asyncio
async def test_repeated_protocol_errors_close_session(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Exceeding the protocol error budget is fatal."""
    transport = variant(dispatcher, settings, max_protocol_errors=2)
    session = transport.open(API_KEY)
    for _ in range(2):
        with pytest.raises(ProtocolError):
            transport.receive(session.id, {"toolName": "echo"})
    with pytest.raises(ProtocolError) as exc_info:
        transport.receive(session.id, {"toolName": "echo"})
    assert exc_info.value.fatal is True
    assert session.state == SessionState.CLOSED
    with pytest.raises(TransportError):
        transport.receive(session.id, {"correlationId": "c", "toolName": "echo"})


@pytest.mark.asyncio
async def test_duplicate_correlation_id_rejected(transport: SessionTransport) -> None:
    """A correlation id already in flight cannot be reused."""
    session = transport.open(API_KEY)
    message = {"correlationId": "dup", "toolName": "slow", "arguments": {"delay": 0.1}}
    transport.receive(session.id, message)
    with pytest.raises(ProtocolError):
        transport.receive(session.id, message)
    error = [e for e in drain(session) if e.event == "protocol_error"][0]
    assert error.data["correlationId"] == "dup"
    await asyncio.wait(set(session.tasks))


@pytest.mark.asyncio
async def test_query_resource(transport: SessionTransport) -> None:
    """Resource queries return the result data; unknown URIs carry an error."""
    session = transport.open(API_KEY)
    data = await transport.query_resource(session, ResourceQuery(uri="merchantops://server"))
    assert data["result"]["server"] == "Test Host"

    missing = await transport.query_resource(session, ResourceQuery(uri="merchantops://missing"))
    assert missing["error"]["type"] == "ValidationError"
    assert "result" not in missing


@pytest.mark.asyncio
async def test_close_all(transport: SessionTransport) -> None:
    first = transport.open(API_KEY)
    second = transport.open(API_KEY)
    transport.close_all()
    assert transport.sessions == []
    assert first.state == second.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_connect_stream_registers_session_on_first_read(transport: SessionTransport) -> None:
    """No session exists until the stream body is read, and none remains once it is closed."""
    frames = transport.connect_stream(API_KEY, client="pytest")
    assert transport.sessions == []

    first = decode_frames(await frames.__anext__())
    assert first[0].event == "connected"
    assert len(transport.sessions) == 1

    await frames.aclose()
    assert transport.sessions == []
