"""Orchestrator-side connections to the tool host.

A connection submits correlated requests and resolves them from the result
events of its session stream. ``SseServerConnection`` talks HTTP to a remote
tool host; ``InProcessConnection`` drives a local ``SessionTransport`` through
the same framing.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple

import httpx

from ..errors import (
    AuthenticationError,
    MerchantOpsError,
    ProtocolError,
    ToolExecutionError,
    TransportError,
)
from ..models import ResourceQuery, ToolDescriptor, ToolInvocationRequest, ToolInvocationResult
from ..protocol import (
    API_KEY_HEADER,
    EVENT_CONNECTED,
    EVENT_HEARTBEAT,
    EVENT_PROTOCOL_ERROR,
    EVENT_RESOURCE_RESULT,
    EVENT_TIMEOUT,
    EVENT_TOOL_ERROR,
    EVENT_TOOL_RESULT,
    SseDecoder,
    SseEvent,
    encode_resource_query,
    encode_tool_call,
)
from ..server.session import Session
from ..server.transport import SessionTransport
from ..tools import CATALOG_URI

logger = logging.getLogger(__name__)

_RESULT_EVENTS = (EVENT_TOOL_RESULT, EVENT_TOOL_ERROR, EVENT_RESOURCE_RESULT)


class ServerConnection(ABC):
    """One session with the tool host, shared by concurrent callers."""

    def __init__(self, connect_timeout: float = 10.0, request_timeout: float = 60.0) -> None:
        self._connect_timeout = connect_timeout
        self._request_timeout = request_timeout
        self._pending: Dict[str, asyncio.Future] = {}
        self._connected: asyncio.Future | None = None
        self._terminated = False
        self._shut_down = False
        self.server_info: Dict[str, Any] = {}

    @property
    def is_open(self) -> bool:
        return self._connected is not None and self._connected.done() and not self._terminated

    @abstractmethod
    async def _open(self) -> None:
        """Start the session and begin delivering events to ``_handle_event``."""

    @abstractmethod
    async def _send(self, message: Dict[str, Any]) -> None:
        """Submit one inbound message out of band."""

    @abstractmethod
    async def _shutdown(self) -> None:
        """Release the stream and any client resources."""

    async def connect(self) -> None:
        """Open the session and wait for its ``connected`` event.

        Raises:
            AuthenticationError: If the tool host rejects the credential.
            TransportError: If the host is unreachable or never confirms.
        """
        self._connected = asyncio.get_running_loop().create_future()
        await self._open()
        try:
            await asyncio.wait_for(asyncio.shield(self._connected), timeout=self._connect_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"No connected event within {self._connect_timeout}s"
            ) from e

    def _handle_event(self, event: SseEvent) -> None:
        data = event.data if isinstance(event.data, dict) else {}

        if event.event == EVENT_CONNECTED:
            self.server_info = data
            self._on_connected(data)
            if self._connected is not None and not self._connected.done():
                self._connected.set_result(data)
            logger.info(
                "Connected to %s %s (session %s)",
                data.get("server"),
                data.get("version"),
                data.get("sessionId"),
            )
        elif event.event in _RESULT_EVENTS:
            correlation_id = data.get("correlationId") or event.id
            future = self._pending.pop(correlation_id, None)
            if future is None:
                logger.debug("Ignoring %s for unknown correlation id %s", event.event, correlation_id)
            elif not future.done():
                future.set_result((event.event, data))
        elif event.event == EVENT_PROTOCOL_ERROR:
            logger.warning("Tool host reported protocol error: %s", data.get("message"))
            future = self._pending.pop(data.get("correlationId") or "", None)
            if future is not None and not future.done():
                future.set_exception(ProtocolError(str(data.get("message") or "Protocol error")))
        elif event.event == EVENT_TIMEOUT:
            logger.info("Tool host timed out the session")
            self._terminate(TransportError("Session timed out"))
        elif event.event != EVENT_HEARTBEAT:
            logger.debug("Ignoring unexpected event %s", event.event)

    def _on_connected(self, data: Dict[str, Any]) -> None:
        """Hook for subclasses that need values from the ``connected`` event."""

    def _terminate(self, error: MerchantOpsError) -> None:
        """Mark the connection dead and fail every pending request with ``error``."""
        self._terminated = True
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
        if self._connected is not None and not self._connected.done():
            self._connected.set_exception(error)
            # connect() may no longer be awaiting it.
            self._connected.exception()

    async def _request(self, message: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        if not self.is_open:
            raise TransportError("Connection is not open")
        correlation_id = message["correlationId"]
        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        try:
            await self._send(message)
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"No result for {correlation_id} within {self._request_timeout}s"
            ) from e
        finally:
            self._pending.pop(correlation_id, None)
            if future.done() and not future.cancelled():
                future.exception()

    async def call_tool(self, request: ToolInvocationRequest) -> ToolInvocationResult:
        _, data = await self._request(encode_tool_call(request))
        return ToolInvocationResult.from_event_data(data)

    async def read_resource(self, uri: str, parameters: Dict[str, Any] | None = None) -> Any:
        """Return a resource's content.

        Raises:
            ToolExecutionError: If the tool host could not read the resource.
        """
        _, data = await self._request(encode_resource_query(ResourceQuery(uri=uri, parameters=parameters or {})))
        error = data.get("error")
        if error:
            raise ToolExecutionError(uri, str(error.get("message") or "Resource read failed"))
        return data.get("result")

    async def list_tools(self) -> List[ToolDescriptor]:
        catalog = await self.read_resource(CATALOG_URI)
        return [ToolDescriptor.from_dict(entry) for entry in catalog or []]

    async def close(self) -> None:
        """Fail pending requests and release resources. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        self._terminate(TransportError("Connection closed"))
        await self._shutdown()


class SseServerConnection(ServerConnection):
    """Session with a remote tool host over HTTP.

    Events are read from ``GET <url>`` as text/event-stream; requests are
    POSTed to the endpoint announced in the ``connected`` event.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None,
        connect_timeout: float = 10.0,
        request_timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(connect_timeout=connect_timeout, request_timeout=request_timeout)
        self._url = url
        self._api_key = api_key or ""
        self._client = client
        self._owns_client = client is None
        self._response: httpx.Response | None = None
        self._reader: asyncio.Task | None = None
        self._messages_url: str | None = None

    def _headers(self) -> Dict[str, str]:
        return {API_KEY_HEADER: self._api_key}

    async def _open(self) -> None:
        if not self._api_key:
            raise AuthenticationError("MCP_API_KEY is not configured")
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._request_timeout, read=None),
            )

        logger.info("Connecting to tool host: %s", self._url)
        request = self._client.build_request(
            "GET",
            self._url,
            headers={**self._headers(), "Accept": "text/event-stream"},
        )
        try:
            response = await asyncio.wait_for(
                self._client.send(request, stream=True),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Connection to {self._url} timed out") from e
        except httpx.RequestError as e:
            raise TransportError(f"Connection error: {e}") from e

        if response.status_code == 401:
            await response.aclose()
            raise AuthenticationError("Tool host rejected the API key")
        if response.status_code >= 400:
            await response.aclose()
            raise TransportError(f"Tool host returned HTTP {response.status_code}")

        self._response = response
        self._reader = asyncio.create_task(self._read_events(response))

    def _on_connected(self, data: Dict[str, Any]) -> None:
        endpoint = data.get("endpoint")
        if endpoint:
            self._messages_url = str(httpx.URL(self._url).join(endpoint))

    async def _read_events(self, response: httpx.Response) -> None:
        decoder = SseDecoder()
        error: MerchantOpsError = TransportError("Event stream ended")
        try:
            async for line in response.aiter_lines():
                try:
                    event = decoder.feed(line)
                except ProtocolError as e:
                    logger.warning("Skipping malformed event: %s", e.message)
                    continue
                if event is not None:
                    self._handle_event(event)
        except httpx.HTTPError as e:
            logger.warning("Event stream failed: %s", e)
            error = TransportError(f"Event stream failed: {e}")
        finally:
            self._terminate(error)

    async def _send(self, message: Dict[str, Any]) -> None:
        if self._client is None or not self._messages_url:
            raise TransportError("Not connected")
        try:
            response = await self._client.post(
                self._messages_url,
                json=message,
                headers=self._headers(),
                timeout=self._request_timeout,
            )
        except httpx.RequestError as e:
            raise TransportError(f"Request failed: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError("Tool host rejected the API key")
        if response.status_code == 404:
            self._terminate(TransportError("Session no longer exists"))
            raise TransportError("Session no longer exists")
        if response.status_code == 400:
            try:
                detail = response.json().get("message")
            except ValueError:
                detail = None
            raise ProtocolError(str(detail or "Protocol error"))
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(f"HTTP error {e.response.status_code}") from e

    async def _shutdown(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._response is not None:
            await self._response.aclose()
            self._response = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.debug("Connection to %s closed", self._url)


class InProcessConnection(ServerConnection):
    """Session with a ``SessionTransport`` living in the same event loop."""

    def __init__(
        self,
        transport: SessionTransport,
        api_key: str | None,
        connect_timeout: float = 10.0,
        request_timeout: float = 60.0,
    ) -> None:
        super().__init__(connect_timeout=connect_timeout, request_timeout=request_timeout)
        self._transport = transport
        self._api_key = api_key
        self._session: Session | None = None
        self._pump: asyncio.Task | None = None

    async def _open(self) -> None:
        self._session = self._transport.open(self._api_key, client="inprocess")
        self._pump = asyncio.create_task(self._pump_events(self._session))

    async def _pump_events(self, session: Session) -> None:
        decoder = SseDecoder()
        try:
            async for frame in self._transport.stream(session):
                for line in frame.split("\n"):
                    event = decoder.feed(line)
                    if event is not None:
                        self._handle_event(event)
        finally:
            self._terminate(TransportError("Session closed"))

    async def _send(self, message: Dict[str, Any]) -> None:
        if self._session is None:
            raise TransportError("Not connected")
        self._transport.receive(self._session.id, message)

    async def _shutdown(self) -> None:
        if self._session is not None:
            self._transport.close(self._session, reason="client closed")
        if self._pump is not None:
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None
