import asyncio
import logging
import time
from typing import Any, Callable, Dict, List

from ..errors import AuthenticationError, ProtocolError, TransportError
from ..models import ToolDescriptor, ToolInvocationRequest, ToolInvocationResult
from ..server.transport import SessionTransport
from ..settings import Settings
from ..tools import ToolDispatcher, build_registry
from .connection import InProcessConnection, ServerConnection, SseServerConnection

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], ServerConnection]


class ConnectionManager:
    """Lazily opened, shared connection to the tool host.

    Concurrent callers that arrive while the first connection attempt is in
    progress all await that same attempt. A failed attempt is forgotten so
    the next caller retries, and a connection that has died is replaced on
    next use.
    """

    def __init__(self, connection_factory: ConnectionFactory) -> None:
        self._factory = connection_factory
        self._connection: ServerConnection | None = None
        self._connecting: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self._connection is not None and self._connection.is_open

    async def _connect(self, stale: ServerConnection | None) -> ServerConnection:
        try:
            if stale is not None:
                logger.info("Tool host connection lost; reconnecting")
                await stale.close()
            connection = self._factory()
            try:
                await connection.connect()
            except BaseException:
                await connection.close()
                raise
            self._connection = connection
            return connection
        finally:
            if self._connecting is asyncio.current_task():
                self._connecting = None

    async def get_connection(self) -> ServerConnection:
        """Return the live connection, opening it on first use.

        Replacing a dead connection goes through the same single attempt, so
        callers arriving while the old one is still closing share it too.

        Raises:
            AuthenticationError: If the tool host rejects the credential.
            TransportError: If the tool host cannot be reached, or the manager
                was closed while the attempt was in progress.
        """
        if self._connection is not None and self._connection.is_open:
            return self._connection

        if self._connecting is None:
            stale, self._connection = self._connection, None
            self._connecting = asyncio.ensure_future(self._connect(stale))
        connecting = self._connecting
        try:
            # Shielded so one cancelled caller does not abort the shared attempt.
            return await asyncio.shield(connecting)
        except asyncio.CancelledError:
            if connecting.cancelled() and not asyncio.current_task().cancelling():
                raise TransportError("Connection closed") from None
            raise

    async def list_tools(self) -> List[ToolDescriptor]:
        """Fetch the tool catalog from the tool host."""
        connection = await self.get_connection()
        return await connection.list_tools()

    async def call_tool(self, name: str, arguments: Dict[str, Any] | None = None) -> ToolInvocationResult:
        """Invoke a tool; connection and protocol failures come back as error results."""
        request = ToolInvocationRequest(tool=name, arguments=dict(arguments or {}))
        started = time.perf_counter()
        try:
            connection = await self.get_connection()
            return await connection.call_tool(request)
        except (TransportError, AuthenticationError, ProtocolError) as e:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.warning("Tool call %s failed [%s]: %s", name, e.type_name, e.message)
            return ToolInvocationResult.failure(request.correlation_id, name, e, duration_ms)

    async def close(self) -> None:
        """Release the connection. Safe to call repeatedly and during shutdown."""
        if self._connecting is not None:
            self._connecting.cancel()
            self._connecting = None
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
            logger.info("Tool host connection closed")


def build_connection_factory(
    settings: Settings,
    transport: SessionTransport | None = None,
) -> ConnectionFactory:
    """Connection factory for the configured ``mcp_transport``.

    ``inprocess`` runs a private tool host in this process unless a transport
    is supplied; ``sse`` connects to ``mcp_server_url``.
    """
    if settings.mcp_transport == "inprocess":
        if transport is None:
            registry = build_registry(settings.server_name, settings.server_version)
            transport = SessionTransport(ToolDispatcher(registry), settings)
        local_transport = transport

        def make_inprocess() -> ServerConnection:
            return InProcessConnection(
                local_transport,
                settings.mcp_api_key,
                connect_timeout=settings.mcp_connect_timeout_seconds,
                request_timeout=settings.mcp_request_timeout_seconds,
            )

        return make_inprocess

    def make_sse() -> ServerConnection:
        return SseServerConnection(
            settings.mcp_server_url,
            settings.mcp_api_key,
            connect_timeout=settings.mcp_connect_timeout_seconds,
            request_timeout=settings.mcp_request_timeout_seconds,
        )

    return make_sse
