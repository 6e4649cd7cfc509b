import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..errors import (
    AuthenticationError,
    ProtocolError,
    ToolExecutionError,
    TransportError,
    UnknownToolError,
    ValidationError,
)
from ..logs import setup_logging
from ..models import utc_timestamp
from ..protocol import API_KEY_HEADER, SSE_HEADERS
from ..settings import Settings, get_settings
from ..tools import ToolDispatcher, ToolRegistry, build_registry
from .transport import SessionTransport

LOGGER = logging.getLogger(__name__)


class EndpointNotAvailable(Exception):
    """Raised by development-only endpoints outside development."""


def create_app(settings: Settings | None = None, registry: ToolRegistry | None = None) -> FastAPI:
    """Build the tool host application.

    Args:
        settings: Configuration; defaults to the process settings.
        registry: Tool registry; defaults to the built-in tools.

    Returns:
        FastAPI: App serving the event stream, the message endpoint and the
            development tool endpoints.
    """
    settings = settings or get_settings()
    setup_logging("merchantops", "server.log", settings.log_level)
    if registry is None:
        registry = build_registry(settings.server_name, settings.server_version)
    registry.freeze()
    transport = SessionTransport(ToolDispatcher(registry), settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Log the registered tools at startup; close every session on shutdown."""
        LOGGER.info(
            "Tool host ready with %d tools: %s",
            len(registry),
            ", ".join(d.name for d in registry.list()),
        )
        if not settings.mcp_api_key:
            LOGGER.warning("MCP_API_KEY is not set; every connection will be rejected")
        yield
        LOGGER.info("Shutting down; closing %d sessions", len(transport.sessions))
        transport.close_all()

    app = FastAPI(
        title=settings.server_name,
        version=settings.server_version,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.transport = transport

    @app.exception_handler(AuthenticationError)
    async def authentication_error(request: Request, exc: AuthenticationError) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={"error": "Unauthorized", "message": exc.message},
        )

    @app.exception_handler(EndpointNotAvailable)
    async def endpoint_not_available(request: Request, exc: EndpointNotAvailable) -> JSONResponse:
        return JSONResponse(
            status_code=403,
            content={
                "error": "Not available",
                "message": "Tool testing endpoint only available in development",
            },
        )

    def require_api_key(
        api_key: str | None = Header(default=None, alias=API_KEY_HEADER),
    ) -> str:
        transport.authenticate(api_key)
        return api_key or ""

    def require_development() -> None:
        if settings.is_production:
            raise EndpointNotAvailable()

    @app.get("/up")
    async def up() -> Dict[str, Any]:
        """Health check for load balancers and monitoring."""
        return {"status": "ok", "sessions": len(transport.sessions)}

    @app.get("/mcp/sse")
    async def open_stream(
        request: Request,
        api_key: str | None = Header(default=None, alias=API_KEY_HEADER),
    ) -> StreamingResponse:
        """Open a session and stream its events as text/event-stream."""
        client = request.client.host if request.client else None
        transport.authenticate(api_key)
        return StreamingResponse(
            transport.connect_stream(api_key, client=client),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/mcp/messages", dependencies=[Depends(require_api_key)])
    async def submit_message(request: Request, session_id: str = Query(...)) -> JSONResponse:
        """Accept a tool call or resource query; its result arrives on the stream."""
        body = await request.body()
        try:
            correlation_id = transport.receive(session_id, body)
        except TransportError as e:
            return JSONResponse(status_code=404, content={"error": "Not found", "message": e.message})
        except ProtocolError as e:
            return JSONResponse(
                status_code=400,
                content={"error": "Protocol error", "message": e.message},
            )
        return JSONResponse(status_code=202, content={"accepted": True, "correlationId": correlation_id})

    dev_only = [Depends(require_development), Depends(require_api_key)]

    @app.get("/mcp/tools", dependencies=dev_only)
    async def list_tools() -> Dict[str, Any]:
        """List registered tools with their parameter schemas."""
        tools = [d.to_dict() for d in registry.list()]
        return {
            "server": settings.server_name,
            "version": settings.server_version,
            "tools": tools,
            "count": len(tools),
        }

    @app.post("/mcp/tools/{tool_name}", dependencies=dev_only)
    async def execute_tool(tool_name: str, request: Request) -> JSONResponse:
        """Run a tool directly, bypassing the session stream."""
        raw = await request.body()
        try:
            parameters = json.loads(raw) if raw else {}
        except json.JSONDecodeError as e:
            return JSONResponse(status_code=400, content={"error": "Invalid JSON", "message": str(e)})
        if not isinstance(parameters, dict):
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid JSON", "message": "Body must be a JSON object"},
            )

        LOGGER.info("Direct tool execution: %s", tool_name)
        try:
            result = await transport.dispatcher.execute(tool_name, parameters)
        except UnknownToolError as e:
            return JSONResponse(
                status_code=404,
                content={"error": "Unknown tool", "tool": tool_name, "message": e.message},
            )
        except ValidationError as e:
            return JSONResponse(
                status_code=422,
                content={
                    "error": "Validation failed",
                    "tool": tool_name,
                    "field": e.field,
                    "message": e.message,
                },
            )
        except ToolExecutionError as e:
            return JSONResponse(
                status_code=500,
                content={"error": "Tool execution failed", "tool": tool_name, "message": e.message},
            )

        return JSONResponse(
            content={
                "tool": tool_name,
                "parameters": parameters,
                "result": result,
                "executedAt": utc_timestamp(),
            }
        )

    return app


def run() -> None:
    """Console entry point for the tool host."""
    settings = get_settings()
    uvicorn.run(
        "merchantops.server.app:create_app",
        factory=True,
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )
