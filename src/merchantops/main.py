import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .agent import OpenAIModelClient, OrchestrationLoop
from .client import ConnectionManager, build_connection_factory
from .errors import MerchantOpsError
from .logs import setup_logging
from .models import utc_timestamp
from .services.history import ChatHistoryStore, get_history_store
from .settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


class ChatTurn(BaseModel):
    role: str
    content: str = ""


class ChatRequest(BaseModel):
    """Body of POST /api/chat."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    conversation_history: List[ChatTurn] = Field(default_factory=list, alias="conversationHistory")
    session_id: str | None = Field(default=None, alias="sessionId")
    max_iterations: int | None = Field(default=None, ge=1, alias="maxIterations")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


def create_app(
    settings: Settings | None = None,
    connections: ConnectionManager | None = None,
    orchestrator: OrchestrationLoop | None = None,
    history: ChatHistoryStore | None = None,
) -> FastAPI:
    """Build the orchestrator API.

    Collaborators default to the configured ones: a ConnectionManager for
    ``mcp_transport``, an OpenAI-backed loop and, when ``redis_url`` is set,
    a Redis chat history store.
    """
    settings = settings or get_settings()
    setup_logging("merchantops", "api.log", settings.log_level)

    if connections is None:
        connections = ConnectionManager(build_connection_factory(settings))
    if orchestrator is None:
        orchestrator = OrchestrationLoop(
            OpenAIModelClient(settings),
            connections,
            max_iterations=settings.max_iterations,
            system_prompt=settings.agent_system_prompt,
        )
    if history is None:
        history = get_history_store(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Connect optional Redis history at startup; release the tool host connection on shutdown."""
        if history is not None:
            try:
                await history.connect()
                LOGGER.info("Chat history (Redis) ready")
            except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
                LOGGER.warning("Chat history unavailable (Redis): %s", e)

        yield

        LOGGER.info("Shutting down...")
        await connections.close()
        if history is not None:
            await history.close()

    app = FastAPI(
        title="Merchant Operations Assistant",
        version=settings.server_version,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.connections = connections
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """Health check for load balancers and monitoring.

        Returns:
            dict[str, Any]: JSON response with status field.
        """
        return {"status": "ok"}

    @app.get("/api/chat")
    async def chat_status() -> JSONResponse:
        """Report whether the tool host is reachable and which tools it offers."""
        try:
            tools = await connections.list_tools()
        except MerchantOpsError as e:
            LOGGER.warning("Tool host health check failed: %s", e.message)
            return JSONResponse(
                status_code=503,
                content={
                    "status": "error",
                    "mcp": {"connected": False, "error": e.message},
                    "timestamp": utc_timestamp(),
                },
            )
        return JSONResponse(
            content={
                "status": "ok",
                "mcp": {
                    "connected": connections.connected,
                    "toolCount": len(tools),
                    "tools": [t.name for t in tools],
                },
                "timestamp": utc_timestamp(),
            }
        )

    @app.post("/api/chat")
    async def chat(payload: ChatRequest) -> JSONResponse:
        """Answer one user message with the agentic loop.

        Expected Input (JSON):
            {
                "message": str - user query text,
                "conversationHistory": [{"role", "content"}] - optional prior turns,
                "sessionId": str - optional; loads and extends stored history,
                "maxIterations": int - optional iteration ceiling
            }

        Response Format:
            {"success": true, "message", "toolCalls", "usage", "iterations", "outcome"}
        """
        message = payload.message.strip()
        if not message:
            return JSONResponse(
                status_code=400,
                content={"success": False, "error": "Message is required"},
            )

        turns = [turn.model_dump() for turn in payload.conversation_history]
        if not turns and payload.session_id and history is not None:
            turns = await history.load(payload.session_id)

        LOGGER.info(
            "Chat request session_id=%s history=%d",
            payload.session_id or "-",
            len(turns),
        )
        response = await orchestrator.run(
            turns + [{"role": "user", "content": message}],
            max_iterations=payload.max_iterations,
        )

        if payload.session_id and history is not None:
            await history.append(
                payload.session_id,
                {"role": "user", "content": message},
                {"role": "assistant", "content": response.message},
            )

        return JSONResponse(content={"success": True, **response.to_dict()})

    return app


def run() -> None:
    """Console entry point for the orchestrator API."""
    settings = get_settings()
    uvicorn.run(
        "merchantops.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
