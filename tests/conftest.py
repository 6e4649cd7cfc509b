import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest
import pytest_asyncio


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from merchantops.agent.model import ModelClient, ModelResponse, ModelToolCall  # noqa: E402
from merchantops.client import ConnectionManager, InProcessConnection  # noqa: E402
from merchantops.models import ToolParameter  # noqa: E402
from merchantops.server.transport import SessionTransport  # noqa: E402
from merchantops.settings import Settings  # noqa: E402
from merchantops.tools import BUILTIN_TOOLS, Tool, ToolDispatcher, ToolRegistry, build_registry  # noqa: E402

API_KEY = "test-key"


class EchoTool(Tool):
    name = "echo"
    description = "Repeat the given text."
    parameters = (
        ToolParameter(name="text", type="string", required=True),
        ToolParameter(name="times", type="integer", default=1),
    )

    def call(self, text: str, times: int = 1) -> Dict[str, Any]:
        return {"echo": text * times}


class ExplodingTool(Tool):
    name = "explode"
    description = "Always fails."

    def call(self) -> Dict[str, Any]:
        raise RuntimeError("boom")


class SlowTool(Tool):
    name = "slow"
    description = "Sleeps, then returns its label."
    parameters = (
        ToolParameter(name="label", type="string", default=""),
        ToolParameter(name="delay", type="number", default=0.05),
    )

    async def call(self, label: str = "", delay: float = 0.05) -> Dict[str, Any]:
        await asyncio.sleep(delay)
        return {"label": label}


TEST_TOOLS = BUILTIN_TOOLS + (EchoTool, ExplodingTool, SlowTool)


class ScriptedModel(ModelClient):
    """Model double that replays canned responses and records what it was sent."""

    def __init__(self, responses: List[Any]) -> None:
        self._responses = list(responses)
        self.calls: List[List[Dict[str, Any]]] = []
        self.tools_seen: List[List[Dict[str, Any]]] = []

    async def generate(self, messages, tools) -> ModelResponse:
        self.calls.append([dict(m) for m in messages])
        self.tools_seen.append(list(tools))
        step = self._responses[min(len(self.calls), len(self._responses)) - 1]
        if isinstance(step, Exception):
            raise step
        return step


def tool_call(name: str, call_id: str = "call_1", **arguments: Any) -> ModelToolCall:
    return ModelToolCall(id=call_id, name=name, arguments=arguments)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment; heartbeats off for deterministic streams."""
    return Settings(
        _env_file=None,
        mcp_api_key=API_KEY,
        mcp_transport="inprocess",
        environment="test",
        server_name="Test Host",
        server_version="9.9.9",
        heartbeat_interval_seconds=0,
        redis_url=None,
    )


@pytest.fixture
def registry() -> ToolRegistry:
    """Built-in tools plus echo, explode and slow."""
    return build_registry("Test Host", "9.9.9", tools=TEST_TOOLS)


@pytest.fixture
def dispatcher(registry: ToolRegistry) -> ToolDispatcher:
    return ToolDispatcher(registry)


@pytest.fixture
def transport(dispatcher: ToolDispatcher, settings: Settings) -> SessionTransport:
    return SessionTransport(dispatcher, settings)


@pytest_asyncio.fixture
async def manager(transport: SessionTransport):
    """ConnectionManager over an in-process session with the test registry."""
    mgr = ConnectionManager(lambda: InProcessConnection(transport, API_KEY, request_timeout=5.0))
    yield mgr
    await mgr.close()
