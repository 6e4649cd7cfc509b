import logging
from typing import Any, Dict

import pytest

from merchantops.errors import ToolExecutionError, UnknownToolError, ValidationError
from merchantops.models import ResourceQuery, ToolInvocationRequest, ToolParameter
from merchantops.tools import CATALOG_URI, Tool, ToolDispatcher, ToolRegistry


class TypedTool(Tool):
    name = "typed"
    description = "Returns its validated arguments."
    parameters = (
        ToolParameter(name="count", type="integer"),
        ToolParameter(name="ratio", type="number"),
        ToolParameter(name="flag", type="boolean"),
        ToolParameter(name="options", type="object"),
        ToolParameter(name="items", type="array"),
        ToolParameter(name="label", type="string"),
    )

    def call(self, **arguments: Any) -> Dict[str, Any]:
        return arguments


class InstanceTool(Tool):
    name = "instance"
    description = "Reports how many times this instance was called."
    created = 0

    def __init__(self) -> None:
        InstanceTool.created += 1
        self.calls = 0

    def call(self) -> Dict[str, Any]:
        self.calls += 1
        return {"calls": self.calls}


@pytest.fixture
def typed_dispatcher() -> ToolDispatcher:
    registry = ToolRegistry()
    registry.register(TypedTool.descriptor())
    registry.register(InstanceTool.descriptor())
    registry.freeze()
    return ToolDispatcher(registry)


@pytest.mark.asyncio
async def test_execute_applies_defaults(dispatcher: ToolDispatcher) -> None:
    """Defaults are filled in for omitted optional parameters."""
    assert await dispatcher.execute("echo", {"text": "ab"}) == {"echo": "ab"}
    assert await dispatcher.execute("echo", {"text": "ab", "times": 2}) == {"echo": "abab"}


@pytest.mark.asyncio
async def test_execute_async_handler(dispatcher: ToolDispatcher) -> None:
    """Coroutine handlers are awaited directly."""
    assert await dispatcher.execute("slow", {"label": "x", "delay": 0}) == {"label": "x"}


@pytest.mark.asyncio
async def test_unknown_tool(dispatcher: ToolDispatcher) -> None:
    """An unregistered name raises UnknownToolError."""
    with pytest.raises(UnknownToolError) as exc_info:
        await dispatcher.execute("nope", {})
    assert exc_info.value.message == "Unknown tool: nope"


@pytest.mark.asyncio
async def test_missing_required_argument(dispatcher: ToolDispatcher) -> None:
    """A missing required parameter is reported by name before the handler runs."""
    with pytest.raises(ValidationError) as exc_info:
        await dispatcher.execute("echo", {})
    assert exc_info.value.field == "text"
    assert exc_info.value.to_dict()["field"] == "text"


@pytest.mark.asyncio
async def test_coercion(typed_dispatcher: ToolDispatcher) -> None:
    """Lenient inputs are coerced to their declared types."""
    result = await typed_dispatcher.execute(
        "typed",
        {
            "count": "3",
            "ratio": "1.5",
            "flag": "yes",
            "options": '{"a": 1}',
            "items": (1, 2),
            "label": 7,
        },
    )
    assert result == {
        "count": 3,
        "ratio": 1.5,
        "flag": True,
        "options": {"a": 1},
        "items": [1, 2],
        "label": "7",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "field, value",
    [
        ("count", True),
        ("count", 1.5),
        ("count", "three"),
        ("ratio", "nan"),
        ("ratio", False),
        ("flag", "maybe"),
        ("flag", 2),
        ("options", "[1]"),
        ("items", "a,b"),
        ("label", {"x": 1}),
    ],
)
async def test_coercion_rejects(typed_dispatcher: ToolDispatcher, field: str, value: Any) -> None:
    """Values that cannot be coerced raise ValidationError naming the field."""
    with pytest.raises(ValidationError) as exc_info:
        await typed_dispatcher.execute("typed", {field: value})
    assert exc_info.value.field == field


@pytest.mark.asyncio
async def test_email_pattern_is_enforced(dispatcher: ToolDispatcher) -> None:
    """Pattern parameters must match in full."""
    with pytest.raises(ValidationError) as exc_info:
        await dispatcher.execute("aggregate_customer_context", {"email": "not-an-email"})
    assert exc_info.value.field == "email"
    assert "does not match" in exc_info.value.message


@pytest.mark.asyncio
async def test_handler_exception_wrapped(dispatcher: ToolDispatcher) -> None:
    """Any handler exception surfaces as ToolExecutionError with its message."""
    with pytest.raises(ToolExecutionError) as exc_info:
        await dispatcher.execute("explode", {})
    assert exc_info.value.message == "boom"
    assert exc_info.value.tool == "explode"


@pytest.mark.asyncio
async def test_unknown_arguments_dropped(dispatcher: ToolDispatcher, caplog) -> None:
    """Extra arguments are ignored with a warning."""
    with caplog.at_level(logging.WARNING, logger="merchantops.tools.dispatcher"):
        result = await dispatcher.execute("echo", {"text": "a", "volume": 11})
    assert result == {"echo": "a"}
    assert "Dropping unknown arguments for echo: volume" in caplog.text


@pytest.mark.asyncio
async def test_fresh_instance_per_call(typed_dispatcher: ToolDispatcher) -> None:
    """Handlers keep no state between invocations."""
    InstanceTool.created = 0
    first = await typed_dispatcher.execute("instance", {})
    second = await typed_dispatcher.execute("instance", {})
    assert first == second == {"calls": 1}
    assert InstanceTool.created == 2


@pytest.mark.asyncio
async def test_execute_request_success(dispatcher: ToolDispatcher) -> None:
    """execute_request returns an ok result carrying the correlation id."""
    request = ToolInvocationRequest(tool="echo", arguments={"text": "hi"}, correlation_id="c1")
    result = await dispatcher.execute_request(request)
    assert result.ok
    assert result.correlation_id == "c1"
    assert result.payload == {"echo": "hi"}
    assert result.duration_ms >= 0


@pytest.mark.asyncio
async def test_execute_request_folds_errors(dispatcher: ToolDispatcher) -> None:
    """Per-call failures become error results instead of exceptions."""
    result = await dispatcher.execute_request(ToolInvocationRequest(tool="explode"))
    assert not result.ok
    assert result.error == {"type": "ToolExecutionError", "message": "boom"}
    assert result.to_model_payload() == {"error": True, "type": "ToolExecutionError", "message": "boom"}

    unknown = await dispatcher.execute_request(ToolInvocationRequest(tool="ghost"))
    assert unknown.error["type"] == "UnknownToolError"


@pytest.mark.asyncio
async def test_query_resource(dispatcher: ToolDispatcher) -> None:
    """The catalog resource lists every registered tool."""
    catalog = await dispatcher.query_resource(ResourceQuery(uri=CATALOG_URI))
    assert {"echo", "explode", "slow"} <= {entry["name"] for entry in catalog}


@pytest.mark.asyncio
async def test_query_unknown_resource(dispatcher: ToolDispatcher) -> None:
    """An unregistered URI is a ValidationError on the uri field."""
    with pytest.raises(ValidationError) as exc_info:
        await dispatcher.query_resource(ResourceQuery(uri="merchantops://nothing"))
    assert exc_info.value.field == "uri"
