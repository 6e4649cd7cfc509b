from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from merchantops.agent.model import ModelResponse, ModelToolCall, OpenAIModelClient, parse_arguments
from merchantops.agent.schema import to_function_declaration
from merchantops.errors import ModelUnavailableError
from merchantops.settings import Settings

from conftest import EchoTool


def completion(content=None, tool_calls=None, prompt_tokens=10, completion_tokens=5):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def function_call(call_id: str, name: str, arguments: str):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


@pytest.fixture
def mock_openai() -> MagicMock:
    """Mock AsyncOpenAI client with an async chat.completions.create."""
    m = MagicMock()
    m.chat.completions.create = AsyncMock(return_value=completion(content="Hello"))
    return m


@pytest.fixture
def model(settings: Settings, mock_openai: MagicMock) -> OpenAIModelClient:
    return OpenAIModelClient(settings, client=mock_openai)


@pytest.mark.asyncio
async def test_generate_text(model: OpenAIModelClient, mock_openai: MagicMock) -> None:
    """A plain answer carries text and token usage."""
    response = await model.generate([{"role": "user", "content": "hi"}], [])
    assert response.text == "Hello"
    assert response.tool_calls == []
    assert response.usage.input_tokens == 10
    assert response.usage.output_tokens == 5

    kwargs = mock_openai.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert "tools" not in kwargs
    assert "tool_choice" not in kwargs


@pytest.mark.asyncio
async def test_generate_passes_tools(model: OpenAIModelClient, mock_openai: MagicMock) -> None:
    declarations = [to_function_declaration(EchoTool.descriptor())]
    await model.generate([{"role": "user", "content": "hi"}], declarations)
    kwargs = mock_openai.chat.completions.create.call_args.kwargs
    assert kwargs["tools"] == declarations
    assert kwargs["tool_choice"] == "auto"


@pytest.mark.asyncio
async def test_generate_tool_calls(model: OpenAIModelClient, mock_openai: MagicMock) -> None:
    """Tool calls are decoded; bad argument strings are flagged, not raised."""
    mock_openai.chat.completions.create.return_value = completion(
        tool_calls=[
            function_call("call_1", "echo", '{"text": "a"}'),
            function_call("call_2", "echo", "{not json"),
        ]
    )
    response = await model.generate([{"role": "user", "content": "hi"}], [])
    first, second = response.tool_calls
    assert first.arguments == {"text": "a"}
    assert first.arguments_error is None
    assert second.arguments == {}
    assert second.arguments_error.startswith("Invalid JSON arguments")


@pytest.mark.asyncio
async def test_api_error_is_model_unavailable(model: OpenAIModelClient, mock_openai: MagicMock) -> None:
    mock_openai.chat.completions.create.side_effect = openai.APIConnectionError(
        request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    )
    with pytest.raises(ModelUnavailableError):
        await model.generate([{"role": "user", "content": "hi"}], [])


@pytest.mark.asyncio
async def test_no_choices_is_model_unavailable(model: OpenAIModelClient, mock_openai: MagicMock) -> None:
    mock_openai.chat.completions.create.return_value = SimpleNamespace(choices=[], usage=None)
    with pytest.raises(ModelUnavailableError) as exc_info:
        await model.generate([{"role": "user", "content": "hi"}], [])
    assert exc_info.value.message == "Model returned no candidates"


@pytest.mark.parametrize(
    "raw, expected, has_error",
    [
        ("", {}, False),
        ('{"a": 1}', {"a": 1}, False),
        ("[1]", {}, True),
        ("{", {}, True),
    ],
)
def test_parse_arguments(raw, expected, has_error) -> None:
    arguments, error = parse_arguments(raw)
    assert arguments == expected
    assert (error is not None) == has_error


def test_to_message_keeps_raw_arguments() -> None:
    """The assistant turn echoes the model's argument string verbatim."""
    response = ModelResponse(
        text=None,
        tool_calls=[ModelToolCall(id="call_1", name="echo", arguments={"text": "a"}, raw_arguments='{"text":"a"}')],
    )
    message = response.to_message()
    assert message["role"] == "assistant"
    assert message["content"] is None
    assert message["tool_calls"][0]["function"] == {"name": "echo", "arguments": '{"text":"a"}'}


def test_function_declaration() -> None:
    """Descriptors become OpenAI function tools with a JSON-schema parameters object."""
    declaration = to_function_declaration(EchoTool.descriptor())
    assert declaration["type"] == "function"
    function = declaration["function"]
    assert function["name"] == "echo"
    assert function["parameters"]["required"] == ["text"]
    assert function["parameters"]["properties"]["times"]["type"] == "integer"
