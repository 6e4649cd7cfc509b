import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List

import openai
from openai import AsyncOpenAI

from ..errors import ModelUnavailableError
from ..models import Usage
from ..settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class ModelToolCall:
    """One function call requested by the model.

    ``arguments_error`` is set when the model's argument string was not a
    JSON object; such a call is answered with an error instead of being
    dispatched.
    """

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""
    arguments_error: str | None = None


@dataclass
class ModelResponse:
    text: str | None
    tool_calls: List[ModelToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)

    def to_message(self) -> Dict[str, Any]:
        """Assistant turn in chat-completions format."""
        message: Dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": call.raw_arguments or json.dumps(call.arguments),
                    },
                }
                for call in self.tool_calls
            ]
        return message


def parse_arguments(raw: str) -> tuple[Dict[str, Any], str | None]:
    """Decode a model argument string into a dict, or return the decoding error."""
    if not raw or not raw.strip():
        return {}, None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as e:
        return {}, f"Invalid JSON arguments: {e}"
    if not isinstance(decoded, dict):
        return {}, "Arguments must be a JSON object"
    return decoded, None


class ModelClient(ABC):
    """The model collaborator: conversation and tool declarations in, text or tool calls out."""

    @abstractmethod
    async def generate(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
    ) -> ModelResponse:
        """Run one model turn.

        Raises:
            ModelUnavailableError: If the model cannot produce a response.
        """


class OpenAIModelClient(ModelClient):
    """Chat-completions model behind any OpenAI-compatible endpoint."""

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._settings.openai_api_key,
                base_url=self._settings.openai_base_url,
            )
        return self._client

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
    ) -> ModelResponse:
        kwargs: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": messages,
            "temperature": self._settings.temperature,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            completion = await self._get_client().chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            logger.error("Model request failed: %s", e)
            raise ModelUnavailableError(f"Model request failed: {e}") from e

        if not completion.choices:
            raise ModelUnavailableError("Model returned no candidates")

        message = completion.choices[0].message
        tool_calls = []
        for tc in message.tool_calls or []:
            raw = tc.function.arguments or ""
            arguments, error = parse_arguments(raw)
            tool_calls.append(
                ModelToolCall(
                    id=tc.id,
                    name=tc.function.name,
                    arguments=arguments,
                    raw_arguments=raw,
                    arguments_error=error,
                )
            )

        usage = Usage()
        if completion.usage is not None:
            usage = Usage(
                input_tokens=completion.usage.prompt_tokens or 0,
                output_tokens=completion.usage.completion_tokens or 0,
            )
        return ModelResponse(text=message.content, tool_calls=tool_calls, usage=usage)
