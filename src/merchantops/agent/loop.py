import asyncio
import json
import logging
from typing import Any, Dict, List

from ..client.manager import ConnectionManager
from ..errors import MerchantOpsError, ModelUnavailableError, SafetyLimitExceeded, ValidationError
from ..models import (
    ChatResponse,
    ConversationState,
    LoopPhase,
    Outcome,
    ToolCallRecord,
    ToolDescriptor,
    ToolInvocationResult,
    new_correlation_id,
)
from .model import ModelClient, ModelToolCall
from .schema import to_function_declarations

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_MESSAGE = "I have processed your request."
MODEL_UNAVAILABLE_MESSAGE = "I apologize, but I was unable to generate a response."
LIMIT_EXCEEDED_MESSAGE = (
    "I've been working on your request but reached my limit for tool calls. "
    "Here is what I found so far. Please try a more specific question."
)

_HISTORY_ROLES = ("user", "assistant")


class OrchestrationLoop:
    """Bounded agentic loop: model turn, tool batch, repeat.

    Each run owns its ConversationState. Tool calls of one model turn are
    dispatched concurrently and folded back in the order the model requested
    them. A run always returns a ChatResponse; only invalid input raises.
    """

    def __init__(
        self,
        model: ModelClient,
        connections: ConnectionManager,
        max_iterations: int = 10,
        system_prompt: str | None = None,
    ) -> None:
        self._model = model
        self._connections = connections
        self._max_iterations = max_iterations
        self._system_prompt = system_prompt

    async def _discover_tools(self) -> List[ToolDescriptor]:
        try:
            tools = await self._connections.list_tools()
        except MerchantOpsError as e:
            logger.warning("Tool discovery failed; continuing without tools: %s", e.message)
            return []
        logger.debug("Discovered %d tools", len(tools))
        return tools

    async def _execute(self, call: ModelToolCall) -> ToolInvocationResult:
        if call.arguments_error:
            logger.warning("Not dispatching %s: %s", call.name, call.arguments_error)
            return ToolInvocationResult.failure(
                new_correlation_id(),
                call.name,
                ValidationError("arguments", call.arguments_error),
            )
        return await self._connections.call_tool(call.name, call.arguments)

    def _finish(
        self,
        state: ConversationState,
        outcome: Outcome,
        message: str,
        error: MerchantOpsError | None = None,
    ) -> ChatResponse:
        state.phase = LoopPhase.DONE
        logger.info(
            "Run finished: outcome=%s iterations=%d tool_calls=%d tokens=%d",
            outcome.value,
            state.iterations,
            len(state.tool_calls),
            state.usage.total_tokens,
        )
        return ChatResponse(
            message=message,
            tool_calls=list(state.tool_calls),
            usage=state.usage,
            iterations=state.iterations,
            outcome=outcome,
            error=error.to_dict() if error is not None else None,
        )

    def _initial_messages(self, history: List[Dict[str, Any]], system_prompt: str | None) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for turn in history:
            role = turn.get("role")
            if role in _HISTORY_ROLES:
                messages.append({"role": role, "content": str(turn.get("content") or "")})
        return messages

    async def run(
        self,
        messages: List[Dict[str, Any]],
        max_iterations: int | None = None,
        system_prompt: str | None = None,
    ) -> ChatResponse:
        """Drive the conversation to a final answer or a safety stop.

        Args:
            messages: Conversation history as ``{"role", "content"}`` turns;
                the last one must come from the user.
            max_iterations: Ceiling on model round-trips for this run.
            system_prompt: Overrides the loop's default system instruction.

        Returns:
            ChatResponse: Final text, tool call records, usage, iteration
                count and outcome.

        Raises:
            ValueError: If the ceiling is below 1 or the last turn is not
                from the user.
        """
        limit = self._max_iterations if max_iterations is None else max_iterations
        if limit < 1:
            raise ValueError("max_iterations must be at least 1")
        if not messages or messages[-1].get("role") != "user":
            raise ValueError("Last message must be from the user")

        state = ConversationState(
            messages=self._initial_messages(messages, system_prompt or self._system_prompt)
        )
        declarations = to_function_declarations(await self._discover_tools())

        while True:
            state.phase = LoopPhase.AWAITING_MODEL
            try:
                response = await self._model.generate(state.messages, declarations)
            except ModelUnavailableError as e:
                logger.error("Model unavailable after %d iterations: %s", state.iterations, e.message)
                return self._finish(state, Outcome.MODEL_UNAVAILABLE, MODEL_UNAVAILABLE_MESSAGE, e)

            state.iterations += 1
            state.usage.add(response.usage)
            logger.info(
                "Iteration %d/%d: %d tool call(s)",
                state.iterations,
                limit,
                len(response.tool_calls),
            )

            if not response.tool_calls:
                state.phase = LoopPhase.RESPONDING
                text = (response.text or "").strip() or EMPTY_RESPONSE_MESSAGE
                return self._finish(state, Outcome.COMPLETED, text)

            if state.iterations >= limit:
                error = SafetyLimitExceeded(
                    f"Reached {limit} iterations with {len(response.tool_calls)} tool call(s) still requested"
                )
                logger.warning(error.message)
                return self._finish(state, Outcome.LIMIT_EXCEEDED, LIMIT_EXCEEDED_MESSAGE, error)

            state.phase = LoopPhase.EXECUTING_TOOLS
            state.messages.append(response.to_message())
            results = await asyncio.gather(*(self._execute(call) for call in response.tool_calls))

            for call, result in zip(response.tool_calls, results):
                payload = result.to_model_payload()
                state.messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(payload, default=str),
                    }
                )
                state.tool_calls.append(
                    ToolCallRecord(
                        name=call.name,
                        input=call.arguments,
                        result=payload,
                        duration_ms=result.duration_ms,
                    )
                )
