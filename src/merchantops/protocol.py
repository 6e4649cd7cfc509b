"""Wire format shared by the tool host and its clients.

Outbound traffic is a Server-Sent Events stream: every frame carries an event
type, a JSON ``data`` line and an optional ``id``. Inbound traffic is JSON
posted out of band and tagged with a ``correlationId`` that the matching
result event echoes back.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List

from .errors import ProtocolError
from .models import ResourceQuery, ToolInvocationRequest

API_KEY_HEADER = "X-MCP-Api-Key"
PROTOCOL_NAME = "mcp/sse"

EVENT_CONNECTED = "connected"
EVENT_TOOL_RESULT = "tool_result"
EVENT_TOOL_ERROR = "tool_error"
EVENT_RESOURCE_RESULT = "resource_result"
EVENT_PROTOCOL_ERROR = "protocol_error"
EVENT_TIMEOUT = "timeout"
EVENT_HEARTBEAT = "heartbeat"

MESSAGE_TOOL_CALL = "tool_call"
MESSAGE_RESOURCE_QUERY = "resource_query"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-store",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}


def encode_event(event: str, data: Any, event_id: str | None = None) -> str:
    """Frame one event as ``id:``/``event:``/``data:`` lines ending in a blank line."""
    lines: List[str] = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    payload = json.dumps(data, default=str)
    for line in payload.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


@dataclass
class SseEvent:
    event: str
    data: Any
    id: str | None = None


class SseDecoder:
    """Incremental line-oriented decoder for an event stream."""

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._event: str | None = None
        self._id: str | None = None
        self._data: List[str] = []

    def feed(self, line: str) -> SseEvent | None:
        """Consume one line; return an event when a blank line completes a frame."""
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        return None

    def _dispatch(self) -> SseEvent | None:
        if not self._data and self._event is None:
            self._reset()
            return None
        raw = "\n".join(self._data)
        event_name = self._event or "message"
        event_id = self._id
        self._reset()
        try:
            data = json.loads(raw) if raw else None
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Invalid JSON in '{event_name}' event: {e}") from e
        return SseEvent(event=event_name, data=data, id=event_id)


def decode_frames(text: str) -> List[SseEvent]:
    """Decode every complete frame contained in ``text``."""
    decoder = SseDecoder()
    events = []
    for line in text.split("\n"):
        event = decoder.feed(line)
        if event is not None:
            events.append(event)
    return events


def encode_tool_call(request: ToolInvocationRequest) -> Dict[str, Any]:
    return {
        "type": MESSAGE_TOOL_CALL,
        "correlationId": request.correlation_id,
        "toolName": request.tool,
        "arguments": request.arguments,
    }


def encode_resource_query(query: ResourceQuery) -> Dict[str, Any]:
    return {
        "type": MESSAGE_RESOURCE_QUERY,
        "correlationId": query.correlation_id,
        "uri": query.uri,
        "parameters": query.parameters,
    }


def parse_inbound(payload: Any) -> ToolInvocationRequest | ResourceQuery:
    """Parse an inbound submission into a tool call or a resource query.

    Args:
        payload: Decoded JSON object, or the raw request body.

    Returns:
        ToolInvocationRequest | ResourceQuery: The typed message.

    Raises:
        ProtocolError: If the body is not JSON, is not an object, has an
            unknown ``type`` or lacks a required field.
    """
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Message is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ProtocolError("Message must be a JSON object")

    correlation_id = payload.get("correlationId")
    if not isinstance(correlation_id, str) or not correlation_id:
        raise ProtocolError("Missing correlationId")

    message_type = payload.get("type") or MESSAGE_TOOL_CALL

    if message_type == MESSAGE_TOOL_CALL:
        tool_name = payload.get("toolName")
        if not isinstance(tool_name, str) or not tool_name:
            raise ProtocolError("Missing toolName", correlation_id=correlation_id)
        arguments = payload.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise ProtocolError("arguments must be an object", correlation_id=correlation_id)
        return ToolInvocationRequest(
            tool=tool_name,
            arguments=arguments,
            correlation_id=correlation_id,
        )

    if message_type == MESSAGE_RESOURCE_QUERY:
        uri = payload.get("uri")
        if not isinstance(uri, str) or not uri:
            raise ProtocolError("Missing uri", correlation_id=correlation_id)
        parameters = payload.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise ProtocolError("parameters must be an object", correlation_id=correlation_id)
        return ResourceQuery(uri=uri, parameters=parameters, correlation_id=correlation_id)

    raise ProtocolError(f"Unknown message type: {message_type}", correlation_id=correlation_id)
