import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Tuple

from .errors import MerchantOpsError

PARAMETER_TYPES = ("string", "integer", "number", "boolean", "object", "array")


def utc_timestamp() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ToolParameter:
    """One named, typed parameter of a tool."""

    name: str
    type: str
    description: str = ""
    required: bool = False
    default: Any = None
    pattern: str | None = None

    def __post_init__(self) -> None:
        if self.type not in PARAMETER_TYPES:
            raise ValueError(f"Unsupported parameter type for {self.name}: {self.type}")

    def to_json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        if self.pattern:
            schema["pattern"] = self.pattern
        return schema


@dataclass(frozen=True)
class ToolDescriptor:
    """Identity, schema and handler reference of one invocable tool.

    Parameters are kept as a tuple in declaration order. Descriptors rebuilt
    on the client side from the wire catalog carry no handler.
    """

    name: str
    description: str
    parameters: Tuple[ToolParameter, ...] = ()
    handler: Callable[..., Any] | None = field(default=None, compare=False)

    def parameter(self, name: str) -> ToolParameter | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    def input_schema(self) -> Dict[str, Any]:
        """JSON schema of the argument object."""
        return {
            "type": "object",
            "properties": {p.name: p.to_json_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameterSchema": self.input_schema(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolDescriptor":
        """Rebuild a handler-less descriptor from its catalog entry."""
        schema = data.get("parameterSchema") or {}
        required = set(schema.get("required") or [])
        parameters = []
        for name, prop in (schema.get("properties") or {}).items():
            parameters.append(
                ToolParameter(
                    name=name,
                    type=prop.get("type", "string"),
                    description=prop.get("description", ""),
                    required=name in required,
                    default=prop.get("default"),
                    pattern=prop.get("pattern"),
                )
            )
        return cls(
            name=str(data["name"]),
            description=str(data.get("description") or ""),
            parameters=tuple(parameters),
        )


@dataclass(frozen=True)
class Resource:
    """Read-only data exposed by URI through a session."""

    uri: str
    description: str
    reader: Callable[[Dict[str, Any]], Any] = field(compare=False)


@dataclass
class ToolInvocationRequest:
    tool: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = field(default_factory=new_correlation_id)
    issued_at: str = field(default_factory=utc_timestamp)


@dataclass
class ResourceQuery:
    uri: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = field(default_factory=new_correlation_id)


@dataclass
class ToolInvocationResult:
    """Outcome of exactly one ToolInvocationRequest: a payload or a structured error."""

    correlation_id: str
    tool: str
    ok: bool
    payload: Any = None
    error: Dict[str, Any] | None = None
    duration_ms: float = 0.0

    @classmethod
    def success(
        cls, correlation_id: str, tool: str, payload: Any, duration_ms: float = 0.0
    ) -> "ToolInvocationResult":
        return cls(
            correlation_id=correlation_id,
            tool=tool,
            ok=True,
            payload=payload,
            duration_ms=duration_ms,
        )

    @classmethod
    def failure(
        cls,
        correlation_id: str,
        tool: str,
        error: MerchantOpsError,
        duration_ms: float = 0.0,
    ) -> "ToolInvocationResult":
        return cls(
            correlation_id=correlation_id,
            tool=tool,
            ok=False,
            error=error.to_dict(),
            duration_ms=duration_ms,
        )

    def to_model_payload(self) -> Any:
        """Value handed back to the model and stored in tool call records."""
        if self.ok:
            return self.payload
        return {"error": True, **(self.error or {})}

    def to_event_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "correlationId": self.correlation_id,
            "tool": self.tool,
            "durationMs": round(self.duration_ms, 2),
            "timestamp": utc_timestamp(),
        }
        if self.ok:
            data["result"] = self.payload
        else:
            data["error"] = self.error
        return data

    @classmethod
    def from_event_data(cls, data: Dict[str, Any]) -> "ToolInvocationResult":
        error = data.get("error")
        return cls(
            correlation_id=str(data.get("correlationId", "")),
            tool=str(data.get("tool", "")),
            ok=error is None,
            payload=data.get("result"),
            error=error,
            duration_ms=float(data.get("durationMs") or 0.0),
        )


@dataclass
class ToolCallRecord:
    """One entry of the append-only tool call log of an orchestration run."""

    name: str
    input: Dict[str, Any]
    result: Any
    duration_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "input": self.input,
            "result": self.result,
            "durationMs": round(self.duration_ms, 2),
        }


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "Usage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }


class Outcome(str, Enum):
    COMPLETED = "completed"
    LIMIT_EXCEEDED = "limit_exceeded"
    MODEL_UNAVAILABLE = "model_unavailable"


class LoopPhase(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    RESPONDING = "responding"
    DONE = "done"


@dataclass
class ConversationState:
    """Mutable state of a single orchestration run."""

    messages: List[Dict[str, Any]] = field(default_factory=list)
    iterations: int = 0
    usage: Usage = field(default_factory=Usage)
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    phase: LoopPhase = LoopPhase.IDLE


@dataclass
class ChatResponse:
    message: str
    tool_calls: List[ToolCallRecord]
    usage: Usage
    iterations: int
    outcome: Outcome
    error: Dict[str, Any] | None = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "message": self.message,
            "toolCalls": [record.to_dict() for record in self.tool_calls],
            "usage": self.usage.to_dict(),
            "iterations": self.iterations,
            "outcome": self.outcome.value,
        }
        if self.error is not None:
            data["error"] = self.error
        return data
