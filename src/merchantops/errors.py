from typing import Any, Dict


class MerchantOpsError(Exception):
    """Base class for errors raised across the session and orchestration layers."""

    type_name = "MerchantOpsError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Structured form carried inside error results and events."""
        return {"type": self.type_name, "message": self.message}


class AuthenticationError(MerchantOpsError):
    """Missing or mismatched client credential. No session is created."""

    type_name = "AuthenticationError"


class ProtocolError(MerchantOpsError):
    """Malformed inbound message. Fatal ones close the session."""

    type_name = "ProtocolError"

    def __init__(
        self,
        message: str,
        correlation_id: str | None = None,
        fatal: bool = False,
    ) -> None:
        super().__init__(message)
        self.correlation_id = correlation_id
        self.fatal = fatal


class UnknownToolError(MerchantOpsError):
    type_name = "UnknownToolError"

    def __init__(self, tool: str) -> None:
        super().__init__(f"Unknown tool: {tool}")
        self.tool = tool


class ValidationError(MerchantOpsError):
    """Arguments do not satisfy a tool's parameter schema."""

    type_name = "ValidationError"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class ToolExecutionError(MerchantOpsError):
    """A tool handler failed while running."""

    type_name = "ToolExecutionError"

    def __init__(self, tool: str, message: str) -> None:
        super().__init__(message)
        self.tool = tool


class TransportError(MerchantOpsError):
    """The session or connection went away (disconnect, timeout or close)."""

    type_name = "TransportError"


class ModelUnavailableError(MerchantOpsError):
    type_name = "ModelUnavailableError"


class SafetyLimitExceeded(MerchantOpsError):
    """Iteration ceiling reached. Reported as an outcome, never raised to callers."""

    type_name = "SafetyLimitExceeded"
