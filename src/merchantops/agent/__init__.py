"""Agent package: the model collaborator and the bounded orchestration loop."""

from .loop import OrchestrationLoop
from .model import ModelClient, ModelResponse, ModelToolCall, OpenAIModelClient
from .schema import to_function_declaration, to_function_declarations

__all__ = [
    "ModelClient",
    "ModelResponse",
    "ModelToolCall",
    "OpenAIModelClient",
    "OrchestrationLoop",
    "to_function_declaration",
    "to_function_declarations",
]
