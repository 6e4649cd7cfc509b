from typing import Any, Dict, List

from ..models import ToolDescriptor


def to_function_declaration(descriptor: ToolDescriptor) -> Dict[str, Any]:
    """Convert a tool descriptor to OpenAI function format.

    Returns:
        Dict[str, Any]: ``{"type": "function", "function": {...}}`` with a
            JSON-schema ``parameters`` object.
    """
    return {
        "type": "function",
        "function": {
            "name": descriptor.name,
            "description": descriptor.description,
            "parameters": descriptor.input_schema(),
        },
    }


def to_function_declarations(descriptors: List[ToolDescriptor]) -> List[Dict[str, Any]]:
    return [to_function_declaration(d) for d in descriptors]
