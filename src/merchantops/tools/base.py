from typing import Any, Tuple

from ..models import ToolDescriptor, ToolParameter


class Tool:
    """Base class for stateless tool handlers.

    The dispatcher builds a new instance for every invocation and calls
    ``call`` with validated keyword arguments, so subclasses must not keep
    state between calls. ``call`` may be a plain or an ``async`` method.
    """

    name: str = ""
    description: str = ""
    parameters: Tuple[ToolParameter, ...] = ()

    def call(self, **arguments: Any) -> Any:
        raise NotImplementedError

    @classmethod
    def descriptor(cls) -> ToolDescriptor:
        if not cls.name:
            raise ValueError(f"{cls.__name__} does not define a tool name")
        return ToolDescriptor(
            name=cls.name,
            description=cls.description,
            parameters=tuple(cls.parameters),
            handler=cls,
        )
