import logging
from typing import Any, Callable, Dict, List

from ..models import Resource, ToolDescriptor

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Name to descriptor map for tools, plus URI to reader map for resources.

    Populated once at startup and then frozen; lookups afterwards are
    read-only and safe to share between sessions.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}
        self._resources: Dict[str, Resource] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Reject any further registration."""
        self._frozen = True

    def _check_open(self) -> None:
        if self._frozen:
            raise RuntimeError("Registry is frozen; register tools at startup only")

    def register(self, descriptor: ToolDescriptor) -> None:
        """Register a tool descriptor. Names must be unique."""
        self._check_open()
        if descriptor.name in self._tools:
            raise ValueError(f"Tool '{descriptor.name}' is already registered")
        self._tools[descriptor.name] = descriptor
        logger.debug("Registered tool: %s", descriptor.name)

    def register_resource(
        self,
        uri: str,
        description: str,
        reader: Callable[[Dict[str, Any]], Any],
    ) -> None:
        self._check_open()
        if uri in self._resources:
            raise ValueError(f"Resource '{uri}' is already registered")
        self._resources[uri] = Resource(uri=uri, description=description, reader=reader)
        logger.debug("Registered resource: %s", uri)

    def lookup(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def lookup_resource(self, uri: str) -> Resource | None:
        return self._resources.get(uri)

    def list(self) -> List[ToolDescriptor]:
        """All tool descriptors in registration order."""
        return list(self._tools.values())

    def list_resources(self) -> List[Resource]:
        return list(self._resources.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
