"""Tool host building blocks: the registry, the dispatcher and the built-in tools."""

from typing import Any, Dict, Iterable, Type

from .base import Tool
from .customer_context import AggregateCustomerContext
from .dispatcher import ToolDispatcher
from .refunds import RefundOrder
from .registry import ToolRegistry

CATALOG_URI = "merchantops://tools"
SERVER_INFO_URI = "merchantops://server"

BUILTIN_TOOLS = (AggregateCustomerContext, RefundOrder)


def build_registry(
    server_name: str = "",
    server_version: str = "",
    tools: Iterable[Type[Tool]] = BUILTIN_TOOLS,
) -> ToolRegistry:
    """Register tools and the catalog and server resources, then freeze the registry."""
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool.descriptor())

    def read_catalog(_: Dict[str, Any]) -> list:
        return [descriptor.to_dict() for descriptor in registry.list()]

    def read_server_info(_: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "server": server_name,
            "version": server_version,
            "toolCount": len(registry),
            "resources": [r.uri for r in registry.list_resources()],
        }

    registry.register_resource(CATALOG_URI, "Catalog of available tools", read_catalog)
    registry.register_resource(SERVER_INFO_URI, "Tool host name and version", read_server_info)
    registry.freeze()
    return registry


__all__ = [
    "AggregateCustomerContext",
    "BUILTIN_TOOLS",
    "CATALOG_URI",
    "RefundOrder",
    "SERVER_INFO_URI",
    "Tool",
    "ToolDispatcher",
    "ToolRegistry",
    "build_registry",
]
