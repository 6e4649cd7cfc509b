"""Orchestrator-side access to the tool host."""

from .connection import InProcessConnection, ServerConnection, SseServerConnection
from .manager import ConnectionManager, build_connection_factory

__all__ = [
    "ConnectionManager",
    "InProcessConnection",
    "ServerConnection",
    "SseServerConnection",
    "build_connection_factory",
]
