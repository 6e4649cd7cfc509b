"""Tool host: authenticated event-stream sessions in front of the tool dispatcher."""

from .app import create_app
from .session import Session, SessionState
from .transport import SessionTransport

__all__ = [
    "Session",
    "SessionState",
    "SessionTransport",
    "create_app",
]
