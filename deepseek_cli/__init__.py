"""Command-line chat client with a tool-calling loop."""

from .session import Result, Session

__all__ = ["Result", "Session"]
