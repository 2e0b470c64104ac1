"""Transports that carry commands into the assistant session."""

from autoresume.session.base import SessionError, SessionTransport
from autoresume.session.tmux import TmuxSessionTransport

__all__ = [
    "SessionError",
    "SessionTransport",
    "TmuxSessionTransport",
]
