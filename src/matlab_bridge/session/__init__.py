"""Interactive session: process supervision, command queue and framing."""

from __future__ import annotations

from .commands import CommandQueue, PendingCommand
from .framer import Frame, OutputFramer, make_sentinels
from .session import MatlabSession, create_session

__all__ = [
    "CommandQueue",
    "Frame",
    "MatlabSession",
    "OutputFramer",
    "PendingCommand",
    "create_session",
    "make_sentinels",
]
