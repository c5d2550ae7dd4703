"""Tool handlers.

Handler protocol plus the one-shot and session tool implementations.
"""

from .base import ToolContext, ToolHandler
from .batch import BATCH_TOOLS, BatchHandler
from .session import SESSION_TOOLS, SessionHandler

__all__ = [
    "BATCH_TOOLS",
    "SESSION_TOOLS",
    "BatchHandler",
    "SessionHandler",
    "ToolContext",
    "ToolHandler",
    "create_handler",
]


def create_handler(tool_name: str) -> ToolHandler:
    """Return the handler serving ``tool_name``.

    Raises:
        ValueError: If the tool is unknown
    """
    if tool_name in BATCH_TOOLS:
        return BatchHandler(tool_name)
    if tool_name in SESSION_TOOLS:
        return SessionHandler(tool_name)
    raise ValueError(f"Unknown tool: {tool_name}")
