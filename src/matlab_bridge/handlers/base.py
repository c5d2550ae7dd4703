"""Tool handler base classes.

Defines the handler protocol and the context passed to every call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mcp.types import TextContent

from ..tool_schema import TOOL_DESCRIPTIONS, create_tool_schema
from ..types import RunOptions

if TYPE_CHECKING:
    from ..config import Config
    from ..matlab import Matlab
    from ..orchestrator import RequestRegistry, SessionRegistry

__all__ = [
    "ToolContext",
    "ToolHandler",
]


@dataclass
class ToolContext:
    """Dependencies shared by tool handlers."""

    config: "Config"
    matlab: "Matlab"
    sessions: "SessionRegistry"
    registry: "RequestRegistry | None" = None

    def resolve_debug(self, arguments: dict[str, Any]) -> bool:
        if "debug" in arguments:
            return bool(arguments["debug"])
        return self.config.debug

    def resolve_timeout(self, arguments: dict[str, Any], default: int) -> int:
        value = arguments.get("timeout_ms")
        if value is None:
            return default
        return max(0, int(value))

    def run_options(self, arguments: dict[str, Any]) -> RunOptions:
        """RunOptions for a batch tool call."""
        return RunOptions(
            timeout_ms=self.resolve_timeout(arguments, self.config.batch_timeout_ms),
            cwd=arguments.get("cwd") or None,
            add_path=list(arguments.get("add_path") or []),
        )


class ToolHandler(ABC):
    """Tool handler protocol.

    Subclasses serve one tool each; ``name`` selects its description and
    input schema.
    """

    def __init__(self, tool_name: str):
        self._tool_name = tool_name

    @property
    def name(self) -> str:
        return self._tool_name

    @property
    def description(self) -> str:
        return TOOL_DESCRIPTIONS.get(self._tool_name, "")

    def get_input_schema(self) -> dict[str, Any]:
        return create_tool_schema(self._tool_name)

    @abstractmethod
    async def handle(
        self,
        arguments: dict[str, Any],
        ctx: ToolContext,
    ) -> list[TextContent]:
        """Serve one tool call.

        Args:
            arguments: Tool arguments
            ctx: Execution context

        Returns:
            TextContent list
        """
        ...

    def validate(self, arguments: dict[str, Any]) -> str | None:
        """Check required arguments.

        Returns:
            Error message, or None when the arguments are acceptable
        """
        schema = self.get_input_schema()
        for key in schema.get("required", []):
            value = arguments.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                return f"Missing required argument: '{key}'"
        return None
