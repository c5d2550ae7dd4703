"""Session tool handlers.

Serves the matlab_session_* tools on top of the SessionRegistry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import anyio
from mcp.types import TextContent

from ..formatting import DebugInfo, format_error_response, format_exception_response, format_result_response
from .base import ToolContext, ToolHandler

__all__ = ["SessionHandler", "SESSION_TOOLS"]

logger = logging.getLogger(__name__)

SESSION_TOOLS = (
    "matlab_session_start",
    "matlab_session_run",
    "matlab_session_get_variable",
    "matlab_session_set_variable",
    "matlab_session_close",
    "matlab_session_list",
)


class SessionHandler(ToolHandler):
    """Handler for the persistent-session tools."""

    def __init__(self, tool_name: str):
        if tool_name not in SESSION_TOOLS:
            raise ValueError(f"Not a session tool: {tool_name}")
        super().__init__(tool_name)

    def validate(self, arguments: dict[str, Any]) -> str | None:
        if self.name == "matlab_session_set_variable" and "value" not in arguments:
            return "Missing required argument: 'value'"
        schema = self.get_input_schema()
        for key in schema.get("required", []):
            if key == "value":
                continue
            value = arguments.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                return f"Missing required argument: '{key}'"
        return None

    async def handle(
        self,
        arguments: dict[str, Any],
        ctx: ToolContext,
    ) -> list[TextContent]:
        error = self.validate(arguments)
        if error:
            return format_error_response(error)

        session_id = arguments.get("session_id", "") or ""
        debug_enabled = ctx.resolve_debug(arguments)
        started = time.monotonic()

        try:
            answer, warnings, session_id = await self._dispatch(arguments, ctx, session_id)

            debug_info = None
            if debug_enabled:
                debug_info = DebugInfo(
                    duration_sec=time.monotonic() - started,
                    session_id=session_id or None,
                    log_file=ctx.config.log_file if ctx.config.log_debug else None,
                )
            return format_result_response(
                answer,
                warnings=warnings,
                session_id=session_id,
                debug_info=debug_info,
                debug=debug_enabled,
            )

        except anyio.get_cancelled_exc_class() as e:
            logger.info(f"Tool '{self.name}' cancelled (type={type(e).__name__})")
            raise

        except asyncio.CancelledError:
            logger.info(f"Tool '{self.name}' cancelled via asyncio.CancelledError")
            raise

        except Exception as e:
            logger.error(f"Tool '{self.name}' error: {e!r}")
            return format_exception_response(e, session_id=session_id)

    async def _dispatch(
        self,
        arguments: dict[str, Any],
        ctx: ToolContext,
        session_id: str,
    ) -> tuple[Any, list[str], str]:
        """Run the tool; returns (answer, warnings, session_id)."""
        sessions = ctx.sessions

        if self.name == "matlab_session_start":
            overrides: dict[str, Any] = {}
            if arguments.get("cwd"):
                overrides["cwd"] = arguments["cwd"]
            if arguments.get("add_path"):
                overrides["add_path"] = list(arguments["add_path"])
            if arguments.get("timeout_ms") is not None:
                overrides["timeout_ms"] = max(0, int(arguments["timeout_ms"]))
            new_id = await sessions.create(ctx.matlab.session_options(**overrides))
            return f"Session started: {new_id}", [], new_id

        if self.name == "matlab_session_list":
            return [info.to_dict() for info in sessions.list_sessions()], [], ""

        if self.name == "matlab_session_close":
            closed = await sessions.close(session_id)
            if not closed:
                return f"Session not found: {session_id}", [], session_id
            return f"Session closed: {session_id}", [], session_id

        session = sessions.get(session_id)

        if self.name == "matlab_session_run":
            timeout_ms = arguments.get("timeout_ms")
            result = await session.run(
                arguments["code"],
                timeout_ms=None if timeout_ms is None else max(0, int(timeout_ms)),
            )
            return result.output, result.warnings, session_id

        if self.name == "matlab_session_get_variable":
            value = await session.get_variable(arguments["name"])
            return value, [], session_id

        await session.set_variable(arguments["name"], arguments["value"])
        return f"Variable '{arguments['name']}' set", [], session_id
