"""One-shot tool handlers.

Serves matlab_run, matlab_eval, matlab_get_variables,
matlab_call_function, matlab_save_figure and matlab_info. Each call runs
in a fresh batch process through the Matlab facade.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import anyio
from mcp.types import TextContent

from ..formatting import DebugInfo, format_error_response, format_exception_response, format_result_response
from ..types import FigureOptions, MatlabResult
from .base import ToolContext, ToolHandler

__all__ = ["BatchHandler", "BATCH_TOOLS"]

logger = logging.getLogger(__name__)

BATCH_TOOLS = (
    "matlab_run",
    "matlab_eval",
    "matlab_get_variables",
    "matlab_call_function",
    "matlab_save_figure",
    "matlab_info",
)


class BatchHandler(ToolHandler):
    """Handler for the one-shot tools."""

    def __init__(self, tool_name: str):
        if tool_name not in BATCH_TOOLS:
            raise ValueError(f"Not a batch tool: {tool_name}")
        super().__init__(tool_name)

    def validate(self, arguments: dict[str, Any]) -> str | None:
        error = super().validate(arguments)
        if error:
            return error
        if self.name == "matlab_get_variables":
            variables = arguments.get("variables")
            if not isinstance(variables, list) or not variables:
                return "Argument 'variables' must be a non-empty list"
        if self.name == "matlab_call_function":
            args = arguments.get("args", [])
            if not isinstance(args, list):
                return "Argument 'args' must be a list"
        return None

    async def handle(
        self,
        arguments: dict[str, Any],
        ctx: ToolContext,
    ) -> list[TextContent]:
        error = self.validate(arguments)
        if error:
            return format_error_response(error)

        debug_enabled = ctx.resolve_debug(arguments)
        started = time.monotonic()

        try:
            answer, warnings, exit_code = await self._dispatch(arguments, ctx)

            debug_info = None
            if debug_enabled:
                debug_info = DebugInfo(
                    duration_sec=time.monotonic() - started,
                    exit_code=exit_code,
                    log_file=ctx.config.log_file if ctx.config.log_debug else None,
                )
            logger.debug(f"[MCP] {self.name} completed in {time.monotonic() - started:.3f}s")
            return format_result_response(
                answer,
                warnings=warnings,
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
            return format_exception_response(e)

    async def _dispatch(
        self,
        arguments: dict[str, Any],
        ctx: ToolContext,
    ) -> tuple[Any, list[str], int | None]:
        """Run the tool; returns (answer, warnings, exit_code)."""
        matlab = ctx.matlab
        options = ctx.run_options(arguments)

        if self.name == "matlab_run":
            result: MatlabResult = await matlab.run(arguments["code"], options)
            return result.output, result.warnings, result.exit_code

        if self.name == "matlab_eval":
            output = await matlab.eval(arguments["expression"], options)
            return output, [], None

        if self.name == "matlab_get_variables":
            values = await matlab.get_variables(arguments["code"], arguments["variables"], options)
            return values, [], None

        if self.name == "matlab_call_function":
            call = await matlab.call_function(
                arguments["function"],
                arguments.get("args") or [],
                nargout=int(arguments.get("nargout", 1)),
                options=options,
            )
            return call.outputs, call.warnings, None

        if self.name == "matlab_save_figure":
            figure_options = FigureOptions(
                format=arguments.get("format", "png"),
                resolution=int(arguments.get("resolution", 300)),
                width=int(arguments.get("width", 800)),
                height=int(arguments.get("height", 600)),
            )
            path = await matlab.save_figure(
                arguments["code"],
                arguments["output_path"],
                figure_options,
                options,
            )
            return str(path), [], None

        return await self._info(arguments, ctx), [], None

    async def _info(self, arguments: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        matlab = ctx.matlab
        info: dict[str, Any] = {
            "installed": matlab.is_installed(),
            "path": matlab.probe.matlab_path(),
        }
        if not info["installed"]:
            return info

        version = await matlab.get_version()
        info["version"] = version.version
        info["release"] = version.release

        if arguments.get("include_toolboxes"):
            toolboxes = await matlab.get_installed_toolboxes()
            info["toolboxes"] = [
                {"name": tb.name, "version": tb.version, "product_id": tb.product_id}
                for tb in toolboxes
            ]
        return info
