"""matlab-bridge MCP server.

Exposes one-shot MATLAB runs and persistent sessions as MCP tools.

Environment variables:
    MATLAB_BRIDGE_EXECUTABLE: engine command (default "matlab")
    MATLAB_BRIDGE_ENABLE: allowed tool families (empty = all)
    MATLAB_BRIDGE_DISABLE: blocked tool families
    MATLAB_BRIDGE_MAX_SESSIONS: session limit (default 4)

Usage:
    python -m matlab_bridge
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from .config import Config, get_config
from .formatting import format_error_response
from .handlers import ToolContext, create_handler
from .matlab import Matlab
from .orchestrator import RequestRegistry, SessionRegistry
from .tool_schema import TOOL_DESCRIPTIONS, TOOL_NAMES, create_tool_schema, tool_family

__all__ = ["create_server", "SERVER_NAME"]

logger = logging.getLogger(__name__)

SERVER_NAME = "matlab-bridge"


def _summarize_arguments(arguments: dict[str, Any]) -> str:
    return json.dumps(
        {k: v[:100] + "..." if isinstance(v, str) and len(v) > 100 else v for k, v in arguments.items()},
        ensure_ascii=False,
        default=str,
    )


def create_server(
    registry: RequestRegistry | None = None,
    sessions: SessionRegistry | None = None,
    matlab: Matlab | None = None,
    config: Config | None = None,
) -> Server:
    """Create the MCP Server instance.

    Args:
        registry: In-flight request registry (optional)
        sessions: Session registry (created from ``matlab`` when omitted)
        matlab: Facade used by the tools
        config: Configuration (defaults to the global config)
    """
    config = config or get_config()
    matlab = matlab or Matlab(config)
    if sessions is None:
        sessions = SessionRegistry(matlab, max_sessions=config.max_sessions)
    server = Server(SERVER_NAME)

    tool_ctx = ToolContext(
        config=config,
        matlab=matlab,
        sessions=sessions,
        registry=registry,
    )

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        tools = [
            Tool(
                name=name,
                description=TOOL_DESCRIPTIONS[name],
                inputSchema=create_tool_schema(name),
            )
            for name in TOOL_NAMES
            if config.is_tool_allowed(tool_family(name) or "")
        ]
        logger.debug(f"[MCP] list_tools returning {len(tools)} tools: {[t.name for t in tools]}")
        return tools

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        arguments = arguments or {}
        logger.debug(f"[MCP] call_tool request: tool={name} arguments={_summarize_arguments(arguments)}")

        family = tool_family(name)
        if family is None:
            return format_error_response(f"Unknown tool '{name}'")
        if not config.is_tool_allowed(family):
            return format_error_response(f"Tool '{name}' is not enabled")

        request_id = None
        if registry is not None:
            request_id = registry.generate_request_id()
            current_task = asyncio.current_task()
            if current_task:
                registry.register(request_id, name, current_task)
            else:
                logger.warning("No current_task, cannot register request")
                request_id = None

        try:
            handler = create_handler(name)
            return await handler.handle(arguments, tool_ctx)

        except asyncio.CancelledError:
            logger.info(f"Tool '{name}' cancelled")
            raise

        except Exception as e:
            logger.error(f"Tool '{name}' failed: type={type(e).__name__}, msg={e}")
            return format_error_response(str(e))

        finally:
            if registry and request_id:
                registry.unregister(request_id)

    return server
