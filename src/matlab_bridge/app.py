"""matlab-bridge application entry.

Server lifecycle and the console entry point.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from mcp.server.stdio import stdio_server

from .config import get_config
from .matlab import Matlab
from .orchestrator import RequestRegistry, SessionRegistry
from .server import create_server

__all__ = ["run_server", "main"]

logger = logging.getLogger(__name__)


async def run_server() -> None:
    """Run the MCP server over stdio until the client disconnects.

    Open sessions are closed and in-flight requests cancelled on the way
    out, so no engine process outlives the server.
    """
    config = get_config()
    logger.info(f"Starting matlab-bridge MCP server: {config}")

    registry = RequestRegistry()
    matlab = Matlab(config)
    sessions = SessionRegistry(matlab, max_sessions=config.max_sessions)
    server = create_server(registry, sessions, matlab, config)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
        logger.debug("MCP server completed normally")

    except asyncio.CancelledError:
        logger.info("run_server: cancelled")
        raise

    finally:
        cancelled = registry.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} in-flight request(s)")
        closed = await asyncio.shield(sessions.close_all())
        if closed:
            logger.info(f"Closed {closed} session(s)")
        logger.info("run_server: cleanup completed")


def main() -> None:
    """Console entry point."""
    config = get_config()

    log_handlers: list[logging.Handler] = []
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        # LOG_DEBUG: write to the temp log file
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # stdout carries the MCP protocol; logs go to stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # Third-party libraries at WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    logging.getLogger("matlab_bridge").setLevel(log_level)

    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
