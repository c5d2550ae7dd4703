"""matlab-bridge environment configuration.

Environment variables:
    MATLAB_BRIDGE_EXECUTABLE: Engine command (default "matlab")
        - Split with shell rules, e.g. "/opt/matlab/bin/matlab -nojvm"

    MATLAB_BRIDGE_ENABLE: Enabled MCP tool families
        - Empty/unset = all (run, eval, variables, function, figure, info, session)
        - Comma separated, case insensitive, e.g. "run,session"

    MATLAB_BRIDGE_DISABLE: Tool families removed from the enabled set
        - Comma separated, case insensitive, e.g. "figure"

    MATLAB_BRIDGE_COMMAND_TIMEOUT_MS: Per-command session timeout
        - Default 30000, 0 = no timeout

    MATLAB_BRIDGE_BATCH_TIMEOUT_MS: Timeout for one-shot batch runs
        - Default 0 (no timeout)

    MATLAB_BRIDGE_STARTUP_TIMEOUT: Seconds to wait for an interactive prompt
        - Default 60

    MATLAB_BRIDGE_SHUTDOWN_GRACE: Seconds between "quit" and force kill
        - Default 5

    MATLAB_BRIDGE_INSTALL_CACHE_TTL: Seconds an installation check stays valid
        - Default 60

    MATLAB_BRIDGE_MAX_SESSIONS: Concurrent interactive sessions in the MCP server
        - Default 4

    MATLAB_BRIDGE_DEBUG: Debug mode
        - true/1/yes = responses include timing details

    MATLAB_BRIDGE_LOG_DEBUG: Log debug mode
        - true/1/yes = DEBUG logs written to a temp file instead of stderr
"""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "SUPPORTED_TOOLS"]

ENV_PREFIX = "MATLAB_BRIDGE_"

# MCP tool families
SUPPORTED_TOOLS = frozenset({"run", "eval", "variables", "function", "figure", "info", "session"})


def _env(name: str) -> str | None:
    return os.environ.get(ENV_PREFIX + name)


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment value."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_int(value: str | None, default: int, minimum: int = 0) -> int:
    if not value or not value.strip():
        return default
    try:
        return max(minimum, int(value))
    except ValueError:
        return default


def _parse_float(value: str | None, default: float, minimum: float = 0.0) -> float:
    if not value or not value.strip():
        return default
    try:
        return max(minimum, float(value))
    except ValueError:
        return default


def _parse_executable(value: str | None) -> list[str]:
    if not value or not value.strip():
        return ["matlab"]
    return shlex.split(value)


def _parse_tool_list(value: str | None) -> set[str]:
    """Parse a comma separated tool family list, dropping unknown names."""
    if not value or not value.strip():
        return set()

    tools = set()
    for item in value.split(","):
        tool = item.strip().lower()
        if tool and tool in SUPPORTED_TOOLS:
            tools.add(tool)

    return tools


def _compute_enabled_tools(enable: str | None, disable: str | None) -> set[str]:
    """Compute the final enabled set: ENABLE (or everything) minus DISABLE."""
    enabled = _parse_tool_list(enable)
    disabled = _parse_tool_list(disable)

    if not enabled:
        enabled = set(SUPPORTED_TOOLS)

    return enabled - disabled


@dataclass
class Config:
    """matlab-bridge configuration.

    Attributes:
        executable: Engine argv prefix
        tools: Enabled MCP tool families
        command_timeout_ms: Default per-command session timeout
        batch_timeout_ms: Default batch run timeout
        startup_timeout: Seconds to wait for the interactive prompt
        shutdown_grace: Seconds between "quit" and force kill
        install_cache_ttl: Installation check cache lifetime in seconds
        max_sessions: Session limit for the MCP server
        debug: Include timing details in MCP responses
        log_debug: Write DEBUG logs to a temp file
        log_file: Log file path (set when log_debug is on)
    """

    executable: list[str] = field(default_factory=lambda: ["matlab"])
    tools: set[str] = field(default_factory=lambda: set(SUPPORTED_TOOLS))
    command_timeout_ms: int = 30000
    batch_timeout_ms: int = 0
    startup_timeout: float = 60.0
    shutdown_grace: float = 5.0
    install_cache_ttl: float = 60.0
    max_sessions: int = 4
    debug: bool = False
    log_debug: bool = False
    log_file: str | None = None

    def is_tool_allowed(self, tool: str) -> bool:
        return tool.lower() in self.tools

    def __repr__(self) -> str:
        tools_str = ",".join(sorted(self.tools)) or "none"
        return (
            f"Config(executable={' '.join(self.executable)}, "
            f"tools={tools_str}, "
            f"command_timeout_ms={self.command_timeout_ms}, "
            f"batch_timeout_ms={self.batch_timeout_ms}, "
            f"startup_timeout={self.startup_timeout}, "
            f"shutdown_grace={self.shutdown_grace}, "
            f"max_sessions={self.max_sessions}, "
            f"debug={self.debug}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped log file path under the temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "matlab-bridge"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"matlab_bridge_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(_env("LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        executable=_parse_executable(_env("EXECUTABLE")),
        tools=_compute_enabled_tools(_env("ENABLE"), _env("DISABLE")),
        command_timeout_ms=_parse_int(_env("COMMAND_TIMEOUT_MS"), 30000),
        batch_timeout_ms=_parse_int(_env("BATCH_TIMEOUT_MS"), 0),
        startup_timeout=_parse_float(_env("STARTUP_TIMEOUT"), 60.0, minimum=0.1),
        shutdown_grace=_parse_float(_env("SHUTDOWN_GRACE"), 5.0),
        install_cache_ttl=_parse_float(_env("INSTALL_CACHE_TTL"), 60.0),
        max_sessions=_parse_int(_env("MAX_SESSIONS"), 4, minimum=1),
        debug=_parse_bool(_env("DEBUG"), default=False),
        log_debug=log_debug,
        log_file=log_file,
    )


# Lazily loaded global instance
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
