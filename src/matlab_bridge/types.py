"""Shared data types.

matlab-bridge types v0.1.0

Options, results and state enums used by the batch executor, the
interactive session and the MCP layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

__all__ = [
    "JSON_START_MARKER",
    "JSON_END_MARKER",
    "MIN_MATLAB_VERSION",
    "CancelSignal",
    "ProgressCallback",
    "SessionState",
    "ImageFormat",
    "LiveScriptFormat",
    "MatlabDataType",
    "RunOptions",
    "SessionOptions",
    "MatlabResult",
    "MatlabVersion",
    "Toolbox",
    "VariableInfo",
    "FigureOptions",
    "CSVExportOptions",
    "MATFileOptions",
    "LiveScriptExportOptions",
    "FunctionCallResult",
]

# Markers framing a JSON payload printed by the engine in one fprintf call
JSON_START_MARKER = "__MATLAB_BRIDGE_JSON_START__"
JSON_END_MARKER = "__MATLAB_BRIDGE_JSON_END__"

# R2019a, the first release with a usable -batch flag
MIN_MATLAB_VERSION = 9.06

ProgressCallback = Callable[[str], None]


@runtime_checkable
class CancelSignal(Protocol):
    """Anything that can report and await cancellation.

    ``asyncio.Event`` and ``anyio.Event`` both satisfy this protocol.
    """

    def is_set(self) -> bool: ...

    def wait(self) -> Awaitable[Any]: ...


class SessionState(str, Enum):
    """Lifecycle state of an interactive session.

    NEW -> STARTING -> READY <-> BUSY -> CLOSED | ERROR
    """

    NEW = "new"
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    CLOSED = "closed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.ERROR)


class ImageFormat(str, Enum):
    PNG = "png"
    SVG = "svg"
    PDF = "pdf"
    EPS = "eps"
    JPG = "jpg"
    FIG = "fig"


class LiveScriptFormat(str, Enum):
    HTML = "html"
    PDF = "pdf"
    LATEX = "latex"
    DOCX = "docx"
    M = "m"


class MatlabDataType(str, Enum):
    DOUBLE = "double"
    SINGLE = "single"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    LOGICAL = "logical"
    CHAR = "char"
    STRING = "string"
    CELL = "cell"
    STRUCT = "struct"
    TABLE = "table"
    DATETIME = "datetime"
    DURATION = "duration"
    CATEGORICAL = "categorical"
    FUNCTION_HANDLE = "function_handle"
    UNKNOWN = "unknown"


@dataclass
class RunOptions:
    """Options for a one-shot batch execution.

    Attributes:
        timeout_ms: Kill the process after this many milliseconds (0 = no limit)
        cwd: Working directory of the engine process
        add_path: Directories added to the engine search path first
        on_progress: Called once per non-empty output line
        cancel_signal: Aborts the run when set
        env: Environment overrides merged over the current environment
    """

    timeout_ms: int = 0
    cwd: str | Path | None = None
    add_path: list[str] = field(default_factory=list)
    on_progress: ProgressCallback | None = None
    cancel_signal: CancelSignal | None = None
    env: Mapping[str, str] | None = None


@dataclass
class SessionOptions:
    """Options for an interactive session.

    Attributes:
        executable: Engine argv prefix (None = configured executable)
        timeout_ms: Per-command timeout in milliseconds (0 = no limit)
        cwd: Working directory of the engine process
        add_path: Directories added to the search path once ready
        keep_alive: False closes the session as soon as its queue drains
        env: Environment overrides merged over the current environment
        startup_timeout: Seconds to wait for the first prompt
        shutdown_grace: Seconds to wait after "quit" before force-killing
        stderr_settle: Seconds to keep collecting stderr after a sentinel
        ready_pattern: Substring of early stdout that signals readiness
        cancel_signal: Session-wide cancel signal, aborts everything when set
        random_sentinel: Append a random per-session suffix to sentinels
    """

    executable: list[str] | None = None
    timeout_ms: int = 30000
    cwd: str | Path | None = None
    add_path: list[str] = field(default_factory=list)
    keep_alive: bool = True
    env: Mapping[str, str] | None = None
    startup_timeout: float = 60.0
    shutdown_grace: float = 5.0
    stderr_settle: float = 0.05
    ready_pattern: str = ">>"
    cancel_signal: CancelSignal | None = None
    random_sentinel: bool = True

    def __post_init__(self) -> None:
        if self.timeout_ms < 0:
            raise ValueError("timeout_ms must be >= 0")
        if self.startup_timeout <= 0:
            raise ValueError("startup_timeout must be > 0")


@dataclass
class MatlabResult:
    """Outcome of a successful execution.

    Attributes:
        output: Captured standard output (markers and prompts stripped)
        exit_code: 0 on success
        duration_ms: Wall clock time in milliseconds
        warnings: Warning lines found in the output
    """

    output: str
    exit_code: int = 0
    duration_ms: float = 0.0
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class MatlabVersion:
    """Engine version, e.g. version="9.14", release="R2023a"."""

    version: str
    release: str
    full: str | None = None


@dataclass(frozen=True)
class Toolbox:
    name: str
    version: str
    product_id: str | None = None


@dataclass
class VariableInfo:
    name: str
    size: list[int]
    type: MatlabDataType
    bytes: int | None = None
    complex: bool = False
    sparse: bool = False


@dataclass
class FigureOptions:
    """Figure export options.

    Attributes:
        format: Output image format
        resolution: DPI for raster formats
        width: Figure width in pixels
        height: Figure height in pixels
        background_color: white, transparent or none
        content_type: auto, vector or image (vector formats only)
    """

    format: ImageFormat = ImageFormat.PNG
    resolution: int = 300
    width: int = 800
    height: int = 600
    background_color: str = "white"
    content_type: str = "auto"

    def __post_init__(self) -> None:
        self.format = ImageFormat(self.format)


@dataclass
class CSVExportOptions:
    delimiter: str = ","
    write_header: bool = False
    encoding: str = "UTF-8"
    quote_char: str = '"'


@dataclass
class MATFileOptions:
    version: str = "-v7.3"
    compress: bool = True

    def __post_init__(self) -> None:
        if self.version not in ("-v7.3", "-v7", "-v6", "-v4"):
            raise ValueError(f"Unsupported MAT-file version: {self.version}")


@dataclass
class LiveScriptExportOptions:
    format: LiveScriptFormat = LiveScriptFormat.HTML
    run: bool = False
    include_code: bool = True
    include_output: bool = True
    figure_format: str = "png"

    def __post_init__(self) -> None:
        self.format = LiveScriptFormat(self.format)


@dataclass
class FunctionCallResult:
    outputs: list[Any]
    duration_ms: float = 0.0
    warnings: list[str] = field(default_factory=list)
