"""matlab-bridge - drive MATLAB from Python.

Two ways to run code:

- ``Matlab``: one-shot operations, each in a fresh ``-batch`` process
- ``MatlabSession``: one persistent interactive process with a FIFO
  command queue, per-command timeouts and cancellation

Environment variables (MCP server):
    MATLAB_BRIDGE_EXECUTABLE: engine command (default "matlab")
    MATLAB_BRIDGE_ENABLE / MATLAB_BRIDGE_DISABLE: tool families
    MATLAB_BRIDGE_LOG_DEBUG: write DEBUG logs to a temp file

Usage:
    python -m matlab_bridge
"""

__version__ = "0.1.0"

from .errors import (
    MatlabAbortError,
    MatlabError,
    MatlabErrorType,
    MatlabNotInstalledError,
    MatlabSessionClosedError,
    MatlabSessionStateError,
    MatlabStartupError,
    MatlabTimeoutError,
    classify_error,
    is_matlab_error,
)
from .matlab import Matlab
from .session import MatlabSession, create_session
from .types import (
    FigureOptions,
    ImageFormat,
    MatlabResult,
    RunOptions,
    SessionOptions,
    SessionState,
)

__all__ = [
    "__version__",
    "FigureOptions",
    "ImageFormat",
    "Matlab",
    "MatlabAbortError",
    "MatlabError",
    "MatlabErrorType",
    "MatlabNotInstalledError",
    "MatlabResult",
    "MatlabSession",
    "MatlabSessionClosedError",
    "MatlabSessionStateError",
    "MatlabStartupError",
    "MatlabTimeoutError",
    "RunOptions",
    "SessionOptions",
    "SessionState",
    "classify_error",
    "create_session",
    "is_matlab_error",
]
