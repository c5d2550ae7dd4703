"""MATLAB error taxonomy.

matlab-bridge errors v0.1.0

Every failure surfaced by this package is a ``MatlabError`` subclass, so
callers can catch the whole family at once or branch on the specific kind.
``classify_error`` maps raw engine output (usually stderr) onto the most
specific subclass by simple case-insensitive pattern matching.
"""

from __future__ import annotations

import re
from enum import Enum

__all__ = [
    "MatlabErrorType",
    "MatlabError",
    "MatlabNotInstalledError",
    "MatlabSpawnError",
    "MatlabStartupError",
    "MatlabSessionStateError",
    "MatlabSessionClosedError",
    "MatlabTimeoutError",
    "MatlabAbortError",
    "MatlabSyntaxError",
    "MatlabRuntimeError",
    "MatlabToolboxError",
    "MatlabFileNotFoundError",
    "MatlabMemoryError",
    "MatlabIndexError",
    "MatlabDimensionError",
    "MatlabPermissionError",
    "classify_error",
    "is_matlab_error",
]

_LINE_RE = re.compile(r"Error.*line\s+(\d+)", re.IGNORECASE)
_COLUMN_RE = re.compile(r"column\s+(\d+)", re.IGNORECASE)
_FILE_RE = re.compile(r"Error in\s+(\S+)")
_STACK_RE = re.compile(r"Error using[\s\S]*$")
_QUOTED_RE = re.compile(r"'([^']+)'")
_UNDEFINED_RE = re.compile(r"Undefined function or variable '(\w+)'", re.IGNORECASE)


class MatlabErrorType(str, Enum):
    """Category of a MATLAB failure."""

    SYNTAX = "syntax"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    NOT_INSTALLED = "not_installed"
    TOOLBOX_MISSING = "toolbox_missing"
    FILE_NOT_FOUND = "file_not_found"
    PERMISSION_DENIED = "permission_denied"
    OUT_OF_MEMORY = "out_of_memory"
    INDEX_ERROR = "index_error"
    DIMENSION_MISMATCH = "dimension_mismatch"
    ABORTED = "aborted"
    SESSION = "session"
    UNKNOWN = "unknown"


class MatlabError(Exception):
    """Base class for all MATLAB related errors.

    Attributes:
        message: Human readable message
        type: Error category
        matlab_stack: Raw engine output / stack trace, if any
        line_number: Line reported by the engine
        column_number: Column reported by the engine
        file: File reported by the engine
        suggestion: Hint for fixing the problem
        command: Command that triggered the error
        exit_code: Process exit code (batch mode only)
    """

    error_type = MatlabErrorType.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        type: MatlabErrorType | None = None,
        matlab_stack: str | None = None,
        line_number: int | None = None,
        column_number: int | None = None,
        file: str | None = None,
        suggestion: str | None = None,
        command: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.type = type or self.error_type
        self.matlab_stack = matlab_stack
        self.line_number = line_number
        self.column_number = column_number
        self.file = file
        self.suggestion = suggestion
        self.command = command
        self.exit_code = exit_code

    def to_detailed_string(self) -> str:
        """Format the message together with every known detail."""
        parts = [self.message]
        if self.file:
            parts.append(f"File: {self.file}")
        if self.line_number is not None:
            line = f"Line: {self.line_number}"
            if self.column_number is not None:
                line += f", Column: {self.column_number}"
            parts.append(line)
        if self.matlab_stack:
            parts.append(f"\nMATLAB Stack Trace:\n{self.matlab_stack}")
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "\n".join(parts)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(type={self.type.value}, message={self.message!r})"


class MatlabNotInstalledError(MatlabError):
    """The engine executable could not be resolved."""

    error_type = MatlabErrorType.NOT_INSTALLED

    def __init__(self, message: str = "MATLAB is not installed or not found in PATH") -> None:
        super().__init__(
            message,
            suggestion=(
                'Install MATLAB R2019a or later and ensure the "matlab" command '
                "is available in your PATH (or set MATLAB_BRIDGE_EXECUTABLE)."
            ),
        )


class MatlabSpawnError(MatlabError):
    """The operating system refused to start the engine process."""

    error_type = MatlabErrorType.SESSION


class MatlabStartupError(MatlabError):
    """An interactive session never became ready."""

    error_type = MatlabErrorType.SESSION


class MatlabSessionStateError(MatlabError):
    """An operation was attempted in a state that does not allow it."""

    error_type = MatlabErrorType.SESSION


class MatlabSessionClosedError(MatlabError):
    """The session was closed (or died) while the command was pending."""

    error_type = MatlabErrorType.SESSION

    def __init__(self, message: str = "Session closed", **details) -> None:
        super().__init__(message, **details)


class MatlabTimeoutError(MatlabError):
    """A command did not finish within its timeout.

    Attributes:
        timeout_ms: The configured timeout in milliseconds
    """

    error_type = MatlabErrorType.TIMEOUT

    def __init__(self, timeout_ms: int, message: str | None = None, **details) -> None:
        self.timeout_ms = timeout_ms
        details.setdefault(
            "suggestion",
            "Consider increasing the timeout value or optimizing your MATLAB code.",
        )
        super().__init__(
            message or f"MATLAB command timed out after {timeout_ms}ms",
            **details,
        )


class MatlabAbortError(MatlabError):
    """Execution was cancelled through a cancel signal."""

    error_type = MatlabErrorType.ABORTED

    def __init__(self, message: str = "MATLAB execution was aborted", **details) -> None:
        super().__init__(message, **details)


class MatlabSyntaxError(MatlabError):
    error_type = MatlabErrorType.SYNTAX

    @classmethod
    def from_output(cls, output: str) -> "MatlabSyntaxError":
        return cls(
            output,
            line_number=_match_int(_LINE_RE, output),
            column_number=_match_int(_COLUMN_RE, output),
            file=_match_group(_FILE_RE, output),
            matlab_stack=output,
        )


class MatlabRuntimeError(MatlabError):
    error_type = MatlabErrorType.RUNTIME

    @classmethod
    def from_output(cls, output: str) -> "MatlabRuntimeError":
        stack = _STACK_RE.search(output)
        return cls(
            output,
            line_number=_match_int(_LINE_RE, output),
            file=_match_group(_FILE_RE, output),
            matlab_stack=stack.group(0) if stack else None,
        )


class MatlabToolboxError(MatlabError):
    """A required toolbox (or its license) is missing.

    Attributes:
        toolbox_name: Name of the missing toolbox
    """

    error_type = MatlabErrorType.TOOLBOX_MISSING

    def __init__(self, toolbox_name: str, message: str | None = None) -> None:
        self.toolbox_name = toolbox_name
        super().__init__(
            message or f"Required MATLAB toolbox not installed: {toolbox_name}",
            suggestion=f'Install the "{toolbox_name}" from MATLAB Add-Ons or contact your administrator.',
        )


class MatlabFileNotFoundError(MatlabError):
    """A referenced script or data file does not exist.

    Attributes:
        file_path: Path that could not be found
    """

    error_type = MatlabErrorType.FILE_NOT_FOUND

    def __init__(self, file_path: str, message: str | None = None) -> None:
        self.file_path = file_path
        super().__init__(
            message or f"MATLAB file not found: {file_path}",
            file=file_path,
            suggestion="Check that the file exists and the path is correct.",
        )


class MatlabMemoryError(MatlabError):
    error_type = MatlabErrorType.OUT_OF_MEMORY

    def __init__(self, message: str | None = None, **details) -> None:
        details.setdefault(
            "suggestion",
            'Try reducing the size of your data, clearing unused variables with "clear", '
            "or increasing available memory.",
        )
        super().__init__(message or "MATLAB ran out of memory", **details)


class MatlabIndexError(MatlabError):
    error_type = MatlabErrorType.INDEX_ERROR

    def __init__(self, message: str | None = None, **details) -> None:
        details.setdefault(
            "suggestion",
            "Check that your array indices are within valid bounds. MATLAB uses 1-based indexing.",
        )
        super().__init__(message or "Array index out of bounds", **details)


class MatlabDimensionError(MatlabError):
    error_type = MatlabErrorType.DIMENSION_MISMATCH

    def __init__(self, message: str | None = None, **details) -> None:
        details.setdefault(
            "suggestion",
            "Check that your matrices have compatible dimensions for the operation. "
            "Use size() to inspect dimensions.",
        )
        super().__init__(message or "Matrix dimensions must agree", **details)


class MatlabPermissionError(MatlabError):
    error_type = MatlabErrorType.PERMISSION_DENIED

    def __init__(self, path: str | None = None, message: str | None = None) -> None:
        super().__init__(
            message or (f"Permission denied: {path}" if path else "Permission denied"),
            file=path,
            suggestion="Check file/folder permissions and ensure you have the necessary access rights.",
        )


def _match_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    return int(match.group(1)) if match else None


def _match_group(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    return match.group(1) if match else None


def _contains_any(text: str, needles: tuple[str, ...]) -> bool:
    return any(needle in text for needle in needles)


def classify_error(output: str) -> MatlabError:
    """Map raw engine error output onto the most specific error class.

    The checks run in a fixed order; the first matching category wins and
    anything unrecognised becomes a ``MatlabRuntimeError``.

    Args:
        output: Error text, usually the stderr of a failed command

    Returns:
        A ``MatlabError`` subclass instance (never raises)
    """
    lower = output.lower()

    if _contains_any(lower, ("syntax error", "parse error")):
        return MatlabSyntaxError.from_output(output)

    if _contains_any(lower, ("out of memory", "java.lang.outofmemoryerror", "not enough memory")):
        return MatlabMemoryError(output, matlab_stack=output)

    if _contains_any(lower, (
        "index exceeds",
        "index out of bounds",
        "array indices must be positive integers",
        "index must be a positive integer",
        "subscript indices must",
    )):
        return MatlabIndexError(output, matlab_stack=output)

    if _contains_any(lower, (
        "matrix dimensions must agree",
        "dimensions do not match",
        "inner matrix dimensions must agree",
        "dimensions must be consistent",
    )):
        return MatlabDimensionError(output, matlab_stack=output)

    if _contains_any(lower, ("permission denied", "access is denied", "cannot write to", "cannot read from")):
        return MatlabPermissionError(_match_group(_QUOTED_RE, output), output)

    if "undefined function or variable" in lower:
        name = _match_group(_UNDEFINED_RE, output)
        if name:
            return MatlabRuntimeError(
                f"Undefined function or variable: {name}",
                matlab_stack=output,
                suggestion="Check that the function name is correct and any required toolboxes are installed.",
            )

    if "license" in lower and "error" in lower:
        return MatlabToolboxError("Unknown", output)

    if _contains_any(lower, (
        "file not found",
        "does not exist",
        "unable to read file",
        "no such file or directory",
        "path not found",
        "directory not found",
    )):
        path = _match_group(_QUOTED_RE, output)
        if path:
            return MatlabFileNotFoundError(path, output)

    return MatlabRuntimeError.from_output(output)


def is_matlab_error(error: object) -> bool:
    """Check whether ``error`` belongs to this package's error family."""
    return isinstance(error, MatlabError)
