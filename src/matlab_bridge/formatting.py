"""MCP response formatter.

XML-wrapped text, friendly to LLM clients.

Layout:
    - <answer>: engine output or decoded values
    - <warnings>: warnings collected from the run
    - <error>: failure message (with <error_type> when known)
    - <debug_info>: timing details (debug=True)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import MatlabError

if TYPE_CHECKING:
    from mcp.types import TextContent

__all__ = [
    "DebugInfo",
    "ResponseData",
    "ResponseFormatter",
    "format_error_response",
    "format_exception_response",
    "format_result_response",
    "format_value",
    "get_formatter",
]


@dataclass
class DebugInfo:
    """Timing details for a tool call."""

    duration_sec: float = 0.0
    exit_code: int | None = None
    session_id: str | None = None
    log_file: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"duration_sec": round(self.duration_sec, 3)}
        if self.exit_code is not None:
            data["exit_code"] = self.exit_code
        if self.session_id:
            data["session_id"] = self.session_id
        if self.log_file:
            data["log_file"] = self.log_file
        return data


@dataclass
class ResponseData:
    """Response payload."""

    answer: str
    session_id: str = ""
    warnings: list[str] = field(default_factory=list)
    debug_info: DebugInfo | None = None
    success: bool = True
    error: str | None = None
    error_type: str | None = None


class ResponseFormatter:
    """Formats ResponseData as XML-wrapped text.

    Example:
        >>> formatter = ResponseFormatter()
        >>> formatter.format(ResponseData(answer="7"))
        '<response>\\n  <answer>\\n7\\n  </answer>\\n</response>'
    """

    def format(self, data: ResponseData, *, debug: bool = False) -> str:
        if not data.success:
            return self._format_error(data, debug=debug)

        parts = ["<response>"]
        parts.append(self._format_answer(data.answer))
        if data.warnings:
            parts.append(self._format_warnings(data.warnings))
        if data.session_id:
            parts.append(f"  <session_id>{data.session_id}</session_id>")
        if debug and data.debug_info:
            parts.append(self._format_debug_info(data.debug_info))
        parts.append("</response>")
        return "\n".join(parts)

    def _format_answer(self, answer: str) -> str:
        return f"  <answer>\n{answer}\n  </answer>"

    def _format_warnings(self, warnings: list[str]) -> str:
        lines = ["  <warnings>"]
        for warning in warnings:
            lines.append(f"    <warning>{warning}</warning>")
        lines.append("  </warnings>")
        return "\n".join(lines)

    def _format_debug_info(self, debug_info: DebugInfo) -> str:
        lines = ["  <debug_info>"]
        for key, value in debug_info.to_dict().items():
            if key == "duration_sec":
                lines.append(f"    <duration_sec>{debug_info.duration_sec:.3f}</duration_sec>")
            else:
                lines.append(f"    <{key}>{value}</{key}>")
        lines.append("  </debug_info>")
        return "\n".join(lines)

    def _format_error(self, data: ResponseData, *, debug: bool = False) -> str:
        parts = ["<response>"]
        parts.append(f"  <error>{data.error or 'Unknown error'}</error>")
        if data.error_type:
            parts.append(f"  <error_type>{data.error_type}</error_type>")

        # Output produced before the failure
        if data.answer and data.answer.strip():
            parts.append(f"  <partial_answer>{data.answer}</partial_answer>")

        if data.session_id:
            parts.append(f"  <session_id>{data.session_id}</session_id>")
        if debug and data.debug_info:
            parts.append(self._format_debug_info(data.debug_info))
        parts.append("</response>")
        return "\n".join(parts)


_formatter: ResponseFormatter | None = None


def get_formatter() -> ResponseFormatter:
    global _formatter
    if _formatter is None:
        _formatter = ResponseFormatter()
    return _formatter


def format_value(value: Any) -> str:
    """Render a decoded value for an <answer> block."""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


def format_result_response(
    answer: Any,
    *,
    warnings: list[str] | None = None,
    session_id: str = "",
    debug_info: DebugInfo | None = None,
    debug: bool = False,
) -> list[TextContent]:
    from mcp.types import TextContent

    data = ResponseData(
        answer=format_value(answer),
        session_id=session_id,
        warnings=list(warnings or []),
        debug_info=debug_info,
    )
    return [TextContent(type="text", text=get_formatter().format(data, debug=debug))]


def format_error_response(error: str, *, error_type: str | None = None, session_id: str = "") -> list[TextContent]:
    """Uniform error response.

    Every failure is returned as <response><error>...</error></response>
    so clients can rely on a single contract.
    """
    from mcp.types import TextContent

    data = ResponseData(
        answer="",
        session_id=session_id,
        success=False,
        error=error,
        error_type=error_type,
    )
    return [TextContent(type="text", text=get_formatter().format(data))]


def format_exception_response(exc: Exception, *, session_id: str = "") -> list[TextContent]:
    """Error response for an exception, with the MATLAB error type when known."""
    if isinstance(exc, MatlabError):
        return format_error_response(
            exc.to_detailed_string(),
            error_type=exc.type.value,
            session_id=session_id,
        )
    return format_error_response(str(exc), session_id=session_id)
