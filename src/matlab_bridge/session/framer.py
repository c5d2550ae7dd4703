"""Sentinel-based output framing for interactive sessions.

The engine's interactive mode writes plain text with no message
boundaries. After every command the session injects an instruction that
prints a completion sentinel; the framer accumulates stdout/stderr and
reports a boundary once the success sentinel shows up in stdout. The
error sentinel is never injected; when printed before the boundary it
marks the frame as failed. The success sentinel runs as its own
statement, so it follows even a failed command and always closes the
frame.

Limitation: detection is a plain substring search, so output that happens
to contain the sentinel ends the frame early. Sentinels carry a random
per-session suffix to make this practically impossible.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass

__all__ = [
    "SUCCESS_SENTINEL_BASE",
    "ERROR_SENTINEL_BASE",
    "Frame",
    "OutputFramer",
    "make_sentinels",
    "strip_prompts",
]

SUCCESS_SENTINEL_BASE = "__MATLAB_BRIDGE_CMD_COMPLETE"
ERROR_SENTINEL_BASE = "__MATLAB_BRIDGE_CMD_ERROR"

# One prompt per input line, so several can stack up at a line start
_PROMPT_RE = re.compile(r"^(?:>>[ \t]*)+", re.MULTILINE)
_PROMPT_TOKEN = r"(?:>>[ \t]*)*"


def make_sentinels(random_suffix: bool = True) -> tuple[str, str]:
    """Build the (success, error) sentinel pair for one session."""
    suffix = f"_{secrets.token_hex(6)}" if random_suffix else ""
    return (
        f"{SUCCESS_SENTINEL_BASE}{suffix}__",
        f"{ERROR_SENTINEL_BASE}{suffix}__",
    )


def strip_prompts(text: str) -> str:
    """Remove interpreter prompts (">> ", possibly repeated) at line starts."""
    return _PROMPT_RE.sub("", text)


@dataclass(frozen=True)
class Frame:
    """Output captured for one command.

    Attributes:
        output: User-visible stdout (sentinels and prompts removed, trimmed)
        stderr: Everything received on stderr during the command
        error_sentinel: The error sentinel was printed
    """

    output: str
    stderr: str
    error_sentinel: bool = False

    @property
    def failed(self) -> bool:
        """Error sentinel wins; otherwise stderr mentioning "error" fails."""
        if self.error_sentinel:
            return True
        return "error" in self.stderr.lower()

    @property
    def error_payload(self) -> str:
        """Text used to classify a failure: stderr if any, else stdout."""
        return self.stderr.strip() or self.output


class OutputFramer:
    """Accumulate stream text and detect command boundaries.

    Example:
        framer = OutputFramer(success, error)
        if framer.feed_stdout(chunk):
            frame = framer.take_frame()
    """

    def __init__(self, success_sentinel: str, error_sentinel: str) -> None:
        self.success_sentinel = success_sentinel
        self.error_sentinel = error_sentinel
        # The prompt echoed ahead of the sentinel statement goes with it
        self._sentinel_re = re.compile(
            _PROMPT_TOKEN + f"(?:{re.escape(success_sentinel)}|{re.escape(error_sentinel)})"
        )
        self._overlap = len(success_sentinel) - 1
        self._stdout = ""
        self._stderr = ""
        self._scan_from = 0
        self._boundary: str | None = None

    @property
    def boundary_reached(self) -> bool:
        return self._boundary is not None

    @property
    def stdout(self) -> str:
        return self._stdout

    @property
    def stderr(self) -> str:
        return self._stderr

    def feed_stdout(self, text: str) -> bool:
        """Append stdout text; True once a sentinel is in the buffer."""
        self._stdout += text
        if self._boundary is None:
            self._scan()
        return self._boundary is not None

    def feed_stderr(self, text: str) -> None:
        self._stderr += text

    def strip_sentinels(self, text: str) -> str:
        """Remove both sentinels and any prompts directly in front of them."""
        return self._sentinel_re.sub("", text)

    def _scan(self) -> None:
        # Only the new text plus enough overlap for a split sentinel
        window = self._stdout[self._scan_from:]
        if self.success_sentinel in window:
            self._boundary = self.success_sentinel
        else:
            self._scan_from = max(0, len(self._stdout) - self._overlap)

    def take_frame(self) -> Frame:
        """Build the frame for the finished command and reset the buffers.

        Text after the sentinel (the next prompt) is discarded.
        """
        stdout = self._stdout
        if self._boundary is not None:
            end = stdout.find(self._boundary) + len(self._boundary)
            stdout = stdout[:end]

        error_seen = self.error_sentinel in stdout
        output = strip_prompts(self.strip_sentinels(stdout)).strip()

        frame = Frame(output=output, stderr=self._stderr, error_sentinel=error_seen)
        self.reset()
        return frame

    def reset(self) -> None:
        self._stdout = ""
        self._stderr = ""
        self._scan_from = 0
        self._boundary = None
