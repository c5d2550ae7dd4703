"""One-shot batch execution.

matlab-bridge batch executor v0.1.0

Each call spawns the engine with ``-batch``, waits for it to exit and turns
the captured streams into a ``MatlabResult`` or a classified ``MatlabError``.

Key design points:
- A cancel signal that is already set rejects before anything is spawned
- Timeout and abort race the process; the loser path terminates the
  whole process group through ProcessRunner cleanup
- Success means exit code 0 and no "error" text on stderr
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import shutil
import tempfile
import time
from collections.abc import Mapping, Sequence
from pathlib import Path

from ..errors import (
    MatlabAbortError,
    MatlabNotInstalledError,
    MatlabSpawnError,
    MatlabTimeoutError,
    classify_error,
)
from ..types import MatlabResult, RunOptions
from .lines import LineSplitter, StreamDecoder
from .process_runner import ProcessResult, ProcessRunner, ProcessSpec

__all__ = [
    "BatchExecutor",
    "build_matlab_args",
    "build_command_args",
    "build_process_env",
    "create_temp_script",
    "cleanup_temp_script",
    "escape_matlab_string",
    "extract_warnings",
    "clean_output",
]

logger = logging.getLogger(__name__)

BASE_ARGS = ["-nosplash", "-nodesktop"]
TEMP_PREFIX = "matlab-bridge-"
TEMP_SCRIPT_NAME = "script.m"

_WARNING_PATTERNS = [
    re.compile(r"warning:", re.IGNORECASE),
    re.compile(r"deprecated", re.IGNORECASE),
    re.compile(r"will be removed", re.IGNORECASE),
    re.compile(r"obsolete", re.IGNORECASE),
    re.compile(r"not recommended", re.IGNORECASE),
    re.compile(r"^>\s*in\s+", re.IGNORECASE),
]

_ANS_HEADER_RE = re.compile(r"^ans\s*=\s*\n?\n?", re.MULTILINE)


def escape_matlab_string(value: str) -> str:
    """Escape text for a single-quoted MATLAB char literal."""
    return value.replace("'", "''")


def _add_path_prefix(add_path: Sequence[str]) -> str:
    if not add_path:
        return ""
    return " ".join(f"addpath('{escape_matlab_string(p)}');" for p in add_path) + " "


def build_command_args(command: str, add_path: Sequence[str] = ()) -> list[str]:
    """Engine arguments running ``command`` in batch mode."""
    return [*BASE_ARGS, "-batch", _add_path_prefix(add_path) + command]


def build_matlab_args(script_path: str | Path, add_path: Sequence[str] = ()) -> list[str]:
    """Engine arguments running a script file in batch mode.

    Example:
        >>> build_matlab_args("/tmp/it's.m")
        ['-nosplash', '-nodesktop', '-batch', "run('/tmp/it''s.m');"]
    """
    return build_command_args(f"run('{escape_matlab_string(str(script_path))}');", add_path)


def build_process_env(env: Mapping[str, str] | None) -> dict[str, str] | None:
    """Merge overrides over the current environment (None = inherit)."""
    if not env:
        return None
    return {**os.environ, **env}


def create_temp_script(content: str) -> Path:
    """Write ``content`` to a fresh temporary script file."""
    temp_dir = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX))
    script_path = temp_dir / TEMP_SCRIPT_NAME
    script_path.write_text(content, encoding="utf-8")
    return script_path


def cleanup_temp_script(script_path: str | Path) -> None:
    """Remove a script created by create_temp_script, ignoring failures."""
    script_path = Path(script_path)
    with contextlib.suppress(OSError):
        script_path.unlink()
    # The OS reclaims temp storage eventually
    shutil.rmtree(script_path.parent, ignore_errors=True)


def extract_warnings(output: str) -> list[str]:
    """Collect warning blocks from engine output.

    A block starts on a line matching one of the warning patterns and
    continues over context lines ("> In foo (line 3)" / "In foo ...").
    """
    warnings: list[str] = []
    current = ""
    in_block = False

    for raw_line in output.split("\n"):
        line = raw_line.strip()

        if in_block and current and (line.startswith(">") or line.startswith("In ")):
            current += f"\n{line}"
            continue

        if any(pattern.search(line) for pattern in _WARNING_PATTERNS):
            if current:
                warnings.append(current.strip())
            current = line
            in_block = True
        elif in_block:
            if current:
                warnings.append(current.strip())
            current = ""
            in_block = False

    if current:
        warnings.append(current.strip())

    return warnings


def clean_output(output: str) -> str:
    """Drop the "ans =" header and surrounding blank lines."""
    cleaned = _ANS_HEADER_RE.sub("", output, count=1)
    return cleaned.strip()


class BatchExecutor:
    """Run engine scripts and commands one process per call.

    Example:
        executor = BatchExecutor(["matlab"])
        result = await executor.execute_command("disp(pi)", RunOptions(timeout_ms=60000))
    """

    def __init__(
        self,
        executable: Sequence[str] = ("matlab",),
        runner: ProcessRunner | None = None,
    ) -> None:
        self._executable = list(executable)
        self._runner = runner or ProcessRunner()

    @property
    def executable(self) -> list[str]:
        return list(self._executable)

    async def execute_script(
        self,
        script_path: str | Path,
        options: RunOptions | None = None,
    ) -> MatlabResult:
        """Run a script file and wait for the engine to exit."""
        options = options or RunOptions()
        args = build_matlab_args(script_path, options.add_path)
        return await self._execute(args, options, command=f"run('{script_path}')")

    async def execute_command(
        self,
        command: str,
        options: RunOptions | None = None,
    ) -> MatlabResult:
        """Run a single command string and wait for the engine to exit."""
        options = options or RunOptions()
        args = build_command_args(command, options.add_path)
        return await self._execute(args, options, command=command)

    async def _execute(
        self,
        args: list[str],
        options: RunOptions,
        command: str,
    ) -> MatlabResult:
        cancel_signal = options.cancel_signal
        if cancel_signal is not None and cancel_signal.is_set():
            raise MatlabAbortError(command=command)

        spec = ProcessSpec(
            argv=[*self._executable, *args],
            cwd=Path(options.cwd) if options.cwd else None,
            env=build_process_env(options.env),
        )

        started = time.monotonic()
        result = await self._run_bounded(spec, options, command)
        duration_ms = (time.monotonic() - started) * 1000

        stdout = result.stdout_text
        stderr = result.stderr_text

        if result.returncode != 0 or "error" in stderr.lower():
            error = classify_error(stderr or stdout)
            error.exit_code = result.returncode
            error.command = command
            logger.debug(
                f"Batch command failed returncode={result.returncode} "
                f"error={type(error).__name__}"
            )
            raise error

        return MatlabResult(
            output=clean_output(stdout.strip()),
            exit_code=result.returncode,
            duration_ms=duration_ms,
            warnings=extract_warnings(stderr + stdout),
        )

    async def _run_bounded(
        self,
        spec: ProcessSpec,
        options: RunOptions,
        command: str,
    ) -> ProcessResult:
        """Run the process, racing it against the timeout and cancel signal."""
        forwarder = _ProgressForwarder(options.on_progress) if options.on_progress else None

        collect_task = asyncio.create_task(self._runner.collect(spec, on_stdout=forwarder))
        abort_task: asyncio.Future | None = None
        waiters: set[asyncio.Future] = {collect_task}
        if options.cancel_signal is not None:
            abort_task = asyncio.ensure_future(options.cancel_signal.wait())
            waiters.add(abort_task)

        timeout = options.timeout_ms / 1000 if options.timeout_ms > 0 else None

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if abort_task is not None:
                abort_task.cancel()
            if not collect_task.done():
                # ProcessRunner cleanup terminates the process group
                collect_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await collect_task

        if abort_task is not None and abort_task in done:
            logger.debug(f"Batch command aborted: {command[:80]}")
            raise MatlabAbortError(command=command)

        if collect_task not in done:
            logger.debug(f"Batch command timed out after {options.timeout_ms}ms")
            raise MatlabTimeoutError(options.timeout_ms, command=command)

        try:
            result = collect_task.result()
        except FileNotFoundError as e:
            if e.filename in (None, spec.argv[0]):
                raise MatlabNotInstalledError(
                    f"MATLAB executable not found: {spec.argv[0]}"
                ) from e
            raise MatlabSpawnError(f"Failed to start MATLAB process: {e}") from e
        except OSError as e:
            raise MatlabSpawnError(f"Failed to start MATLAB process: {e}") from e

        if forwarder is not None:
            forwarder.flush()
        return result


class _ProgressForwarder:
    """on_stdout callback reporting complete non-empty lines."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._decoder = StreamDecoder()
        self._splitter = LineSplitter()

    def __call__(self, chunk: bytes) -> None:
        self._emit(self._splitter.feed(self._decoder.decode(chunk)))

    def flush(self) -> None:
        self._emit(self._splitter.feed(self._decoder.flush()))
        self._emit(self._splitter.flush())

    def _emit(self, lines: list[str]) -> None:
        for line in lines:
            if line.strip():
                self._callback(line)
