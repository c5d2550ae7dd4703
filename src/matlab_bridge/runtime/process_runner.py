"""Process runner with subprocess isolation and reliable termination.

matlab-bridge runtime module v0.1.0

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Reliable termination with graceful shutdown (SIGTERM -> timeout -> SIGKILL)
- Run-to-completion collection of stdout/stderr for batch runs
- Long-lived interactive processes with piped stdin for sessions
- Cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Cancellation terminates the process group, not just the main process
  (the engine launcher forks helpers that must die with it)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

__all__ = [
    "ProcessResult",
    "ProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

READ_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process (None = inherit)
        env: Environment variables (None = inherit parent)
    """

    argv: list[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None


@dataclass(frozen=True)
class ProcessResult:
    """Collected output of a finished subprocess."""

    stdout: bytes
    stderr: bytes
    returncode: int

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


@dataclass
class ProcessRunner:
    """Cross-platform process runner with isolation and reliable termination.

    This class manages subprocess execution with:
    - Process group/session isolation to prevent SIGINT propagation
    - Graceful termination (SIGTERM -> timeout -> SIGKILL)
    - Stderr draining to prevent deadlocks
    - Cancel-safe cleanup

    Example:
        runner = ProcessRunner()
        spec = ProcessSpec(argv=["matlab", "-batch", "disp(1)"])

        result = await runner.collect(spec, on_stdout=print_chunk)
        print(result.returncode, result.stdout_text)

        # Interactive: caller owns the pipes and must terminate()
        process = await runner.spawn(spec, interactive=True)
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def spawn(
        self,
        spec: ProcessSpec,
        *,
        interactive: bool = False,
    ) -> asyncio.subprocess.Process:
        """Start a subprocess in an isolated process group/session.

        Args:
            spec: Process specification
            interactive: Keep stdin open as a pipe for the caller to write to

        Returns:
            The running process (stdout/stderr are pipes)

        Raises:
            OSError: If the executable cannot be started
        """
        kwargs = self._build_subprocess_kwargs(spec)

        # stdin=None would inherit the parent's stdin, which is the MCP
        # JSON-RPC channel when running as a server.
        stdin = asyncio.subprocess.PIPE if interactive else asyncio.subprocess.DEVNULL

        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=spec.cwd,
            **kwargs,
        )

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd}"
        )

        return process

    async def collect(
        self,
        spec: ProcessSpec,
        *,
        on_stdout: Callable[[bytes], None] | None = None,
    ) -> ProcessResult:
        """Run a subprocess to completion and collect its output.

        This method:
        1. Starts the subprocess in an isolated process group/session
        2. Reads stdout chunks (forwarding each to on_stdout)
        3. Drains stderr concurrently
        4. Ensures the process group is terminated if cancelled

        Args:
            spec: Process specification
            on_stdout: Optional callback for stdout chunks

        Returns:
            ProcessResult with both streams and the exit code
        """
        process: asyncio.subprocess.Process | None = None
        stderr_task: asyncio.Task[list[bytes]] | None = None
        stdout_chunks: list[bytes] = []

        try:
            process = await self.spawn(spec)

            stderr_task = asyncio.create_task(self._drain_stderr(process))

            if process.stdout:
                while True:
                    chunk = await process.stdout.read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    stdout_chunks.append(chunk)
                    if on_stdout:
                        on_stdout(chunk)

            stderr_chunks = await stderr_task
            returncode = await process.wait()

            logger.debug(
                f"Subprocess completed pid={process.pid} "
                f"returncode={returncode}"
            )

            return ProcessResult(
                stdout=b"".join(stdout_chunks),
                stderr=b"".join(stderr_chunks),
                returncode=returncode,
            )

        finally:
            # Ensure cleanup with shield to prevent cancel interruption
            await self._safe_cleanup(process, stderr_task)

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate a process started with spawn(). Never raises."""
        if process.returncode is None:
            await self._terminate_process(process)

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs

    async def _drain_stderr(
        self,
        process: asyncio.subprocess.Process,
    ) -> list[bytes]:
        """Drain stderr to prevent buffer deadlock; returns every chunk."""
        chunks: list[bytes] = []

        if process.stderr:
            while True:
                chunk = await process.stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)

        return chunks

    async def _safe_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        stderr_task: asyncio.Task[list[bytes]] | None,
    ) -> None:
        """Cleanup subprocess and tasks, shielded from cancellation."""
        try:
            await asyncio.shield(self._do_cleanup(process, stderr_task))
        except asyncio.CancelledError:
            # If shield itself is cancelled, still try cleanup
            await self._do_cleanup(process, stderr_task)
            raise

    async def _do_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        stderr_task: asyncio.Task[list[bytes]] | None,
    ) -> None:
        # Terminate first so the stderr pipe reaches EOF
        if process is not None and process.returncode is None:
            await self._terminate_process(process)

        if stderr_task and not stderr_task.done():
            stderr_task.cancel()
            try:
                await stderr_task
            except asyncio.CancelledError:
                pass

    async def _terminate_process(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit

        Args:
            process: The subprocess to terminate
        """
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            if IS_WINDOWS:
                await self._windows_terminate(process)
            else:
                await self._posix_terminate(process)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                await self._windows_kill(process)
            else:
                await self._posix_kill(process)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Subprocess did not exit after kill pid={pid}"
                )

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    async def _posix_terminate(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Send SIGTERM to the process group on POSIX systems."""
        try:
            # pgid == pid because of start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signal.SIGTERM)
            logger.debug(f"Sent SIGTERM to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to terminate: {e}")
            process.terminate()

    async def _posix_kill(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Send SIGKILL to the process group on POSIX systems."""
        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            process.kill()

    async def _windows_terminate(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Send CTRL_BREAK_EVENT on Windows."""
        try:
            # Works because of CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()

    async def _windows_kill(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        try:
            process.kill()
            logger.debug(f"Called kill() on pid={process.pid}")
        except ProcessLookupError:
            pass
