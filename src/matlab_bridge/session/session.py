"""Persistent interactive MATLAB session.

matlab-bridge session module v0.1.0

A MatlabSession owns one interactive engine process and serializes
commands onto it:

- Process supervision: spawn, wait for the first prompt, run init
  commands, notice unexpected exit, quit -> grace period -> kill
- FIFO queue with exactly one command in flight
- Sentinel framing of stdout/stderr into per-command results
- Per-command timeout and cancel signals, session-wide cancel signal

State machine:
    NEW -> STARTING -> READY <-> BUSY -> CLOSED
    any -> ERROR (spawn failure, startup failure, unexpected exit)

Every PendingCommand is settled exactly once: resolved with a
MatlabResult or rejected with a MatlabError subclass.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from ..config import Config, get_config
from ..converter import is_matlab_keyword, is_valid_matlab_name, to_matlab_code
from ..errors import (
    MatlabAbortError,
    MatlabError,
    MatlabNotInstalledError,
    MatlabSessionClosedError,
    MatlabSessionStateError,
    MatlabSpawnError,
    MatlabStartupError,
    MatlabTimeoutError,
    classify_error,
)
from ..parsers import extract_json, generate_json_extraction_code
from ..probe import InstallationProbe
from ..runtime.batch import build_process_env, escape_matlab_string, extract_warnings
from ..runtime.lines import LineSplitter, StreamDecoder
from ..runtime.process_runner import READ_CHUNK_SIZE, ProcessRunner, ProcessSpec
from ..types import CancelSignal, MatlabResult, SessionOptions, SessionState
from .commands import CommandQueue, PendingCommand
from .framer import OutputFramer, make_sentinels, strip_prompts

__all__ = ["MatlabSession", "create_session", "SESSION_ARGS"]

logger = logging.getLogger(__name__)

# Interactive mode: no splash, no desktop, no -batch
SESSION_ARGS = ["-nosplash", "-nodesktop"]

OutputCallback = Callable[[str], None]
StateCallback = Callable[[SessionState], None]


class MatlabSession:
    """One interactive engine process with a serialized command queue.

    Example:
        async with MatlabSession(SessionOptions(timeout_ms=10000)) as session:
            await session.run("x = [1, 2, 3];")
            print(await session.get_variable("x"))  # [1, 2, 3]

    Args:
        options: Session options (defaults from the global config)
        on_output: Called once per non-empty stdout line, in arrival order
        on_state_change: Called on every state transition
        runner: Process runner used to spawn and terminate the engine
        probe: Installation probe checked before spawning
        config: Configuration supplying the default executable
    """

    def __init__(
        self,
        options: SessionOptions | None = None,
        *,
        on_output: OutputCallback | None = None,
        on_state_change: StateCallback | None = None,
        runner: ProcessRunner | None = None,
        probe: InstallationProbe | None = None,
        config: Config | None = None,
    ) -> None:
        config = config or get_config()
        self._options = options or SessionOptions(
            timeout_ms=config.command_timeout_ms,
            startup_timeout=config.startup_timeout,
            shutdown_grace=config.shutdown_grace,
        )
        self._executable = list(self._options.executable or config.executable)
        self._runner = runner or ProcessRunner()
        self._probe = probe or InstallationProbe(self._executable, ttl=config.install_cache_ttl)

        self._on_output = on_output
        self._on_state_change = on_state_change
        self._callbacks_enabled = True

        self.success_sentinel, self.error_sentinel = make_sentinels(self._options.random_sentinel)
        self._framer = OutputFramer(self.success_sentinel, self.error_sentinel)
        self._line_splitter = LineSplitter()
        self._queue = CommandQueue()

        self._state = SessionState.NEW
        self._process: asyncio.subprocess.Process | None = None
        self._ready: asyncio.Future[None] | None = None
        self._startup_buffer = ""
        self._in_flight: PendingCommand | None = None
        self._settle_handle: asyncio.TimerHandle | None = None
        self._closing = False
        self._completed_count = 0

        self._stdout_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None
        self._cancel_task: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def options(self) -> SessionOptions:
        return self._options

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    @property
    def is_running(self) -> bool:
        return self._state in (SessionState.READY, SessionState.BUSY)

    @property
    def pending_count(self) -> int:
        """Waiting commands plus the one in flight."""
        in_flight = 1 if self._in_flight is not None and not self._in_flight.done else 0
        return len(self._queue) + in_flight

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def __repr__(self) -> str:
        return (
            f"MatlabSession(state={self._state.value}, pid={self.pid}, "
            f"pending={self.pending_count})"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the engine and wait until it accepts commands.

        Raises:
            MatlabSessionStateError: If the session was already started
            MatlabNotInstalledError: If the executable cannot be resolved
            MatlabSpawnError: If the process cannot be started
            MatlabStartupError: If no prompt appears within startup_timeout
                or the process exits during startup
            MatlabAbortError: If the session cancel signal is already set
        """
        if self._state is not SessionState.NEW:
            raise MatlabSessionStateError(f"Cannot start session in state '{self._state.value}'")

        cancel_signal = self._options.cancel_signal
        if cancel_signal is not None and cancel_signal.is_set():
            self._set_state(SessionState.CLOSED)
            self._callbacks_enabled = False
            raise MatlabAbortError("Session cancelled before start")

        if not self._probe.is_installed():
            self._set_state(SessionState.ERROR)
            self._callbacks_enabled = False
            raise MatlabNotInstalledError()

        self._set_state(SessionState.STARTING)
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()

        spec = ProcessSpec(
            argv=[*self._executable, *SESSION_ARGS],
            cwd=Path(self._options.cwd) if self._options.cwd else None,
            env=build_process_env(self._options.env),
        )
        try:
            self._process = await self._runner.spawn(spec, interactive=True)
        except OSError as e:
            self._set_state(SessionState.ERROR)
            self._callbacks_enabled = False
            if isinstance(e, FileNotFoundError) and e.filename in (None, spec.argv[0]):
                raise MatlabNotInstalledError(f"MATLAB executable not found: {spec.argv[0]}") from e
            raise MatlabSpawnError(f"Failed to start MATLAB process: {e}") from e

        if self._shutdown_task is not None:
            # Closed while the process was being spawned
            await asyncio.shield(self._shutdown_task)
            await self._runner.terminate(self._process)
            self._process = None
            raise self._ready.exception()

        logger.info(f"MATLAB session starting pid={self._process.pid}")

        self._stdout_task = asyncio.create_task(
            self._pump(self._process.stdout, self._handle_stdout), name="matlab-session-stdout"
        )
        self._stderr_task = asyncio.create_task(
            self._pump(self._process.stderr, self._handle_stderr), name="matlab-session-stderr"
        )
        self._exit_task = asyncio.create_task(self._watch_exit(), name="matlab-session-exit")
        if cancel_signal is not None:
            self._cancel_task = asyncio.create_task(
                self._watch_session_cancel(cancel_signal), name="matlab-session-cancel"
            )

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), self._options.startup_timeout)
        except asyncio.TimeoutError:
            self._ready.cancel()
            await self._shutdown_and_wait(
                graceful=False,
                error_factory=lambda: MatlabSessionClosedError("Session failed to start"),
                final_state=SessionState.ERROR,
            )
            raise MatlabStartupError(
                f"MATLAB did not become ready within {self._options.startup_timeout}s"
            ) from None
        except MatlabError:
            await self._shutdown_and_wait(
                graceful=False,
                error_factory=lambda: MatlabSessionClosedError("Session failed to start"),
                final_state=SessionState.ERROR,
            )
            raise
        except asyncio.CancelledError:
            self._ready.cancel()
            await self._shutdown_and_wait(
                graceful=False,
                error_factory=lambda: MatlabSessionClosedError("Session start cancelled"),
                final_state=SessionState.CLOSED,
            )
            raise

        self._framer.reset()
        self._line_splitter.reset()

        if self._options.add_path:
            await self._run_init(_add_path_code(self._options.add_path))

        if self._state is SessionState.STARTING:
            self._set_state(SessionState.READY)
            logger.info(f"MATLAB session ready pid={self.pid}")
            self._dispatch_next()

    async def _run_init(self, code: str) -> None:
        """Run an init command ahead of any queued user commands."""
        command = self._new_command(code, self._options.timeout_ms, None)
        self._start_command(command)
        try:
            await command.future
        except MatlabError:
            await self._shutdown_and_wait(
                graceful=False,
                error_factory=lambda: MatlabSessionClosedError("Session failed to initialize"),
                final_state=SessionState.ERROR,
            )
            raise

    async def close(self) -> None:
        """Quit the engine and reject whatever is still pending.

        Writes "quit", waits up to shutdown_grace seconds, then kills the
        process group. Idempotent; never raises for engine problems.
        """
        if self._state is SessionState.NEW:
            self._set_state(SessionState.CLOSED)
            self._callbacks_enabled = False
            return
        await self._shutdown_and_wait(
            graceful=True,
            error_factory=MatlabSessionClosedError,
            final_state=SessionState.CLOSED,
        )

    async def stop(self) -> None:
        """Alias of close()."""
        await self.close()

    async def __aenter__(self) -> "MatlabSession":
        if self._state is SessionState.NEW:
            await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def enqueue(
        self,
        command: str,
        *,
        timeout_ms: int | None = None,
        cancel_signal: CancelSignal | None = None,
    ) -> asyncio.Future[MatlabResult]:
        """Queue a command and return the future of its outcome.

        The command is appended to the tail of the queue synchronously, so
        the order of enqueue() calls is the execution order.

        Args:
            command: Command text (one or more engine statements)
            timeout_ms: Overrides the session timeout (0 = none)
            cancel_signal: Rejects the command with MatlabAbortError when set

        Returns:
            Future resolved with a MatlabResult

        Raises:
            MatlabSessionStateError: If the session is not started or already
                closed/failed
            MatlabAbortError: If cancel_signal is already set
        """
        if self._state is SessionState.NEW:
            raise MatlabSessionStateError("Session not started")
        if self._state.is_terminal or self._closing:
            raise MatlabSessionStateError(f"Cannot submit to session in state '{self._state.value}'")
        if cancel_signal is not None and cancel_signal.is_set():
            raise MatlabAbortError(command=command)

        if timeout_ms is None:
            timeout_ms = self._options.timeout_ms
        pending = self._new_command(command, timeout_ms, cancel_signal)
        self._queue.append(pending)
        logger.debug(f"Queued {pending!r} (pending={self.pending_count})")

        self._dispatch_next()
        return pending.future

    async def submit(
        self,
        command: str,
        *,
        timeout_ms: int | None = None,
        cancel_signal: CancelSignal | None = None,
    ) -> MatlabResult:
        """Queue a command and wait for its result. See enqueue()."""
        future = self.enqueue(command, timeout_ms=timeout_ms, cancel_signal=cancel_signal)
        return await future

    async def run(
        self,
        command: str,
        *,
        timeout_ms: int | None = None,
        cancel_signal: CancelSignal | None = None,
    ) -> MatlabResult:
        return await self.submit(command, timeout_ms=timeout_ms, cancel_signal=cancel_signal)

    # ------------------------------------------------------------------
    # Conveniences
    # ------------------------------------------------------------------

    async def eval(self, expression: str) -> str:
        """Evaluate an expression and return its displayed value."""
        result = await self.submit(f"disp({expression})")
        return result.output

    async def get_variables(self, names: Sequence[str]) -> dict[str, Any]:
        """Fetch workspace variables through the JSON bridge.

        Returns an empty dict when the engine output holds no valid JSON.
        """
        for name in names:
            _require_name(name)
        result = await self.submit(generate_json_extraction_code(list(names)))
        data = extract_json(result.output)
        return data if isinstance(data, dict) else {}

    async def get_variable(self, name: str) -> Any:
        """Fetch one workspace variable (None if it could not be decoded)."""
        data = await self.get_variables([name])
        return data.get(name)

    async def set_variable(self, name: str, value: Any) -> None:
        _require_name(name)
        await self.submit(f"{name} = {to_matlab_code(value)};")

    async def add_path(self, directory: str | Path) -> None:
        await self.submit(f"addpath('{escape_matlab_string(str(directory))}');")

    async def cd(self, directory: str | Path) -> None:
        await self.submit(f"cd('{escape_matlab_string(str(directory))}');")

    async def clear_workspace(self) -> None:
        await self.submit("clear all;")

    # ------------------------------------------------------------------
    # Serializer
    # ------------------------------------------------------------------

    def _new_command(
        self,
        command: str,
        timeout_ms: int,
        cancel_signal: CancelSignal | None,
    ) -> PendingCommand:
        loop = asyncio.get_running_loop()
        pending = PendingCommand(
            command=command,
            future=loop.create_future(),
            timeout_ms=timeout_ms,
            cancel_signal=cancel_signal,
        )
        if timeout_ms > 0:
            pending.timer = loop.call_later(timeout_ms / 1000, self._on_command_timeout, pending)
        if cancel_signal is not None:
            pending.cancel_watch = asyncio.create_task(self._watch_command_cancel(pending, cancel_signal))
        pending.future.add_done_callback(lambda _: self._on_command_settled(pending))
        return pending

    def _dispatch_next(self) -> None:
        """Start the queue head if the engine is idle."""
        if self._in_flight is not None or self._closing:
            return
        if self._state not in (SessionState.READY, SessionState.BUSY):
            return

        pending = self._queue.pop_head()
        if pending is None:
            if self._state is SessionState.BUSY:
                self._set_state(SessionState.READY)
            self._maybe_auto_close()
            return

        if self._state is SessionState.READY:
            self._set_state(SessionState.BUSY)
        self._start_command(pending)

    def _start_command(self, pending: PendingCommand) -> None:
        """Write a command plus its sentinel instruction to the engine."""
        process = self._process
        self._in_flight = pending
        self._framer.reset()
        pending.started_at = time.monotonic()

        payload = f"{pending.command}\ndisp('{self.success_sentinel}');\n"
        logger.debug(f"Dispatching {pending!r}")
        try:
            if process is None or process.stdin is None:
                raise BrokenPipeError("engine stdin is not available")
            process.stdin.write(payload.encode("utf-8"))
        except (OSError, RuntimeError) as e:
            logger.warning(f"Failed to write command to MATLAB: {e}")
            self._in_flight = None
            pending.reject(MatlabSessionClosedError(f"Failed to write command: {e}", command=pending.command))
            self._dispatch_next()

    def _on_boundary(self) -> None:
        if self._in_flight is None:
            logger.warning("Completion sentinel seen with no command in flight, discarding output")
            self._framer.reset()
            return
        if self._settle_handle is None:
            loop = asyncio.get_running_loop()
            self._settle_handle = loop.call_later(self._options.stderr_settle, self._complete_in_flight)

    def _complete_in_flight(self) -> None:
        self._settle_handle = None
        pending = self._in_flight
        if pending is None:
            return
        self._in_flight = None

        frame = self._framer.take_frame()
        duration_ms = (time.monotonic() - (pending.started_at or pending.submitted_at)) * 1000

        if frame.failed:
            error = classify_error(frame.error_payload)
            error.command = pending.command
            if not pending.reject(error):
                logger.debug(f"Late failure for already settled {pending!r}")
        else:
            result = MatlabResult(
                output=frame.output,
                exit_code=0,
                duration_ms=duration_ms,
                warnings=extract_warnings(frame.stderr + frame.output),
            )
            if not pending.resolve(result):
                logger.debug(f"Late completion for already settled {pending!r}")

        if self._state is not SessionState.STARTING:
            self._completed_count += 1
        self._dispatch_next()

    def _maybe_auto_close(self) -> None:
        if self._options.keep_alive or self._completed_count == 0:
            return
        if self._state is SessionState.READY and self._shutdown_task is None:
            logger.debug("Queue drained and keep_alive is off, closing session")
            self._begin_shutdown(
                graceful=True,
                error_factory=MatlabSessionClosedError,
                final_state=SessionState.CLOSED,
            )

    # ------------------------------------------------------------------
    # Timeout and cancellation
    # ------------------------------------------------------------------

    def _on_command_timeout(self, pending: PendingCommand) -> None:
        pending.timer = None
        if pending.done:
            return
        if self._queue.remove(pending):
            logger.debug(f"Timed out while queued: {pending!r}")
        else:
            # The engine keeps the slot until the sentinel arrives
            logger.debug(f"Timed out while in flight: {pending!r}")
        pending.reject(MatlabTimeoutError(pending.timeout_ms, command=pending.command))

    async def _watch_command_cancel(self, pending: PendingCommand, signal: CancelSignal) -> None:
        await signal.wait()
        if pending.done:
            return
        self._queue.remove(pending)
        logger.debug(f"Cancelled {pending!r}")
        pending.reject(MatlabAbortError(command=pending.command))

    def _on_command_settled(self, pending: PendingCommand) -> None:
        # Covers callers cancelling the future directly
        pending.release()
        if pending.future.cancelled():
            self._queue.remove(pending)

    async def _watch_session_cancel(self, signal: CancelSignal) -> None:
        await signal.wait()
        if self._closing or self._state.is_terminal:
            return
        logger.info("Session cancel signal set, terminating MATLAB")
        self._begin_shutdown(
            graceful=False,
            error_factory=MatlabAbortError,
            final_state=SessionState.CLOSED,
        )

    # ------------------------------------------------------------------
    # Process I/O
    # ------------------------------------------------------------------

    async def _pump(self, stream: asyncio.StreamReader | None, handler: Callable[[str], None]) -> None:
        if stream is None:
            return
        decoder = StreamDecoder()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                handler(text)
        tail = decoder.flush()
        if tail:
            handler(tail)

    def _handle_stdout(self, text: str) -> None:
        if self._ready is not None and not self._ready.done():
            self._startup_buffer += text
            if self._options.ready_pattern in self._startup_buffer:
                self._startup_buffer = ""
                self._ready.set_result(None)
            return

        self._emit_output(text)
        if self._framer.feed_stdout(text):
            self._on_boundary()

    def _handle_stderr(self, text: str) -> None:
        self._framer.feed_stderr(text)

    def _emit_output(self, text: str) -> None:
        if self._on_output is None:
            return
        for line in self._line_splitter.feed(text):
            # Text printed without a newline shares its line with the sentinel
            line = strip_prompts(self._framer.strip_sentinels(line))
            if not line.strip() or not self._callbacks_enabled:
                continue
            try:
                self._on_output(line)
            except Exception as e:
                logger.warning(f"Error in on_output callback: {e}")

    async def _watch_exit(self) -> None:
        process = self._process
        if process is None:
            return
        returncode = await process.wait()
        # Let the pumps deliver what is left in the pipes
        pumps = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        if pumps:
            await asyncio.wait(pumps, timeout=1.0)
        self._on_process_exit(returncode)

    def _on_process_exit(self, returncode: int) -> None:
        if self._closing:
            return

        if self._ready is not None and not self._ready.done():
            logger.warning(f"MATLAB exited during startup returncode={returncode}")
            self._ready.set_exception(
                MatlabStartupError(f"MATLAB exited during startup (code {returncode})", exit_code=returncode)
            )
            return

        logger.warning(f"MATLAB session exited unexpectedly returncode={returncode}")
        self._cancel_settle()
        self._set_state(SessionState.ERROR)
        self._reject_all(
            lambda: MatlabSessionClosedError(
                f"MATLAB process exited unexpectedly (code {returncode})",
                exit_code=returncode,
            )
        )
        self._callbacks_enabled = False

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _begin_shutdown(
        self,
        *,
        graceful: bool,
        error_factory: Callable[[], MatlabError],
        final_state: SessionState,
    ) -> asyncio.Task:
        if self._shutdown_task is None:
            self._closing = True
            self._shutdown_task = asyncio.create_task(
                self._shutdown(graceful, error_factory, final_state),
                name="matlab-session-shutdown",
            )
        return self._shutdown_task

    async def _shutdown_and_wait(
        self,
        *,
        graceful: bool,
        error_factory: Callable[[], MatlabError],
        final_state: SessionState,
    ) -> None:
        task = self._begin_shutdown(graceful=graceful, error_factory=error_factory, final_state=final_state)
        await asyncio.shield(task)

    async def _shutdown(
        self,
        graceful: bool,
        error_factory: Callable[[], MatlabError],
        final_state: SessionState,
    ) -> None:
        self._cancel_settle()
        self._reject_all(error_factory)
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error_factory())

        process = self._process
        if process is not None and process.returncode is None:
            if graceful:
                self._write_quit(process)
                try:
                    await asyncio.wait_for(process.wait(), timeout=self._options.shutdown_grace)
                except asyncio.TimeoutError:
                    logger.info(
                        f"MATLAB did not quit within {self._options.shutdown_grace}s, "
                        f"killing pid={process.pid}"
                    )
            await self._runner.terminate(process)

        await self._stop_tasks()
        self._process = None

        if self._state is not SessionState.ERROR:
            self._set_state(final_state)
        self._callbacks_enabled = False
        logger.info(f"MATLAB session {self._state.value}")

    def _write_quit(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(b"quit\n")
            process.stdin.close()
        except (OSError, RuntimeError) as e:
            logger.debug(f"Could not send quit to MATLAB: {e}")

    async def _stop_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [
            t for t in (self._stdout_task, self._stderr_task, self._exit_task, self._cancel_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _cancel_settle(self) -> None:
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None

    def _reject_all(self, error_factory: Callable[[], MatlabError]) -> None:
        pending: list[PendingCommand] = []
        if self._in_flight is not None:
            pending.append(self._in_flight)
            self._in_flight = None
        pending.extend(self._queue.drain())

        rejected = sum(1 for command in pending if command.reject(error_factory()))
        if rejected:
            logger.debug(f"Rejected {rejected} pending command(s)")

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug(f"Session state {self._state.value} -> {state.value}")
        self._state = state
        if self._on_state_change is not None and self._callbacks_enabled:
            try:
                self._on_state_change(state)
            except Exception as e:
                logger.warning(f"Error in on_state_change callback: {e}")


def _require_name(name: str) -> None:
    if not is_valid_matlab_name(name) or is_matlab_keyword(name):
        raise ValueError(f"Invalid MATLAB variable name: {name!r}")


def _add_path_code(paths: Sequence[str]) -> str:
    return " ".join(f"addpath('{escape_matlab_string(str(p))}');" for p in paths)


async def create_session(
    options: SessionOptions | None = None,
    **kwargs: Any,
) -> MatlabSession:
    """Create and start a session. Keyword arguments go to MatlabSession."""
    session = MatlabSession(options, **kwargs)
    await session.start()
    return session
