"""ProcessRunner unit tests.

Test coverage:
- Run-to-completion collection (stdout, stderr, exit code)
- Stdin writing
- Process isolation (new session/process group)
- Interactive spawn and terminate
- Cancellation and termination
- Stream helpers (incremental decoding, line splitting)
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from matlab_bridge.runtime.lines import LineSplitter, StreamDecoder
from matlab_bridge.runtime.process_runner import (
    IS_WINDOWS,
    ProcessResult,
    ProcessRunner,
    ProcessSpec,
)


def python_spec(code: str, **kwargs) -> ProcessSpec:
    """ProcessSpec running a Python one-liner."""
    return ProcessSpec(argv=[sys.executable, "-c", code], **kwargs)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def runner() -> ProcessRunner:
    """Create ProcessRunner instance with short timeouts for testing."""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.3)


# =============================================================================
# Collect Tests
# =============================================================================


class TestCollect:
    """Test run-to-completion collection."""

    @pytest.mark.asyncio
    async def test_simple_command(self, runner: ProcessRunner):
        result = await runner.collect(python_spec("print('hello')"))
        assert result.returncode == 0
        assert result.stdout_text.strip() == "hello"
        assert result.stderr == b""

    @pytest.mark.asyncio
    async def test_stdout_callback_receives_all_chunks(self, runner: ProcessRunner):
        chunks: list[bytes] = []
        result = await runner.collect(
            python_spec("for i in range(3): print(f'line{i}', flush=True)"),
            on_stdout=chunks.append,
        )
        assert b"".join(chunks) == result.stdout
        assert result.stdout_text.split() == ["line0", "line1", "line2"]

    @pytest.mark.asyncio
    async def test_stderr_collected(self, runner: ProcessRunner):
        result = await runner.collect(
            python_spec("import sys; print('out'); sys.stderr.write('Error: bad\\n')")
        )
        assert result.stdout_text.strip() == "out"
        assert result.stderr_text.strip() == "Error: bad"

    @pytest.mark.asyncio
    async def test_exit_code_nonzero(self, runner: ProcessRunner):
        result = await runner.collect(python_spec("import sys; sys.exit(7)"))
        assert result.returncode == 7

    @pytest.mark.asyncio
    async def test_working_directory(self, temp_workspace: Path, runner: ProcessRunner):
        result = await runner.collect(
            python_spec("import os; print(os.getcwd())", cwd=temp_workspace)
        )
        assert Path(result.stdout_text.strip()).resolve() == temp_workspace.resolve()

    @pytest.mark.asyncio
    async def test_large_output(self, runner: ProcessRunner):
        result = await runner.collect(python_spec("print('x' * 200000)"))
        assert len(result.stdout_text.strip()) == 200000

    @pytest.mark.asyncio
    async def test_nonexistent_command(self, runner: ProcessRunner):
        spec = ProcessSpec(argv=["definitely-not-a-real-command-xyz"])
        with pytest.raises(FileNotFoundError):
            await runner.collect(spec)

    @pytest.mark.asyncio
    async def test_stdin_not_inherited(self, runner: ProcessRunner):
        # The child reads EOF immediately
        result = await runner.collect(python_spec("import sys; print(repr(sys.stdin.read()))"))
        assert result.stdout_text.strip() == "''"


class TestProcessResult:
    """Test ProcessResult decoding."""

    def test_invalid_utf8_replaced(self):
        result = ProcessResult(stdout=b"ok \xff", stderr=b"", returncode=0)
        assert result.stdout_text.startswith("ok ")
        assert "�" in result.stdout_text


# =============================================================================
# Environment
# =============================================================================


class TestEnvironment:
    """Test environment handling."""

    @pytest.mark.asyncio
    async def test_custom_environment(self, runner: ProcessRunner):
        env = {**os.environ, "MATLAB_BRIDGE_TEST_VAR": "custom_value"}
        result = await runner.collect(
            python_spec("import os; print(os.environ['MATLAB_BRIDGE_TEST_VAR'])", env=env)
        )
        assert result.stdout_text.strip() == "custom_value"

    @pytest.mark.asyncio
    async def test_inherit_environment(self, runner: ProcessRunner):
        result = await runner.collect(
            python_spec("import os; print('PATH' in os.environ)")
        )
        assert result.stdout_text.strip() == "True"


# =============================================================================
# Isolation and termination
# =============================================================================


@pytest.mark.skipif(IS_WINDOWS, reason="POSIX process groups")
class TestProcessIsolation:
    """Test process group isolation."""

    @pytest.mark.asyncio
    async def test_new_session_posix(self, runner: ProcessRunner):
        result = await runner.collect(
            python_spec("import os; print(os.getsid(0) == os.getpid())")
        )
        assert result.stdout_text.strip() == "True"

    @pytest.mark.asyncio
    async def test_process_group_posix(self, runner: ProcessRunner):
        result = await runner.collect(
            python_spec("import os; print(os.getpgrp() != {})".format(os.getpgrp()))
        )
        assert result.stdout_text.strip() == "True"


class TestSpawnAndTerminate:
    """Test interactive processes."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_interactive_echo(self, runner: ProcessRunner):
        spec = python_spec(
            "import sys\n"
            "for line in sys.stdin:\n"
            "    print('echo:' + line.strip(), flush=True)\n"
        )
        process = await runner.spawn(spec, interactive=True)
        try:
            assert process.stdin is not None
            process.stdin.write(b"first\n")
            await process.stdin.drain()
            line = await asyncio.wait_for(process.stdout.readline(), timeout=5)
            assert line.decode().strip() == "echo:first"
        finally:
            await runner.terminate(process)
        assert process.returncode is not None

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_terminate_long_running(self, runner: ProcessRunner):
        process = await runner.spawn(python_spec("import time; time.sleep(60)"))
        started = time.monotonic()
        await runner.terminate(process)
        assert process.returncode is not None
        assert time.monotonic() - started < 3.0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(IS_WINDOWS, reason="SIGTERM handling")
    async def test_kill_after_ignored_sigterm(self, runner: ProcessRunner):
        process = await runner.spawn(
            python_spec(
                "import signal, time\n"
                "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
                "print('armed', flush=True)\n"
                "time.sleep(60)\n"
            )
        )
        await asyncio.wait_for(process.stdout.readline(), timeout=5)
        await runner.terminate(process)
        assert process.returncode is not None

    @pytest.mark.asyncio
    async def test_terminate_exited_process_is_noop(self, runner: ProcessRunner):
        process = await runner.spawn(python_spec("pass"))
        await process.wait()
        await runner.terminate(process)
        assert process.returncode == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_cancellation_terminates_process(self, runner: ProcessRunner, tmp_path: Path):
        pid_file = tmp_path / "pid"
        spec = python_spec(
            "import os, time\n"
            f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
            "print('started', flush=True)\n"
            "time.sleep(60)\n"
        )
        started = asyncio.Event()

        task = asyncio.create_task(runner.collect(spec, on_stdout=lambda _: started.set()))
        await asyncio.wait_for(started.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        pid = int(pid_file.read_text())
        if not IS_WINDOWS:
            await asyncio.sleep(0.1)
            with pytest.raises(ProcessLookupError):
                os.kill(pid, 0)


# =============================================================================
# ProcessSpec
# =============================================================================


class TestProcessSpec:
    """Test ProcessSpec dataclass."""

    def test_frozen(self):
        spec = ProcessSpec(argv=["matlab"])
        with pytest.raises(AttributeError):
            spec.argv = ["other"]  # type: ignore[misc]

    def test_default_values(self):
        spec = ProcessSpec(argv=["matlab"])
        assert spec.cwd is None
        assert spec.env is None


# =============================================================================
# Stream helpers
# =============================================================================


class TestStreamDecoder:
    """Test incremental decoding."""

    def test_split_multibyte_sequence(self):
        decoder = StreamDecoder()
        data = "µ-ok".encode("utf-8")
        assert decoder.decode(data[:1]) == ""
        assert decoder.decode(data[1:]) == "µ-ok"

    def test_invalid_bytes_replaced(self):
        decoder = StreamDecoder()
        assert decoder.decode(b"a\xffb") == "a�b"

    def test_flush_incomplete_sequence(self):
        decoder = StreamDecoder()
        decoder.decode("é".encode("utf-8")[:1])
        assert decoder.flush() == "�"


class TestLineSplitter:
    """Test line splitting across chunks."""

    def test_lines_across_chunks(self):
        splitter = LineSplitter()
        assert splitter.feed("hel") == []
        assert splitter.feed("lo\nwor") == ["hello"]
        assert splitter.feed("ld\n\nend") == ["world", ""]
        assert splitter.flush() == ["end"]
        assert splitter.flush() == []

    def test_crlf_stripped(self):
        splitter = LineSplitter()
        assert splitter.feed("a\r\nb\r\n") == ["a", "b"]

    def test_reset_drops_partial(self):
        splitter = LineSplitter()
        splitter.feed("partial")
        splitter.reset()
        assert splitter.feed("x\n") == ["x"]
