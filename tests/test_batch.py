"""BatchExecutor tests.

Test coverage:
- Argument building, temp scripts, warning extraction, output cleaning
- Successful runs against the fake engine (command and script)
- Failure classification with exit codes
- Timeout and abort (preset and mid-run)
- Progress line forwarding
- Missing executable
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path
from unittest import mock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import fake_executable
from matlab_bridge.errors import (
    MatlabAbortError,
    MatlabNotInstalledError,
    MatlabRuntimeError,
    MatlabTimeoutError,
)
from matlab_bridge.runtime.batch import (
    BatchExecutor,
    build_command_args,
    build_matlab_args,
    build_process_env,
    clean_output,
    cleanup_temp_script,
    create_temp_script,
    escape_matlab_string,
    extract_warnings,
)
from matlab_bridge.runtime.process_runner import ProcessRunner
from matlab_bridge.types import RunOptions

pytestmark = pytest.mark.timeout(30)


@pytest.fixture
def executor() -> BatchExecutor:
    return BatchExecutor(fake_executable(), ProcessRunner(term_timeout=0.5, kill_timeout=0.3))


# =============================================================================
# Helpers
# =============================================================================


class TestArgs:
    """Command line construction."""

    def test_script_args(self):
        assert build_matlab_args("/tmp/it's.m") == [
            "-nosplash", "-nodesktop", "-batch", "run('/tmp/it''s.m');",
        ]

    def test_add_path_prefix(self):
        args = build_command_args("disp(1)", ["/a", "/b c"])
        assert args[-1] == "addpath('/a'); addpath('/b c'); disp(1)"

    def test_escape(self):
        assert escape_matlab_string("it's") == "it''s"

    def test_process_env(self):
        assert build_process_env(None) is None
        assert build_process_env({}) is None
        with mock.patch.dict(os.environ, {"BASE_VAR": "1"}):
            env = build_process_env({"EXTRA": "2"})
        assert env["BASE_VAR"] == "1"
        assert env["EXTRA"] == "2"


class TestTempScript:
    """Temporary script files."""

    def test_create_and_cleanup(self):
        path = create_temp_script("disp(1)")
        assert path.read_text(encoding="utf-8") == "disp(1)"
        assert path.name == "script.m"
        assert path.parent.name.startswith("matlab-bridge-")
        cleanup_temp_script(path)
        assert not path.exists()
        assert not path.parent.exists()

    def test_cleanup_missing_is_silent(self, tmp_path: Path):
        cleanup_temp_script(tmp_path / "gone" / "script.m")


class TestExtractWarnings:
    """Warning block extraction."""

    def test_single_warning(self):
        assert extract_warnings("Warning: X is deprecated\n") == ["Warning: X is deprecated"]

    def test_context_lines_joined(self):
        output = "Warning: Something odd\n> In foo (line 3)\nIn bar (line 9)\nresult\n"
        assert extract_warnings(output) == [
            "Warning: Something odd\n> In foo (line 3)\nIn bar (line 9)"
        ]

    def test_multiple_warnings(self):
        output = "Warning: first\n\nThis will be removed in a future release\nplain\n"
        assert extract_warnings(output) == [
            "Warning: first",
            "This will be removed in a future release",
        ]

    def test_no_warnings(self):
        assert extract_warnings("42\nans = 7\n") == []


class TestCleanOutput:
    def test_ans_header_removed(self):
        assert clean_output("ans =\n\n    7\n") == "7"

    def test_plain_output(self):
        assert clean_output("  hello \n") == "hello"


# =============================================================================
# Execution against the fake engine
# =============================================================================


class TestExecuteCommand:
    """execute_command."""

    @pytest.mark.asyncio
    async def test_success(self, executor: BatchExecutor):
        result = await executor.execute_command("disp(42)")
        assert result.output == "42"
        assert result.exit_code == 0
        assert result.success
        assert result.duration_ms > 0
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_ans_cleaned(self, executor: BatchExecutor):
        result = await executor.execute_command("3 + 4")
        assert result.output == "7"

    @pytest.mark.asyncio
    async def test_classified_failure(self, executor: BatchExecutor):
        with pytest.raises(MatlabRuntimeError) as exc_info:
            await executor.execute_command("foo")
        error = exc_info.value
        assert error.message == "Undefined function or variable: foo"
        assert error.exit_code == 1
        assert error.command == "foo"

    @pytest.mark.asyncio
    async def test_warnings(self, executor: BatchExecutor):
        result = await executor.execute_command("warning('old api is deprecated'); disp(1)")
        assert result.output == "1"
        assert result.warnings == ["Warning: old api is deprecated"]

    @pytest.mark.asyncio
    async def test_add_path_and_cwd(self, executor: BatchExecutor, tmp_path: Path):
        options = RunOptions(cwd=tmp_path, add_path=[str(tmp_path)])
        result = await executor.execute_command("disp(pwd)", options)
        assert Path(result.output).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_progress_lines(self, executor: BatchExecutor):
        lines: list[str] = []
        options = RunOptions(on_progress=lines.append)
        await executor.execute_command("disp('first'), disp('second'), fprintf('tail')", options)
        assert lines == ["first", "second", "tail"]


class TestExecuteScript:
    """execute_script."""

    @pytest.mark.asyncio
    async def test_script_file(self, executor: BatchExecutor, tmp_path: Path):
        script = tmp_path / "calc.m"
        script.write_text("a = 6;\nb = 7;\ndisp(a * b)\n", encoding="utf-8")
        result = await executor.execute_script(script)
        assert result.output == "42"

    @pytest.mark.asyncio
    async def test_script_error_stops(self, executor: BatchExecutor, tmp_path: Path):
        script = tmp_path / "broken.m"
        script.write_text("disp('before')\nerror('stop here')\ndisp('after')\n", encoding="utf-8")
        with pytest.raises(MatlabRuntimeError) as exc_info:
            await executor.execute_script(script)
        assert "stop here" in exc_info.value.message


class TestTimeoutAndAbort:
    """Bounded execution."""

    @pytest.mark.asyncio
    async def test_timeout(self, executor: BatchExecutor):
        started = time.monotonic()
        with pytest.raises(MatlabTimeoutError) as exc_info:
            await executor.execute_command("pause(10)", RunOptions(timeout_ms=300))
        assert exc_info.value.timeout_ms == 300
        assert time.monotonic() - started < 5.0

    @pytest.mark.asyncio
    async def test_preset_abort_spawns_nothing(self):
        runner = mock.Mock(spec=ProcessRunner)
        executor = BatchExecutor(fake_executable(), runner)
        signal = asyncio.Event()
        signal.set()
        with pytest.raises(MatlabAbortError):
            await executor.execute_command("disp(1)", RunOptions(cancel_signal=signal))
        runner.collect.assert_not_called()

    @pytest.mark.asyncio
    async def test_abort_mid_run(self, executor: BatchExecutor):
        signal = asyncio.Event()
        asyncio.get_running_loop().call_later(0.3, signal.set)
        started = time.monotonic()
        with pytest.raises(MatlabAbortError):
            await executor.execute_command("pause(10)", RunOptions(cancel_signal=signal))
        assert time.monotonic() - started < 5.0

    @pytest.mark.asyncio
    async def test_signal_unused_when_run_finishes(self, executor: BatchExecutor):
        signal = asyncio.Event()
        result = await executor.execute_command("disp('done')", RunOptions(cancel_signal=signal))
        assert result.output == "done"


class TestMissingExecutable:
    @pytest.mark.asyncio
    async def test_not_installed(self):
        executor = BatchExecutor(["definitely-not-matlab-xyz-123"])
        with pytest.raises(MatlabNotInstalledError):
            await executor.execute_command("disp(1)")
