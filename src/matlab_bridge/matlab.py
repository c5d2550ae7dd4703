"""Matlab facade: one-shot operations.

Each method composes a script, runs it in a fresh ``-batch`` process and
decodes the result. For many commands against shared workspace state use
a MatlabSession instead (``Matlab.create_session``).

Example:
    matlab = Matlab()
    result = await matlab.run("disp(3 + 4)")
    values = await matlab.get_variables("x = 1:3; y = x.^2;", ["x", "y"])
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from .config import Config, get_config
from .converter import convert_to_matlab, generate_set_variables_code, is_valid_matlab_name
from .errors import MatlabFileNotFoundError, MatlabNotInstalledError
from .figure import (
    generate_figure_count_code,
    generate_save_all_figures_code,
    generate_save_figure_code,
    get_extension,
    validate_output_path,
)
from .parsers import auto_parse, extract_json, generate_json_extraction_code
from .probe import InstallationProbe
from .runtime.batch import BatchExecutor, cleanup_temp_script, create_temp_script
from .runtime.process_runner import ProcessRunner
from .session import MatlabSession
from .types import (
    JSON_END_MARKER,
    JSON_START_MARKER,
    CSVExportOptions,
    FigureOptions,
    FunctionCallResult,
    LiveScriptExportOptions,
    MATFileOptions,
    MatlabResult,
    MatlabVersion,
    RunOptions,
    SessionOptions,
    Toolbox,
)

__all__ = ["Matlab"]

logger = logging.getLogger(__name__)


def _matlab_path(path: str | Path) -> str:
    """Absolute path as a MATLAB char literal body."""
    return str(Path(path).resolve()).replace("\\", "/").replace("'", "''")


def _require_names(names: Sequence[str]) -> None:
    for name in names:
        if not is_valid_matlab_name(name):
            raise ValueError(f"Invalid MATLAB variable name: {name!r}")


class Matlab:
    """One-shot MATLAB operations.

    Args:
        config: Configuration (defaults to the global config)
        probe: Installation probe (defaults to one for config.executable)
        runner: Process runner shared by batch runs and sessions
    """

    def __init__(
        self,
        config: Config | None = None,
        probe: InstallationProbe | None = None,
        runner: ProcessRunner | None = None,
    ) -> None:
        self._config = config or get_config()
        self._runner = runner or ProcessRunner()
        self._executor = BatchExecutor(self._config.executable, self._runner)
        self._probe = probe or InstallationProbe(
            self._config.executable,
            ttl=self._config.install_cache_ttl,
            executor=self._executor,
        )

    @property
    def probe(self) -> InstallationProbe:
        return self._probe

    def _options(self, options: RunOptions | None) -> RunOptions:
        if options is not None:
            return options
        return RunOptions(timeout_ms=self._config.batch_timeout_ms)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, script: str, options: RunOptions | None = None) -> MatlabResult:
        """Run MATLAB code, or an existing ``.m`` file if ``script`` names one.

        Raises:
            MatlabNotInstalledError: If MATLAB is not on PATH
            MatlabError: Classified failure of the script
        """
        if not self._probe.is_installed():
            raise MatlabNotInstalledError()

        if script.endswith(".m") and Path(script).is_file():
            return await self.run_file(script, options)

        script_path = create_temp_script(script)
        try:
            return await self._executor.execute_script(script_path, self._options(options))
        finally:
            cleanup_temp_script(script_path)

    async def run_file(self, file_path: str | Path, options: RunOptions | None = None) -> MatlabResult:
        if not self._probe.is_installed():
            raise MatlabNotInstalledError()

        absolute = Path(file_path).resolve()
        if not absolute.is_file():
            raise MatlabFileNotFoundError(str(file_path))

        return await self._executor.execute_script(absolute, self._options(options))

    async def eval(self, expression: str, options: RunOptions | None = None) -> str:
        """Evaluate an expression and return its displayed value."""
        result = await self._executor.execute_command(f"disp({expression})", self._options(options))
        return result.output

    # ------------------------------------------------------------------
    # System information
    # ------------------------------------------------------------------

    def is_installed(self) -> bool:
        return self._probe.is_installed()

    async def get_version(self) -> MatlabVersion:
        return await self._probe.get_version()

    async def get_installed_toolboxes(self) -> list[Toolbox]:
        return await self._probe.get_installed_toolboxes()

    async def get_matlab_root(self) -> str:
        return await self._probe.get_matlab_root()

    async def validate_installation(self) -> MatlabVersion:
        return await self._probe.validate_installation()

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    async def get_variables(
        self,
        script: str,
        variables: Sequence[str],
        options: RunOptions | None = None,
    ) -> dict[str, Any]:
        """Run ``script`` and return the named variables decoded from JSON.

        If no JSON comes back the displayed output is heuristically parsed
        and returned as ``{"output": value}``.
        """
        if not variables:
            return {}
        _require_names(variables)

        full_script = f"{script}\n{generate_json_extraction_code(variables)}"
        result = await self.run(full_script, options)

        extracted = extract_json(result.output)
        if not isinstance(extracted, dict):
            logger.debug("JSON extraction failed, falling back to text parsing")
            return {"output": auto_parse(result.output)}
        return extracted

    @staticmethod
    def set_variables(variables: Mapping[str, Any]) -> str:
        """Assignment code for ``variables``, to prepend to a script."""
        return generate_set_variables_code(variables)

    # ------------------------------------------------------------------
    # Data export
    # ------------------------------------------------------------------

    async def export_to_json(
        self,
        script: str,
        output_path: str | Path,
        variables: Sequence[str],
        options: RunOptions | None = None,
    ) -> Path:
        _require_names(variables)
        absolute = Path(output_path).resolve()
        fields = "\n".join(f"mbData__.{name} = {name};" for name in variables)
        export_script = "\n".join([
            script,
            "mbData__ = struct();",
            fields,
            "mbJson__ = jsonencode(mbData__, 'PrettyPrint', true);",
            f"mbFid__ = fopen('{_matlab_path(absolute)}', 'w');",
            "fprintf(mbFid__, '%s', mbJson__);",
            "fclose(mbFid__);",
            "clear mbData__ mbJson__ mbFid__;",
        ])
        await self.run(export_script, options)
        return absolute

    async def export_to_csv(
        self,
        script: str,
        variable: str,
        output_path: str | Path,
        csv_options: CSVExportOptions | None = None,
        options: RunOptions | None = None,
    ) -> Path:
        _require_names([variable])
        csv_options = csv_options or CSVExportOptions()
        absolute = Path(output_path).resolve()
        delimiter = csv_options.delimiter.replace("'", "''")
        export_script = (
            f"{script}\n"
            f"writematrix({variable}, '{_matlab_path(absolute)}', 'Delimiter', '{delimiter}');"
        )
        await self.run(export_script, options)
        return absolute

    async def export_to_mat(
        self,
        script: str,
        output_path: str | Path,
        variables: Sequence[str] | None = None,
        mat_options: MATFileOptions | None = None,
        options: RunOptions | None = None,
    ) -> Path:
        mat_options = mat_options or MATFileOptions()
        absolute = Path(output_path).resolve()
        if variables:
            _require_names(variables)
            var_list = ", ".join(f"'{name}'" for name in variables)
            save = f"save('{_matlab_path(absolute)}', {var_list}, '{mat_options.version}');"
        else:
            save = f"save('{_matlab_path(absolute)}', '{mat_options.version}');"
        await self.run(f"{script}\n{save}", options)
        return absolute

    # ------------------------------------------------------------------
    # Figures
    # ------------------------------------------------------------------

    async def save_figure(
        self,
        script: str,
        output_path: str | Path,
        figure_options: FigureOptions | None = None,
        options: RunOptions | None = None,
    ) -> Path:
        """Run ``script`` and save its current figure; returns the file path."""
        figure_options = figure_options or FigureOptions()
        target = validate_output_path(str(Path(output_path).resolve()), figure_options.format)
        save_code = generate_save_figure_code(target, figure_options)
        await self.run(f"{script}\n{save_code}", options)
        return Path(target)

    async def save_all_figures(
        self,
        script: str,
        output_dir: str | Path,
        prefix: str = "figure",
        figure_options: FigureOptions | None = None,
        options: RunOptions | None = None,
    ) -> list[Path]:
        """Run ``script`` and save every open figure into ``output_dir``."""
        figure_options = figure_options or FigureOptions()
        directory = Path(output_dir).resolve()
        save_code = generate_save_all_figures_code(str(directory), prefix, figure_options)

        count_script = "\n".join([
            script,
            f"mbCount__ = {generate_figure_count_code()};",
            f"fprintf('{JSON_START_MARKER}%d{JSON_END_MARKER}\\n', mbCount__);",
            save_code,
            "clear mbCount__;",
        ])
        result = await self.run(count_script, options)

        count = extract_json(result.output)
        if not isinstance(count, int):
            count = 0
        ext = get_extension(figure_options.format)
        return [directory / f"{prefix}_{i}{ext}" for i in range(1, count + 1)]

    # ------------------------------------------------------------------
    # Function calls
    # ------------------------------------------------------------------

    async def call_function(
        self,
        func_name: str,
        args: Sequence[Any] = (),
        nargout: int = 1,
        options: RunOptions | None = None,
    ) -> FunctionCallResult:
        """Call ``func_name(*args)`` and decode its outputs.

        Outputs come back as a list; it is empty when they could not be
        JSON encoded by the engine.
        """
        if nargout < 1:
            raise ValueError("nargout must be >= 1")

        matlab_args = ", ".join(convert_to_matlab(arg) for arg in args)
        outputs = [f"mbOut{i}__" for i in range(1, nargout + 1)]
        assignment = f"[{', '.join(outputs)}]" if nargout > 1 else outputs[0]
        script = "\n".join([
            f"{assignment} = {func_name}({matlab_args});",
            f"mbResult__ = {{{', '.join(outputs)}}};",
            f"fprintf('{JSON_START_MARKER}%s{JSON_END_MARKER}\\n', jsonencode(mbResult__));",
        ])

        started = time.monotonic()
        result = await self.run(script, options)
        duration_ms = (time.monotonic() - started) * 1000

        decoded = extract_json(result.output)
        if decoded is None:
            values: list[Any] = []
        elif isinstance(decoded, list):
            values = decoded
        else:
            values = [decoded]

        return FunctionCallResult(outputs=values, duration_ms=duration_ms, warnings=result.warnings)

    # ------------------------------------------------------------------
    # Live scripts
    # ------------------------------------------------------------------

    async def export_live_script(
        self,
        mlx_path: str | Path,
        output_path: str | Path,
        export_options: LiveScriptExportOptions | None = None,
        options: RunOptions | None = None,
    ) -> Path:
        export_options = export_options or LiveScriptExportOptions()
        source = Path(mlx_path).resolve()
        target = Path(output_path).resolve()
        if not source.is_file():
            raise MatlabFileNotFoundError(str(mlx_path))

        run_flag = "true" if export_options.run else "false"
        script = (
            f"export('{_matlab_path(source)}', '{_matlab_path(target)}', ...\n"
            f"    'Format', '{export_options.format.value}', 'Run', {run_flag});"
        )
        await self.run(script, options)
        return target

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def session_options(self, **overrides: Any) -> SessionOptions:
        """SessionOptions seeded from this instance's configuration."""
        options = SessionOptions(
            executable=list(self._config.executable),
            timeout_ms=self._config.command_timeout_ms,
            startup_timeout=self._config.startup_timeout,
            shutdown_grace=self._config.shutdown_grace,
        )
        return dataclasses.replace(options, **overrides)

    async def create_session(self, options: SessionOptions | None = None, **kwargs: Any) -> MatlabSession:
        """Start an interactive session sharing this instance's probe and runner."""
        session = MatlabSession(
            options or self.session_options(),
            runner=self._runner,
            probe=self._probe,
            config=self._config,
            **kwargs,
        )
        await session.start()
        return session
