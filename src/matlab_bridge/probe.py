"""MATLAB installation probe.

matlab-bridge probe v0.1.0

InstallationProbe answers "is the engine installed, where, which version,
which toolboxes". The PATH lookup is cached on the probe instance for a
TTL; ``clear_cache()`` invalidates it (tests, or after installing MATLAB).
Version/toolbox/root queries run short ``-batch`` commands.
"""

from __future__ import annotations

import logging
import re
import shutil
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .errors import MatlabNotInstalledError
from .runtime.batch import BatchExecutor
from .types import MIN_MATLAB_VERSION, MatlabVersion, RunOptions, Toolbox

__all__ = [
    "ProbeCache",
    "InstallationProbe",
    "parse_version_string",
    "parse_numeric_version",
    "is_version_supported",
    "parse_toolbox_list",
]

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 60.0
VERSION_TIMEOUT_MS = 30000
TOOLBOX_TIMEOUT_MS = 60000

_FULL_VERSION_RE = re.compile(r"(\d+\.\d+(?:\.\d+)?(?:\.\d+)?)\s*\(R(\d{4}[ab])\)", re.IGNORECASE)
_VERSION_RE = re.compile(r"Version:\s*(\d+\.\d+(?:\.\d+)?)", re.IGNORECASE)
_RELEASE_RE = re.compile(r"R(\d{4}[ab])", re.IGNORECASE)
_TOOLBOX_RE = re.compile(r"^(.+?)\s{2,}Version\s+(\d+(?:\.\d+)*)")


@dataclass(frozen=True)
class ProbeCache:
    """Result of one PATH lookup.

    Attributes:
        installed: Executable was found
        path: Resolved executable path
        checked_at: Clock value at lookup time
    """

    installed: bool
    path: str | None
    checked_at: float


def parse_version_string(output: str) -> MatlabVersion | None:
    """Parse "9.14.0.2254940 (R2023a)" style output.

    Falls back to a "Version: x.y" line; returns None if neither matches.
    """
    full = _FULL_VERSION_RE.search(output)
    if full:
        return MatlabVersion(
            version=full.group(1),
            release=f"R{full.group(2)}",
            full=full.group(0),
        )

    version = _VERSION_RE.search(output)
    if version:
        release = _RELEASE_RE.search(output)
        return MatlabVersion(
            version=version.group(1),
            release=f"R{release.group(1)}" if release else "Unknown",
            full=output.strip(),
        )

    return None


def parse_numeric_version(version: str) -> float:
    """"9.14.0" -> 9.14, "9.6" -> 9.06; 0.0 for anything unparseable."""
    parts = version.split(".")[:2]
    if len(parts) < 2:
        return 0.0
    try:
        major = int(parts[0])
        minor = int(parts[1])
    except ValueError:
        return 0.0
    return major + minor / 100


def is_version_supported(version: MatlabVersion) -> bool:
    return parse_numeric_version(version.version) >= MIN_MATLAB_VERSION


def parse_toolbox_list(output: str) -> list[Toolbox]:
    """Parse ``ver`` output lines like "Signal Processing Toolbox   Version 9.2"."""
    toolboxes: list[Toolbox] = []
    for line in output.split("\n"):
        match = _TOOLBOX_RE.match(line)
        if match:
            toolboxes.append(Toolbox(name=match.group(1).strip(), version=match.group(2)))
    return toolboxes


class InstallationProbe:
    """Locate the engine and query its version information.

    Args:
        executable: Engine argv prefix; argv[0] is looked up on PATH
        ttl: Seconds a lookup result stays valid
        clock: Monotonic clock (injectable for tests)
        executor: Batch executor for version queries
    """

    def __init__(
        self,
        executable: Sequence[str] | str = ("matlab",),
        *,
        ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
        executor: BatchExecutor | None = None,
    ) -> None:
        if isinstance(executable, str):
            executable = [executable]
        self._executable = list(executable)
        self._ttl = ttl
        self._clock = clock
        self._executor = executor or BatchExecutor(self._executable)
        self._cache: ProbeCache | None = None

    @property
    def cache(self) -> ProbeCache | None:
        return self._cache

    def clear_cache(self) -> None:
        self._cache = None

    def _lookup(self) -> ProbeCache:
        now = self._clock()
        if self._cache is not None and now - self._cache.checked_at < self._ttl:
            return self._cache

        path = shutil.which(self._executable[0])
        self._cache = ProbeCache(installed=path is not None, path=path, checked_at=now)
        logger.debug(f"MATLAB lookup: executable={self._executable[0]} path={path}")
        return self._cache

    def is_installed(self) -> bool:
        return self._lookup().installed

    def matlab_path(self) -> str | None:
        return self._lookup().path

    def _require_installed(self) -> None:
        if not self.is_installed():
            raise MatlabNotInstalledError()

    async def get_version(self) -> MatlabVersion:
        """Query the engine version.

        Raises:
            MatlabNotInstalledError: If the executable is not on PATH
        """
        self._require_installed()
        result = await self._executor.execute_command(
            "disp(version)", RunOptions(timeout_ms=VERSION_TIMEOUT_MS)
        )
        parsed = parse_version_string(result.output)
        if parsed is not None:
            return parsed

        lines = [line.strip() for line in result.output.strip().split("\n") if line.strip()]
        return MatlabVersion(
            version=lines[-1] if lines else "Unknown",
            release="Unknown",
            full=result.output.strip(),
        )

    async def validate_installation(self) -> MatlabVersion:
        """Return the version, raising if it is older than R2019a."""
        version = await self.get_version()
        if not is_version_supported(version):
            raise MatlabNotInstalledError(
                f"MATLAB version {version.version} ({version.release}) is not supported. "
                "Minimum required version is R2019a (9.6)."
            )
        return version

    async def get_installed_toolboxes(self) -> list[Toolbox]:
        self._require_installed()
        result = await self._executor.execute_command(
            "ver", RunOptions(timeout_ms=TOOLBOX_TIMEOUT_MS)
        )
        return parse_toolbox_list(result.output)

    async def get_matlab_root(self) -> str:
        self._require_installed()
        result = await self._executor.execute_command(
            "disp(matlabroot)", RunOptions(timeout_ms=VERSION_TIMEOUT_MS)
        )
        lines = [line.strip() for line in result.output.strip().split("\n") if line.strip()]
        if not lines:
            raise MatlabNotInstalledError("Failed to parse MATLAB root path")
        return lines[-1]
