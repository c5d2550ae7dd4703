"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path (development checkouts)
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from matlab_bridge.config import Config  # noqa: E402
from matlab_bridge.types import SessionOptions  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_MATLAB = FIXTURES_DIR / "fake_matlab.py"


def fake_executable(*flags: str) -> list[str]:
    """Argv prefix launching the fake engine with extra flags."""
    return [sys.executable, str(FAKE_MATLAB), *flags]


@pytest.fixture
def project_root() -> Path:
    return PROJECT_ROOT


@pytest.fixture
def fake_matlab() -> list[str]:
    """Argv prefix of the fake engine."""
    return fake_executable()


@pytest.fixture
def fake_config() -> Config:
    """Config pointing at the fake engine, with short test timeouts."""
    return Config(
        executable=fake_executable(),
        command_timeout_ms=10000,
        batch_timeout_ms=20000,
        startup_timeout=10.0,
        shutdown_grace=2.0,
        install_cache_ttl=60.0,
        max_sessions=2,
    )


@pytest.fixture
def session_options() -> Callable[..., SessionOptions]:
    """Factory for SessionOptions running the fake engine."""

    def factory(*flags: str, **overrides: Any) -> SessionOptions:
        values: dict[str, Any] = {
            "executable": fake_executable(*flags),
            "timeout_ms": 10000,
            "startup_timeout": 10.0,
            "shutdown_grace": 2.0,
            "stderr_settle": 0.02,
        }
        values.update(overrides)
        return SessionOptions(**values)

    return factory
