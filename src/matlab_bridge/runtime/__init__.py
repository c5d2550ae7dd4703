"""Runtime module for subprocess management.

Isolated process execution with reliable termination, plus the one-shot
batch executor built on top of it.
"""

from __future__ import annotations

from .batch import BatchExecutor
from .process_runner import ProcessResult, ProcessRunner, ProcessSpec

__all__ = [
    "BatchExecutor",
    "ProcessResult",
    "ProcessRunner",
    "ProcessSpec",
]
