"""Pending command records and the FIFO queue that holds them."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field

from ..errors import MatlabError
from ..types import CancelSignal, MatlabResult

__all__ = ["PendingCommand", "CommandQueue"]

logger = logging.getLogger(__name__)

_sequence = itertools.count(1)


@dataclass(eq=False)
class PendingCommand:
    """One submitted, not yet settled command.

    The future is the outcome channel: exactly one of resolve/reject takes
    effect, later calls are ignored. Settling also cancels the timeout
    timer and the cancel watcher.

    Attributes:
        command: Literal command text
        future: Outcome channel awaited by the submitter
        timeout_ms: Per-command timeout (0 = none)
        cancel_signal: Optional per-command cancel signal
        submitted_at: Monotonic submit time
        started_at: Monotonic time the command was written to the engine
        timer: Timeout handle
        cancel_watch: Task waiting on cancel_signal
        seq: Submission sequence number (for logs)
    """

    command: str
    future: asyncio.Future[MatlabResult]
    timeout_ms: int = 0
    cancel_signal: CancelSignal | None = None
    submitted_at: float = field(default_factory=time.monotonic)
    started_at: float | None = None
    timer: asyncio.TimerHandle | None = None
    cancel_watch: asyncio.Task | None = None
    seq: int = field(default_factory=lambda: next(_sequence))

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, result: MatlabResult) -> bool:
        """Deliver a result. Returns False if already settled."""
        if self.future.done():
            return False
        self.future.set_result(result)
        self.release()
        return True

    def reject(self, error: MatlabError) -> bool:
        """Deliver a failure. Returns False if already settled."""
        if self.future.done():
            return False
        self.future.set_exception(error)
        self.release()
        return True

    def release(self) -> None:
        """Cancel the timer and cancel watcher."""
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if self.cancel_watch is not None and not self.cancel_watch.done():
            if self.cancel_watch is not asyncio.current_task():
                self.cancel_watch.cancel()
        self.cancel_watch = None

    def __repr__(self) -> str:
        status = "done" if self.done else "pending"
        text = self.command if len(self.command) <= 40 else self.command[:37] + "..."
        return f"PendingCommand(seq={self.seq}, status={status}, command={text!r})"


class CommandQueue:
    """FIFO of commands waiting for the engine.

    Mutations: append (submit), pop_head (dispatch), remove (timeout or
    cancel), drain (close). All happen on the event loop thread without
    awaiting in between.
    """

    def __init__(self) -> None:
        self._items: deque[PendingCommand] = deque()

    def append(self, command: PendingCommand) -> None:
        self._items.append(command)

    def pop_head(self) -> PendingCommand | None:
        """Pop the oldest command that is still unsettled."""
        while self._items:
            command = self._items.popleft()
            if not command.done:
                return command
            logger.debug(f"Skipping settled command {command!r}")
        return None

    def remove(self, command: PendingCommand) -> bool:
        """Remove a specific command (identity match)."""
        for index, item in enumerate(self._items):
            if item is command:
                del self._items[index]
                return True
        return False

    def drain(self) -> list[PendingCommand]:
        items = list(self._items)
        self._items.clear()
        return items

    def __contains__(self, command: object) -> bool:
        return any(item is command for item in self._items)

    def __iter__(self) -> Iterator[PendingCommand]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)
