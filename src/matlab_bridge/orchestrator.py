"""Request and session bookkeeping for the MCP server.

- RequestRegistry: in-flight tool calls, cancelled together on shutdown
- SessionRegistry: named MatlabSessions shared across tool calls
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Optional

from .errors import MatlabSessionStateError
from .types import SessionOptions, SessionState

if TYPE_CHECKING:
    from .matlab import Matlab
    from .session import MatlabSession

__all__ = ["RequestInfo", "RequestRegistry", "SessionInfo", "SessionRegistry"]

logger = logging.getLogger(__name__)


@dataclass
class RequestInfo:
    """An in-flight tool call.

    Attributes:
        request_id: Unique request id
        tool: Tool name
        task: The asyncio Task running the call
        created_at: Registration time
    """

    request_id: str
    tool: str
    task: asyncio.Task
    created_at: datetime = field(default_factory=datetime.now)

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        status = "running" if not self.task.done() else "done"
        return (
            f"RequestInfo(id={self.request_id[:8]}..., "
            f"tool={self.tool}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )


class RequestRegistry:
    """Registry of in-flight tool calls.

    All operations are synchronous and must be called from the event loop
    that owns the tasks.

    Example:
        ```python
        registry = RequestRegistry()
        request_id = registry.generate_request_id()
        registry.register(request_id, "matlab_run", asyncio.current_task())
        ...
        registry.unregister(request_id)
        ```
    """

    def __init__(self) -> None:
        self._requests: Dict[str, RequestInfo] = {}

    @staticmethod
    def generate_request_id() -> str:
        return str(uuid.uuid4())

    def register(self, request_id: str, tool: str, task: asyncio.Task) -> None:
        """Register a request.

        Raises:
            ValueError: If request_id is already registered
        """
        if request_id in self._requests:
            raise ValueError(f"Request {request_id} already registered")

        info = RequestInfo(request_id=request_id, tool=tool, task=task)
        self._requests[request_id] = info
        logger.debug(f"Registered request: {info}")

    def unregister(self, request_id: str) -> bool:
        info = self._requests.pop(request_id, None)
        if info is None:
            return False
        logger.debug(f"Unregistered request: {info}")
        return True

    def get(self, request_id: str) -> Optional[RequestInfo]:
        return self._requests.get(request_id)

    def cancel(self, request_id: str) -> bool:
        """Cancel one request; True if it was still running."""
        info = self._requests.get(request_id)
        if info and not info.task.done():
            info.task.cancel()
            logger.info(f"Cancelled request: {info}")
            return True
        return False

    def cancel_all(self) -> int:
        """Cancel every running request and return how many were cancelled."""
        cancelled = 0
        for info in list(self._requests.values()):
            if not info.task.done():
                info.task.cancel()
                logger.info(f"Cancelled request: {info}")
                cancelled += 1

        if cancelled > 0:
            logger.info(f"Cancelled {cancelled} active request(s)")

        return cancelled

    def has_active_requests(self) -> bool:
        return any(not info.task.done() for info in self._requests.values())

    @property
    def active_count(self) -> int:
        return sum(1 for info in self._requests.values() if not info.task.done())

    def list_active(self) -> list[RequestInfo]:
        """Running requests, oldest first."""
        active = [info for info in self._requests.values() if not info.task.done()]
        return sorted(active, key=lambda x: x.created_at)

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._requests


@dataclass
class SessionInfo:
    """Snapshot of a registered session."""

    session_id: str
    state: SessionState
    pending: int
    pid: int | None
    created_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "pending": self.pending,
            "pid": self.pid,
            "created_at": self.created_at.isoformat(timespec="seconds"),
        }


class SessionRegistry:
    """Named interactive sessions, bounded by ``max_sessions``.

    Sessions that reach a terminal state (closed or crashed) are dropped
    from the registry the next time it is consulted.

    Args:
        matlab: Facade used to create sessions
        max_sessions: Upper bound on live sessions
    """

    def __init__(self, matlab: "Matlab", max_sessions: int = 4) -> None:
        self._matlab = matlab
        self._max_sessions = max_sessions
        self._sessions: Dict[str, "MatlabSession"] = {}
        self._created: Dict[str, datetime] = {}
        self._starting = 0

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    def _prune(self) -> None:
        for session_id, session in list(self._sessions.items()):
            if session.state.is_terminal:
                logger.debug(f"Dropping {session.state.value} session {session_id}")
                self._sessions.pop(session_id, None)
                self._created.pop(session_id, None)

    async def create(self, options: SessionOptions | None = None) -> str:
        """Start a session and return its id.

        Raises:
            MatlabSessionStateError: If the session limit is reached
            MatlabError: If the session fails to start
        """
        self._prune()
        if len(self._sessions) + self._starting >= self._max_sessions:
            raise MatlabSessionStateError(
                f"Session limit reached ({self._max_sessions}); close a session first"
            )

        self._starting += 1
        try:
            session = await self._matlab.create_session(options)
        finally:
            self._starting -= 1

        session_id = uuid.uuid4().hex[:12]
        self._sessions[session_id] = session
        self._created[session_id] = datetime.now()
        logger.info(f"Session {session_id} started: {session!r}")
        return session_id

    def get(self, session_id: str) -> "MatlabSession":
        """Look up a live session.

        Raises:
            MatlabSessionStateError: If the id is unknown or the session ended
        """
        self._prune()
        session = self._sessions.get(session_id)
        if session is None:
            raise MatlabSessionStateError(f"Unknown or closed session: {session_id}")
        return session

    async def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        self._created.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        logger.info(f"Session {session_id} closed")
        return True

    async def close_all(self) -> int:
        """Close every session and return how many were open."""
        session_ids = list(self._sessions)
        for session_id in session_ids:
            try:
                await self.close(session_id)
            except Exception as e:
                logger.warning(f"Error closing session {session_id}: {e}")
        return len(session_ids)

    def list_sessions(self) -> list[SessionInfo]:
        self._prune()
        return [
            SessionInfo(
                session_id=session_id,
                state=session.state,
                pending=session.pending_count,
                pid=session.pid,
                created_at=self._created[session_id],
            )
            for session_id, session in self._sessions.items()
        ]

    def __len__(self) -> int:
        self._prune()
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
