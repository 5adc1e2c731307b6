"""Bookkeeping for in-flight remote script executions."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from .cancellation import CancelReason, CancellationToken

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class ExecutionSession:
    """One remote command, from start until any terminal outcome."""

    instance_id: str
    organization_id: str
    user_id: str
    session_id: str = field(default_factory=new_session_id)
    token: CancellationToken = field(default_factory=CancellationToken)
    created_at: float = field(default_factory=time.time)
    # Set by the executor once the remote process exists; owned by it.
    process: Any = None

    def is_owned_by(
        self,
        user_id: str,
        organization_id: str,
        instance_id: str | None = None,
    ) -> bool:
        if self.user_id != user_id or self.organization_id != organization_id:
            return False
        return instance_id is None or instance_id == self.instance_id


class SessionRegistry:
    """Thread-safe table of execution sessions keyed by session id.

    Performs storage and lookup only; callers check ownership before
    calling ``cancel``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, ExecutionSession] = {}

    def register(self, session: ExecutionSession) -> str:
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session {session.session_id} already registered")
            self._sessions[session.session_id] = session
        logger.debug("Registered execution session %s", session.session_id)
        return session.session_id

    def get(self, session_id: str) -> ExecutionSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def cancel(self, session_id: str) -> bool:
        """Signal the session's token. False if unknown or already cancelled."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return False
        cancelled = session.token.cancel(CancelReason.ABORTED)
        if cancelled:
            logger.info("Aborted execution session %s", session_id)
        return cancelled

    def unregister(self, session_id: str) -> None:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.debug("Removed execution session %s", session_id)

    def sessions_for(self, organization_id: str, user_id: str) -> list[ExecutionSession]:
        with self._lock:
            return [
                session
                for session in self._sessions.values()
                if session.organization_id == organization_id
                and session.user_id == user_id
            ]

    def prune(self, max_age: float) -> list[str]:
        """Cancel and drop sessions older than ``max_age`` seconds."""
        cutoff = time.time() - max_age
        with self._lock:
            stale = [
                session
                for session in self._sessions.values()
                if session.created_at < cutoff
            ]
            for session in stale:
                del self._sessions[session.session_id]
        for session in stale:
            session.token.cancel(CancelReason.ABORTED)
            logger.info("Cleaning up old session %s", session.session_id)
        return [session.session_id for session in stale]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
