from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from src.sandbox_backends.base import SandboxRuntime

logger = logging.getLogger(__name__)


@dataclass
class SandboxSession:
    session_id: str
    url: str
    process_id: str
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)

    def to_public(self) -> dict[str, str]:
        return {
            "sandboxId": self.session_id,
            "url": self.url,
            "processId": self.process_id,
        }


class FileRegistry:
    """Workspace-relative paths known to exist in the active sandbox."""

    def __init__(self) -> None:
        self._paths: set[str] = set()

    def __contains__(self, path: object) -> bool:
        return path in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def add(self, path: str) -> None:
        self._paths.add(path)

    def update(self, paths: Iterable[str]) -> None:
        self._paths.update(paths)

    def clear(self) -> None:
        self._paths.clear()

    def snapshot(self) -> list[str]:
        return sorted(self._paths)


class SessionStore:
    """Single-slot session store.

    Sessions are kept by id, but only one of them is active at a time.
    All mutation goes through this object; `creation_lock` admits one
    create at a time.
    """

    def __init__(
        self,
        *,
        timeout_s: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._timeout_s = float(timeout_s)
        self._clock = clock
        self._sessions: dict[str, SandboxSession] = {}
        self._sandboxes: dict[str, SandboxRuntime] = {}
        self._active_id: str | None = None
        self.files = FileRegistry()
        self.creation_lock = asyncio.Lock()

    def get(self, session_id: str) -> SandboxSession | None:
        return self._sessions.get(session_id)

    def active(self) -> SandboxSession | None:
        if self._active_id is None:
            return None
        return self._sessions.get(self._active_id)

    def sandbox_for(self, session_id: str) -> SandboxRuntime | None:
        return self._sandboxes.get(session_id)

    def is_expired(self, session: SandboxSession) -> bool:
        return self._clock() - session.last_used_at > self._timeout_s

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_used_at = self._clock()

    def commit(
        self, session: SandboxSession, sandbox: SandboxRuntime
    ) -> SandboxSession | None:
        """Make `session` the active one. Returns the session it displaced."""
        previous = None
        if self._active_id is not None and self._active_id != session.session_id:
            previous, _ = self.destroy(self._active_id)
        now = self._clock()
        session.created_at = now
        session.last_used_at = now
        self._sessions[session.session_id] = session
        self._sandboxes[session.session_id] = sandbox
        self._active_id = session.session_id
        return previous

    def destroy(
        self, session_id: str
    ) -> tuple[SandboxSession | None, SandboxRuntime | None]:
        session = self._sessions.pop(session_id, None)
        sandbox = self._sandboxes.pop(session_id, None)
        if self._active_id == session_id:
            self._active_id = None
        if session is not None:
            logger.info("Dropped sandbox session %s", session_id)
        return session, sandbox

    def detach_active(self) -> tuple[SandboxSession | None, SandboxRuntime | None]:
        if self._active_id is None:
            return None, None
        return self.destroy(self._active_id)
