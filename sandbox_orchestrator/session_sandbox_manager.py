"""Process-wide registry of sandbox sessions.

Maps session ids to provider instances and tracks which one is active.
Construct one SandboxManager per process and pass it to whoever needs sandbox
access.

Thread Safety:
    register_provider(), set_active(), release_provider() and create_session()
    are serialized by one lock. get_active_provider() reads a single immutable
    entry reference and never blocks on writers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sandbox_orchestrator.config import SandboxSettings
from sandbox_orchestrator.sandbox_backends.factory import get_provider_factory

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable

    from sandbox_orchestrator.sandbox_backends.base import SandboxInfo, SandboxProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionEntry:
    session_id: str
    provider: SandboxProvider

    @property
    def info(self) -> SandboxInfo | None:
        # Read through so a provider that re-creates its sandbox is never stale.
        return self.provider.get_sandbox_info()


class SandboxManager:
    def __init__(
        self,
        *,
        settings: SandboxSettings | None = None,
        provider_factory: Callable[[SandboxSettings], SandboxProvider] | None = None,
    ) -> None:
        self.settings = settings or SandboxSettings.from_env()
        self._provider_factory = provider_factory or get_provider_factory(
            self.settings.backend
        )
        self._lock = threading.RLock()
        self._entries: dict[str, SessionEntry] = {}
        self._active: SessionEntry | None = None

    # ---- Readers

    def get_active_provider(self) -> SandboxProvider | None:
        active = self._active
        return active.provider if active is not None else None

    def get_active_session_id(self) -> str | None:
        active = self._active
        return active.session_id if active is not None else None

    def get_provider(self, session_id: str) -> SandboxProvider | None:
        with self._lock:
            entry = self._entries.get(session_id)
        return entry.provider if entry is not None else None

    def list_sessions(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    # ---- Writers

    def register_provider(self, session_id: str, provider: SandboxProvider) -> SessionEntry:
        entry = SessionEntry(session_id=session_id, provider=provider)
        with self._lock:
            previous = self._entries.get(session_id)
            self._entries[session_id] = entry
            if self._active is not None and self._active.session_id == session_id:
                self._active = entry
            if previous is not None and previous.provider is not provider:
                logger.info("Replacing provider for session '%s'", session_id)
                previous.provider.terminate()
        return entry

    def set_active(self, session_id: str) -> None:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                raise KeyError(f"Unknown sandbox session: {session_id}")
            self._active = entry

    def release_provider(self, session_id: str) -> bool:
        """Terminate the session's sandbox and drop it from the registry.

        Returns False if the session was not registered.
        """
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                logger.warning("No sandbox found for session '%s'", session_id)
                return False
            entry.provider.terminate()
            del self._entries[session_id]
            if self._active is not None and self._active.session_id == session_id:
                self._active = None
        logger.info("Released sandbox session '%s'", session_id)
        return True

    def create_session(
        self, session_id: str | None = None, *, activate: bool = True
    ) -> SessionEntry:
        """Provision a new sandbox and register it.

        ProvisioningError propagates and leaves the registry untouched.
        """
        provider = self._provider_factory(self.settings)
        info = provider.create_sandbox()
        sid = session_id or info.sandbox_id
        with self._lock:
            entry = self.register_provider(sid, provider)
            if activate:
                self.set_active(sid)
        logger.info("Sandbox session '%s' ready at %s", sid, info.url)
        return entry

    def close(self) -> None:
        """Release every session. Call on process shutdown."""
        for session_id in self.list_sessions():
            self.release_provider(session_id)

    def __enter__(self) -> SandboxManager:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()
