"""
Session registry.

The single owner of the session-id -> Session map. Every insert and removal
goes through the registry's lock so a destroy can never race a lookup that
is about to use the session.
"""

import asyncio
import secrets
from typing import Any, Optional

from ucrbridge.config import CONFIG, Config
from ucrbridge.errors import ResourceExhausted, SessionNotFound
from ucrbridge.logger import get_logger
from ucrbridge.shell.launcher import Descriptor, ProcessLauncher
from ucrbridge.shell.session import Session

logger = get_logger(__name__)


def generate_session_id() -> str:
    return f"ps-{secrets.token_hex(8)}"


class SessionRegistry:
    """Creates, looks up, and destroys shell sessions."""

    def __init__(
        self,
        config: Optional[Config] = None,
        launcher: Optional[ProcessLauncher] = None,
    ):
        self.config = config or CONFIG
        self.launcher = launcher or ProcessLauncher(self.config)
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._removals: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def create_session(
        self, descriptor: Descriptor, tenant_id: str, operator: str
    ) -> str:
        """
        Spawn a new session and return its id.

        Raises:
            ResourceExhausted: If the global or per-operator limit is reached.
            LaunchFailure: If the shell could not be spawned.
        """
        async with self._lock:
            if len(self._sessions) >= self.config.max_sessions:
                raise ResourceExhausted(
                    f"Session limit reached ({self.config.max_sessions})",
                    retry_hint="Close an existing session and try again.",
                )
            owned = sum(1 for s in self._sessions.values() if s.operator == operator)
            if owned >= self.config.max_sessions_per_operator:
                raise ResourceExhausted(
                    f"Operator {operator} already has {owned} open sessions",
                    retry_hint="Close an existing session and try again.",
                )

            session_id = generate_session_id()
            session = Session(
                session_id,
                descriptor,
                tenant_id,
                operator,
                launcher=self.launcher,
                config=self.config,
            )
            self._sessions[session_id] = session

        session.add_terminated_callback(self._on_session_terminated)
        try:
            await session.start()
        except Exception:
            await self._remove(session_id)
            raise

        logger.info(
            f"Created session {session_id} for tenant {tenant_id} "
            f"(operator={operator}, variant={session.variant})"
        )
        return session_id

    def get_session(self, session_id: str) -> Session:
        """
        Raises:
            SessionNotFound: If no live session has this id.
        """
        session = self._sessions.get(session_id)
        if session is None or session.is_terminated:
            raise SessionNotFound(session_id)
        return session

    async def destroy_session(self, session_id: str, reason: str = "closed") -> bool:
        """
        Terminate a session and forget it. Idempotent.

        Returns:
            True if a session was found and destroyed, False otherwise.
        """
        session = await self._remove(session_id)
        if session is None:
            return False
        await session.terminate(reason)
        return True

    def list_sessions(self, operator: Optional[str] = None) -> list[Session]:
        sessions = list(self._sessions.values())
        if operator is not None:
            sessions = [s for s in sessions if s.operator == operator]
        return sessions

    def describe(self, operator: Optional[str] = None) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self.list_sessions(operator)]

    async def close_all(self, reason: str = "shutdown") -> None:
        """Destroy every session (server shutdown)."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.terminate(reason)
        if sessions:
            logger.info(f"Closed {len(sessions)} sessions ({reason})")

    # -- Internal ------------------------------------------------------------

    async def _remove(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions.pop(session_id, None)

    def _on_session_terminated(self, session: Session) -> None:
        # A session that dies on its own (process exit, auth failure) drops out
        # of the map; removal is scheduled so it still goes through the lock.
        if session.id in self._sessions:
            task = asyncio.get_running_loop().create_task(self._remove(session.id))
            self._removals.add(task)
            task.add_done_callback(self._removals.discard)
