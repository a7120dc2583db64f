"""
Lifecycle supervisor: periodic sweep that reclaims sessions.

A session is reaped when
- its shell process has exited,
- it has been CONNECTING longer than the connect timeout,
- it has been AWAITING_SECOND_FACTOR longer than the second-factor timeout,
- it has been idle longer than the idle timeout.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from ucrbridge.config import CONFIG, Config
from ucrbridge.errors import NEW_SESSION_HINT, ShellSessionError, Timeout
from ucrbridge.logger import get_logger
from ucrbridge.shell.registry import SessionRegistry
from ucrbridge.shell.session import Session, SessionState

logger = get_logger(__name__)


@dataclass
class SessionPolicy:
    """Reclamation thresholds, in seconds."""

    idle_timeout: float = 1800.0
    connect_timeout: float = 120.0
    second_factor_timeout: float = 600.0

    @classmethod
    def from_config(cls, config: Config) -> "SessionPolicy":
        return cls(
            idle_timeout=config.idle_timeout,
            connect_timeout=config.connect_timeout,
            second_factor_timeout=config.second_factor_timeout,
        )

    def should_reap(
        self, session: Session, now: Optional[datetime] = None
    ) -> Tuple[bool, str, Optional[ShellSessionError]]:
        """
        Check whether a session should be destroyed.

        Returns:
            (should_reap, reason, error) tuple. ``error`` is reported to
            subscribers when set.
        """
        now = now or datetime.now(timezone.utc)

        if session.is_terminated:
            return True, "already terminated", None

        if session.process_exited:
            return True, "process exited", ShellSessionError(
                "The shell process exited unexpectedly", retry_hint=NEW_SESSION_HINT
            )

        in_state = session.seconds_in_state(now)

        if session.state == SessionState.AWAITING_SECOND_FACTOR:
            if in_state > self.second_factor_timeout:
                return True, "second factor not provided", Timeout(
                    f"No verification code within {int(self.second_factor_timeout)}s",
                    retry_hint=NEW_SESSION_HINT,
                    terminal=True,
                )
            return False, "", None

        if session.state == SessionState.CONNECTING and in_state > self.connect_timeout:
            return True, "authentication timed out", Timeout(
                f"Sign-in did not complete within {int(self.connect_timeout)}s",
                retry_hint=NEW_SESSION_HINT,
                terminal=True,
            )

        if session.is_idle(self.idle_timeout, now):
            idle = session.idle_seconds(now)
            return True, f"idle {int(idle // 60)}m (limit: {int(self.idle_timeout // 60)}m)", None

        return False, "", None


class LifecycleSupervisor:
    """Runs the reclamation sweep on a fixed interval."""

    def __init__(
        self,
        registry: SessionRegistry,
        policy: Optional[SessionPolicy] = None,
        interval: Optional[float] = None,
        config: Optional[Config] = None,
    ):
        config = config or CONFIG
        self.registry = registry
        self.policy = policy or SessionPolicy.from_config(config)
        self.interval = interval if interval is not None else config.sweep_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"LifecycleSupervisor started (every {self.interval:g}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("LifecycleSupervisor stopped.")

    async def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """Run one pass. Returns the ids of reaped sessions."""
        reaped = []
        for session in self.registry.list_sessions():
            reap, reason, error = self.policy.should_reap(session, now)
            if not reap:
                continue
            logger.info(f"Reaping session {session.id}: {reason}")
            if error is not None and not session.is_terminated:
                await session.terminate(reason, error=error)
            await self.registry.destroy_session(session.id, reason)
            reaped.append(session.id)
        return reaped

    # -- Internal ------------------------------------------------------------

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in supervisor sweep: {e}")
