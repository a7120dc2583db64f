"""
A managed automation shell session.

One Session owns one shell subprocess for one tenant. It wires the process
pipes to an output parser, queues commands through a dispatcher, tracks the
connection state machine, and fans events out to subscribers (relay
connections).

State machine:
    CREATED -> CONNECTING -> [AWAITING_SECOND_FACTOR -> CONNECTING]
            -> CONNECTED -> [EXECUTING -> CONNECTED]* -> TERMINATED
Any state may move straight to TERMINATED.

An interactive session only reaches CONNECTED after exactly one operator
round trip: a submitted code, or a confirmed out-of-band approval.
"""

import asyncio
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

from ucrbridge.config import CONFIG, Config
from ucrbridge.errors import (
    NEW_SESSION_HINT,
    AuthFailure,
    LaunchFailure,
    ProtocolViolation,
    ShellSessionError,
    Timeout,
)
from ucrbridge.logger import get_logger
from ucrbridge.shell.credentials import CertificateCredentials, InteractiveCredentials
from ucrbridge.shell.dispatcher import Command, CommandDispatcher
from ucrbridge.shell.events import (
    AuthFailedDetected,
    ConnectedDetected,
    MalformedResult,
    ParserEvent,
    Raw,
    SecondFactorPromptDetected,
    Sentinels,
    SessionEvent,
    StructuredBlockEnd,
    StructuredBlockFailed,
    StructuredBlockLine,
    StructuredBlockStart,
)
from ucrbridge.shell.launcher import ProcessLauncher, structured_command
from ucrbridge.shell.parser import OutputStreamParser
from ucrbridge.shell.rules import default_rules

logger = get_logger(__name__)

Descriptor = Union[CertificateCredentials, InteractiveCredentials]


class SessionState(str, Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    CONNECTED = "connected"
    EXECUTING = "executing"
    TERMINATED = "terminated"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.CREATED: {SessionState.CONNECTING},
    SessionState.CONNECTING: {
        SessionState.AWAITING_SECOND_FACTOR,
        SessionState.CONNECTED,
    },
    SessionState.AWAITING_SECOND_FACTOR: {SessionState.CONNECTING},
    SessionState.CONNECTED: {SessionState.EXECUTING},
    SessionState.EXECUTING: {SessionState.CONNECTED},
    SessionState.TERMINATED: set(),
}

PRE_CONNECT_STATES = {
    SessionState.CREATED,
    SessionState.CONNECTING,
    SessionState.AWAITING_SECOND_FACTOR,
}
READY_STATES = {SessionState.CONNECTED, SessionState.EXECUTING}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Session:
    """One tenant's automation shell and its conversation state."""

    def __init__(
        self,
        session_id: str,
        descriptor: Descriptor,
        tenant_id: str,
        operator: str,
        launcher: Optional[ProcessLauncher] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or CONFIG
        self.id = session_id
        self.variant: str = descriptor.kind
        self.tenant_id = tenant_id
        self.operator = operator
        self.state = SessionState.CREATED
        self.created_at = _now()
        self.last_activity = self.created_at
        self.state_changed_at = self.created_at
        self.degraded = False
        self.second_factor_submitted = False
        self.approved_out_of_band = False
        self.termination_reason: Optional[str] = None
        self.error: Optional[ShellSessionError] = None
        self.output_tail: deque[str] = deque(maxlen=self.config.output_tail_lines)

        self.parser = OutputStreamParser(default_rules(self.variant))
        self._stderr_parser = OutputStreamParser(default_rules(self.variant))

        self._descriptor: Optional[Descriptor] = descriptor
        self._launcher = launcher or ProcessLauncher(self.config)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._dispatcher: Optional[CommandDispatcher] = None
        self._tasks: list[asyncio.Task] = []
        self._subscribers: list[asyncio.Queue] = []
        self._terminated_callbacks: list[Callable[["Session"], Any]] = []
        self._inflight = 0
        self._terminating = False
        self._connected = asyncio.Event()
        self._terminated = asyncio.Event()

    # -- Properties -------------------------------------------------------------

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def process(self):
        return self._process

    @property
    def has_process(self) -> bool:
        return self._process is not None

    @property
    def process_exited(self) -> bool:
        return self._process is not None and self._process.returncode is not None

    @property
    def is_terminated(self) -> bool:
        return self.state == SessionState.TERMINATED

    @property
    def is_ready(self) -> bool:
        return self.state in READY_STATES

    @property
    def pending_commands(self) -> int:
        if self._dispatcher is None:
            return 0
        return self._dispatcher.pending + (1 if self._dispatcher.current else 0)

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or _now()) - self.last_activity).total_seconds()

    def seconds_in_state(self, now: Optional[datetime] = None) -> float:
        return ((now or _now()) - self.state_changed_at).total_seconds()

    def is_idle(self, timeout: float, now: Optional[datetime] = None) -> bool:
        return self.pending_commands == 0 and self.idle_seconds(now) > timeout

    def touch(self) -> None:
        self.last_activity = _now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.id,
            "tenantId": self.tenant_id,
            "operator": self.operator,
            "variant": self.variant,
            "state": self.state.value,
            "degraded": self.degraded,
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
            "pendingCommands": self.pending_commands,
        }

    # -- State machine ----------------------------------------------------------

    def _transition(self, target: SessionState) -> None:
        if target == self.state:
            return
        if target != SessionState.TERMINATED and target not in _TRANSITIONS[self.state]:
            raise ProtocolViolation(
                f"Session {self.id} cannot move from {self.state.value} to {target.value}"
            )
        logger.debug(f"[{self.id}] {self.state.value} -> {target.value}")
        self.state = target
        self.state_changed_at = _now()

    # -- Subscribers ------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.subscriber_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _publish(self, event_type: str, **data: Any) -> None:
        event = SessionEvent(type=event_type, session_id=self.id, data=data)
        for queue in list(self._subscribers):
            if queue.full():
                # Slow subscriber: drop its oldest event rather than stall the pump.
                queue.get_nowait()
            queue.put_nowait(event)

    def add_terminated_callback(self, callback: Callable[["Session"], Any]) -> None:
        self._terminated_callbacks.append(callback)

    # -- Lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        """
        Spawn the shell and queue the authentication script.

        Raises:
            LaunchFailure: If the shell could not be spawned. The session is
                terminated before the error propagates.
        """
        self._transition(SessionState.CONNECTING)
        try:
            launched = await self._launcher.launch(self._descriptor, self.tenant_id)
        except LaunchFailure as e:
            await self.terminate("launch failed", error=e)
            raise
        # Secret material is only needed to render the auth script.
        self._descriptor = None

        self._process = launched.process
        self._dispatcher = CommandDispatcher(
            self._write,
            self.parser,
            command_timeout=self.config.command_timeout,
            on_timeout=self._mark_degraded,
            name=self.id,
        )
        self._tasks = [
            asyncio.create_task(self._pump(self._process.stdout, self.parser, "stdout")),
            asyncio.create_task(self._pump(self._process.stderr, self._stderr_parser, "stderr")),
        ]
        self._tasks.append(asyncio.create_task(self._watch_exit()))
        self._dispatcher.submit(Command(text=launched.auth_script, label="authenticate"))
        self.touch()

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        """
        Wait until the session is connected or terminated.

        Raises:
            Timeout: If neither happens within ``timeout`` seconds.
            ShellSessionError: The terminal error, if the session died.
        """
        if self.state in READY_STATES:
            return
        waiters = [
            asyncio.create_task(self._connected.wait()),
            asyncio.create_task(self._terminated.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if self.state in READY_STATES:
            return
        if self.state == SessionState.TERMINATED:
            raise self.error or ShellSessionError(
                f"Session {self.id} terminated: {self.termination_reason}",
                retry_hint=NEW_SESSION_HINT,
            )
        raise Timeout(f"Session {self.id} did not connect within {timeout}s")

    async def wait_terminated(self) -> None:
        await self._terminated.wait()

    async def submit_second_factor(self, code: str) -> None:
        """
        Forward a second-factor code to the shell's input.

        If the sign-in was already approved out of band, the shell is no
        longer reading a code: the submission only confirms the approval.

        Raises:
            ProtocolViolation: Unless the session is awaiting a second factor.
        """
        self._require_awaiting()
        self.second_factor_submitted = True
        self._transition(SessionState.CONNECTING)
        self.touch()
        if self.approved_out_of_band:
            logger.info(f"[{self.id}] Second factor submitted after out-of-band approval")
            await self._on_connected()
            return
        try:
            await self._dispatcher.write_raw(code)
        except ShellSessionError as e:
            await self.terminate("shell input closed", error=e)
            raise
        logger.info(f"[{self.id}] Second factor submitted ({len(code)} characters)")

    async def confirm_second_factor(self) -> None:
        """
        Acknowledge an out-of-band approval (e.g. an authenticator push).

        Nothing is written to the shell. The session connects once both the
        acknowledgement and the shell's connected marker have arrived.

        Raises:
            ProtocolViolation: Unless the session is awaiting a second factor.
        """
        self._require_awaiting()
        self.second_factor_submitted = True
        self._transition(SessionState.CONNECTING)
        self.touch()
        logger.info(f"[{self.id}] Out-of-band approval confirmed by operator")
        if self.approved_out_of_band:
            await self._on_connected()

    def _require_awaiting(self) -> None:
        if self._terminating or self.state != SessionState.AWAITING_SECOND_FACTOR:
            raise ProtocolViolation(
                f"Session {self.id} is {self.state.value}, not awaiting a second factor"
            )

    async def execute(
        self,
        script: str,
        label: str = "command",
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Run a script whose output is captured as one JSON value.

        Commands run strictly in submission order.

        Raises:
            ProtocolViolation: If the session is not connected.
            Timeout, OperationFailed, MalformedResult: From the dispatcher.
        """
        if self.state not in READY_STATES:
            raise ProtocolViolation(
                f"Session {self.id} is {self.state.value}, cannot run {label}"
            )
        sentinels = Sentinels.generate()
        command = Command(
            text=structured_command(script, sentinels),
            sentinels=sentinels,
            label=label,
            timeout=timeout,
        )
        self._inflight += 1
        if self.state == SessionState.CONNECTED:
            self._transition(SessionState.EXECUTING)
        self.touch()
        future = self._dispatcher.submit(command)
        try:
            # A caller that gives up leaves the command in flight until the
            # shell answers or the command timeout fires.
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(_discard_outcome)
            raise
        finally:
            self._inflight -= 1
            self.touch()
            if self._inflight == 0 and self.state == SessionState.EXECUTING:
                self._transition(SessionState.CONNECTED)

    async def run_operation(self, name: str, args: Optional[dict[str, Any]] = None):
        """Run a named high-level operation. See ``ucrbridge.shell.operations``."""
        from ucrbridge.shell.operations import run_operation

        return await run_operation(self, name, args)

    async def terminate(
        self, reason: str, error: Optional[ShellSessionError] = None
    ) -> None:
        """Stop the shell and release everything. Safe to call repeatedly."""
        if self._terminating:
            await self._terminated.wait()
            return
        self._terminating = True
        self.termination_reason = reason
        self.error = error

        if error is not None:
            logger.warning(f"[{self.id}] Terminating: {reason} ({error.message})")
        else:
            logger.info(f"[{self.id}] Terminating: {reason}")

        if self._dispatcher is not None:
            await self._dispatcher.close(
                error
                or ShellSessionError(
                    f"Session terminated: {reason}", retry_hint=NEW_SESSION_HINT
                )
            )

        await self._stop_process()

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = []
        self._process = None
        self._transition(SessionState.TERMINATED)

        if error is not None:
            self._publish("error", **_error_fields(error))
        self._publish("session_closed", reason=reason)
        self._terminated.set()

        for callback in self._terminated_callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"[{self.id}] Termination callback failed: {e}")

    # -- Internal ---------------------------------------------------------------

    def _mark_degraded(self, command: Command) -> None:
        self.degraded = True
        self._publish(
            "output",
            text=f"{command.label} timed out; session marked degraded",
            stream="system",
        )

    async def _write(self, data: bytes) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise ShellSessionError("Shell input is closed", retry_hint=NEW_SESSION_HINT)
        try:
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ShellSessionError(
                f"Shell input is closed: {e}", retry_hint=NEW_SESSION_HINT
            ) from e

    async def _pump(self, stream, parser: OutputStreamParser, name: str) -> None:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            self.touch()
            for event in parser.feed(chunk):
                await self._handle_event(event, name)
        for event in parser.flush():
            await self._handle_event(event, name)

    async def _watch_exit(self) -> None:
        process = self._process
        code = await process.wait()
        # Let the pumps drain what the process printed before exiting.
        pumps = [t for t in self._tasks if t is not asyncio.current_task()]
        if pumps:
            await asyncio.wait(pumps, timeout=1.0)
        if self._terminating:
            return

        if self.state in PRE_CONNECT_STATES:
            error: ShellSessionError = AuthFailure(
                f"Shell exited with code {code} before connecting",
                output_tail=list(self.output_tail),
            )
        else:
            error = ShellSessionError(
                f"Shell exited unexpectedly with code {code}",
                retry_hint=NEW_SESSION_HINT,
            )
        await self.terminate("process exited", error=error)

    async def _stop_process(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        grace = self.config.terminate_grace
        try:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.write(b"exit\n")
                await process.stdin.drain()
                process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"[{self.id}] Shell input already closed: {e}")

        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
            return
        except asyncio.TimeoutError:
            pass

        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.id}] Shell ignored SIGTERM, killing pid {process.pid}")
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass

    async def _handle_event(self, event: ParserEvent, stream: str) -> None:
        if isinstance(event, Raw):
            if event.echo:
                return
            if event.text.strip():
                self.output_tail.append(event.text)
                self._publish("output", text=event.text, stream=stream)
            return

        if self._terminating:
            return

        if isinstance(event, SecondFactorPromptDetected):
            self.output_tail.append(event.text)
            self._publish("output", text=event.text, stream=stream)
            await self._on_second_factor_prompt()
            return

        if isinstance(event, ConnectedDetected):
            await self._on_connected()
            return

        if isinstance(event, AuthFailedDetected):
            self.output_tail.append(event.text)
            if self.state in PRE_CONNECT_STATES:
                await self.terminate(
                    "authentication failed",
                    error=AuthFailure(
                        event.reason or "Authentication was rejected",
                        output_tail=list(self.output_tail),
                    ),
                )
            return

        if isinstance(event, (StructuredBlockStart, StructuredBlockLine)):
            return

        if isinstance(event, (StructuredBlockEnd, StructuredBlockFailed, MalformedResult)):
            if self._dispatcher is not None:
                self._dispatcher.handle_event(event)

    async def _on_second_factor_prompt(self) -> None:
        if self.state == SessionState.AWAITING_SECOND_FACTOR:
            return
        if self.state != SessionState.CONNECTING:
            return
        if self.second_factor_submitted:
            await self.terminate(
                "second factor rejected",
                error=AuthFailure(
                    "The verification code was not accepted",
                    output_tail=list(self.output_tail),
                ),
            )
            return
        self._transition(SessionState.AWAITING_SECOND_FACTOR)
        logger.info(f"[{self.id}] Awaiting second factor")
        self._publish("awaiting_second_factor")

    async def _on_connected(self) -> None:
        if self.state == SessionState.AWAITING_SECOND_FACTOR:
            # Approved out of band; still waits for the operator to confirm.
            self.approved_out_of_band = True
            logger.info(f"[{self.id}] Sign-in approved out of band, awaiting confirmation")
            self._publish(
                "output",
                text="Sign-in approved; confirm to finish connecting",
                stream="system",
            )
            return
        if self.state != SessionState.CONNECTING:
            return
        if self.variant == "interactive" and not self.second_factor_submitted:
            await self.terminate(
                "second factor skipped",
                error=AuthFailure(
                    "Interactive sign-in completed without a second factor",
                    output_tail=list(self.output_tail),
                ),
            )
            return
        self._transition(SessionState.CONNECTED)
        self._connected.set()
        logger.info(f"[{self.id}] Connected to tenant {self.tenant_id}")
        self._publish("connected")


def _discard_outcome(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


def _error_fields(error: ShellSessionError) -> dict[str, Any]:
    fields: dict[str, Any] = {"code": error.code, "message": error.message}
    if error.retry_hint:
        fields["retryHint"] = error.retry_hint
    return fields
