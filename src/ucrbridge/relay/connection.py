"""
One browser connection on the shell relay.

A RelayConnection is bound to one authenticated operator and attached to at
most one session at a time. Session events reach the browser through a
forwarder task that drains the session's subscriber queue. Dropping the
connection only unsubscribes: the session and its queued commands keep
running until they are closed or reclaimed.
"""

import asyncio
import json
from typing import Any, Optional

from pydantic import ValidationError
from starlette.websockets import WebSocket, WebSocketDisconnect

from ucrbridge.errors import (
    AuditFailure,
    NotAuthorized,
    ProtocolViolation,
    SessionNotFound,
    ShellSessionError,
)
from ucrbridge.logger import get_logger
from ucrbridge.relay.auth import OperatorIdentity
from ucrbridge.relay.collaborators import (
    AuditRecord,
    AuditSink,
    CredentialStore,
    TenantAuthorizer,
)
from ucrbridge.relay.models import (
    AttachSession,
    CloseSession,
    ConfirmSecondFactor,
    CreateSession,
    OperationResult,
    Ping,
    Pong,
    RunOperation,
    SessionAttached,
    SessionCreated,
    SubmitSecondFactor,
    parse_client_message,
)
from ucrbridge.shell.registry import SessionRegistry
from ucrbridge.shell.session import Session

logger = get_logger(__name__)


def _error_body(error: ShellSessionError) -> dict[str, Any]:
    return {k: v for k, v in error.to_message().items() if k != "type"}


class RelayConnection:
    def __init__(
        self,
        websocket: WebSocket,
        operator: OperatorIdentity,
        registry: SessionRegistry,
        credentials: CredentialStore,
        authorizer: TenantAuthorizer,
        audit: AuditSink,
    ):
        self.websocket = websocket
        self.operator = operator
        self.registry = registry
        self.credentials = credentials
        self.authorizer = authorizer
        self.audit = audit

        self.session: Optional[Session] = None
        self._queue: Optional[asyncio.Queue] = None
        self._forwarder: Optional[asyncio.Task] = None
        self._operations: set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def session_id(self) -> Optional[str]:
        return self.session.id if self.session else None

    # -- Message loop -----------------------------------------------------------

    async def run(self) -> None:
        """Process client frames until the socket closes."""
        while True:
            try:
                text = await self.websocket.receive_text()
            except WebSocketDisconnect:
                break
            await self.handle_text(text)

    async def handle_text(self, text: str) -> None:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            await self.send(ProtocolViolation("Messages must be JSON objects").to_message())
            return
        await self.handle_message(data)

    async def handle_message(self, data: Any) -> None:
        try:
            msg = parse_client_message(data)
        except ValidationError as e:
            await self.send(
                ProtocolViolation(f"Invalid message: {_summarize(e)}").to_message(
                    _session_hint(data)
                )
            )
            return

        session_id = getattr(msg, "session_id", None)
        try:
            if isinstance(msg, CreateSession):
                await self._create_session(msg)
            elif isinstance(msg, SubmitSecondFactor):
                await self._submit_second_factor(msg)
            elif isinstance(msg, ConfirmSecondFactor):
                await self._owned_session(msg.session_id).confirm_second_factor()
            elif isinstance(msg, RunOperation):
                task = asyncio.create_task(self._run_operation(msg))
                self._operations.add(task)
                task.add_done_callback(self._operations.discard)
            elif isinstance(msg, CloseSession):
                await self._close_session(msg)
            elif isinstance(msg, AttachSession):
                await self._attach_session(msg)
            elif isinstance(msg, Ping):
                await self.send(Pong().to_wire())
        except ShellSessionError as e:
            logger.info(f"[{self.operator.email}] {msg.type} rejected: {e.code}: {e.message}")
            await self.send(e.to_message(session_id))

    async def close(self) -> None:
        """Connection dropped: stop forwarding. Sessions are left running."""
        self._closed = True
        self._detach()
        if self._operations:
            logger.info(
                f"[{self.operator.email}] Disconnected with {len(self._operations)} "
                "operations still running"
            )

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            return
        async with self._send_lock:
            try:
                await self.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"[{self.operator.email}] Send failed, connection closed: {e}")
                self._closed = True

    # -- Handlers ---------------------------------------------------------------

    async def _create_session(self, msg: CreateSession) -> None:
        if not await self.authorizer.is_authorized(self.operator, msg.tenant_id):
            raise NotAuthorized(f"Not authorized for tenant {msg.tenant_id}")

        descriptor = await self.credentials.get_credentials(msg.tenant_id, msg.credentials_ref)
        session_id = await self.registry.create_session(
            descriptor, msg.tenant_id, self.operator.email
        )
        session = self.registry.get_session(session_id)
        self._attach(session)
        await self.send(SessionCreated(session_id=session_id, state=session.state.value).to_wire())

    async def _submit_second_factor(self, msg: SubmitSecondFactor) -> None:
        session = self._owned_session(msg.session_id)
        await session.submit_second_factor(msg.code)

    async def _run_operation(self, msg: RunOperation) -> None:
        try:
            session = self._owned_session(msg.session_id)
            outcome = await session.run_operation(msg.operation, msg.args)
        except ShellSessionError as e:
            await self.send(
                OperationResult(
                    session_id=msg.session_id,
                    operation=msg.operation,
                    request_id=msg.request_id,
                    success=False,
                    error=_error_body(e),
                ).to_wire()
            )
            return

        result = OperationResult(
            session_id=session.id,
            operation=msg.operation,
            request_id=msg.request_id,
            success=outcome.succeeded,
            result=outcome.result,
            error=_error_body(outcome.error) if outcome.error else None,
        )
        await self.send(result.to_wire())

        record = AuditRecord(
            operator=self.operator.email,
            tenant=session.tenant_id,
            target_identity=outcome.target,
            change_type=outcome.change_type,
            operation=outcome.operation,
            outcome="success" if outcome.succeeded else "failure",
            before_state=outcome.before,
            after_state=outcome.after,
            detail=outcome.error.message if outcome.error else None,
            session_id=session.id,
        )
        try:
            await self.audit.append(record)
        except AuditFailure as e:
            logger.error(f"[{session.id}] Audit append failed for {msg.operation}: {e.message}")
            await self.send(e.to_message(session.id))
        except Exception as e:
            logger.error(f"[{session.id}] Audit append failed for {msg.operation}: {e}")
            await self.send(AuditFailure(f"Could not record audit entry: {e}").to_message(session.id))

    async def _close_session(self, msg: CloseSession) -> None:
        session = self._owned_session(msg.session_id)
        attached = session is self.session
        await self.registry.destroy_session(session.id, "closed by operator")
        if not attached:
            await self.send(
                {"type": "session_closed", "sessionId": session.id, "reason": "closed by operator"}
            )

    async def _attach_session(self, msg: AttachSession) -> None:
        session = self._owned_session(msg.session_id)
        if session is not self.session:
            self._attach(session)
        await self.send(
            SessionAttached(session_id=session.id, state=session.state.value).to_wire()
        )

    # -- Subscription -----------------------------------------------------------

    def _owned_session(self, session_id: str) -> Session:
        session = self.registry.get_session(session_id)
        if session.operator != self.operator.email:
            # Indistinguishable from a missing session for other operators.
            raise SessionNotFound(session_id)
        return session

    def _attach(self, session: Session) -> None:
        self._detach()
        self.session = session
        self._queue = session.subscribe()
        self._forwarder = asyncio.create_task(self._forward(session, self._queue))

    def _detach(self) -> None:
        if self.session is not None and self._queue is not None:
            self.session.unsubscribe(self._queue)
        forwarder = self._forwarder
        if forwarder is not None and forwarder is not asyncio.current_task():
            forwarder.cancel()
        self.session = None
        self._queue = None
        self._forwarder = None

    async def _forward(self, session: Session, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            await self.send(event.to_message())
            if event.type == "session_closed":
                break
        if self.session is session:
            self._detach()


def _summarize(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'message'}: {err['msg']}"
        for err in error.errors()
    )


def _session_hint(data: Any) -> Optional[str]:
    if isinstance(data, dict) and isinstance(data.get("sessionId"), str):
        return data["sessionId"]
    return None
