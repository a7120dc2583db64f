"""
Pydantic models for the relay.

Covers:
- WebSocket protocol messages (client -> server and server -> client)
- REST API response schemas

Wire names are camelCase (``sessionId``, ``tenantId``); Python attributes
are snake_case.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ─── Client -> Server ───────────────────────────────────────────────


class CreateSession(WireModel):
    type: Literal["create_session"] = "create_session"
    tenant_id: str = Field(min_length=1)
    credentials_ref: Optional[str] = None


class SubmitSecondFactor(WireModel):
    type: Literal["submit_second_factor"] = "submit_second_factor"
    session_id: str
    code: str = Field(min_length=1, max_length=64)

    def __repr__(self) -> str:
        return f"SubmitSecondFactor(session_id={self.session_id!r}, code=<{len(self.code)} chars>)"

    __str__ = __repr__


class ConfirmSecondFactor(WireModel):
    """Operator acknowledged an out-of-band (push) approval."""

    type: Literal["confirm_second_factor"] = "confirm_second_factor"
    session_id: str


class RunOperation(WireModel):
    type: Literal["run_operation"] = "run_operation"
    session_id: str
    operation: str
    args: dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None


class CloseSession(WireModel):
    type: Literal["close_session"] = "close_session"
    session_id: str


class AttachSession(WireModel):
    type: Literal["attach_session"] = "attach_session"
    session_id: str


class Ping(WireModel):
    type: Literal["ping"] = "ping"


ClientMessage = Annotated[
    Union[
        CreateSession,
        SubmitSecondFactor,
        ConfirmSecondFactor,
        RunOperation,
        CloseSession,
        AttachSession,
        Ping,
    ],
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter = TypeAdapter(ClientMessage)


def parse_client_message(data: Any):
    """Validate a raw client frame. Raises ``pydantic.ValidationError``."""
    return _client_adapter.validate_python(data)


# ─── Server -> Client ───────────────────────────────────────────────


class SessionCreated(WireModel):
    type: Literal["session_created"] = "session_created"
    session_id: str
    state: str


class SessionAttached(WireModel):
    type: Literal["session_attached"] = "session_attached"
    session_id: str
    state: str


class OperationResult(WireModel):
    type: Literal["operation_result"] = "operation_result"
    session_id: str
    operation: str
    request_id: Optional[str] = None
    success: bool = True
    result: Any = None
    error: Optional[dict[str, Any]] = None


class Pong(WireModel):
    type: Literal["pong"] = "pong"


# ─── REST API Models ────────────────────────────────────────────────


class SessionInfo(WireModel):
    session_id: str
    tenant_id: str
    operator: str
    variant: str
    state: str
    degraded: bool
    created_at: str
    last_activity: str
    pending_commands: int


class SessionListResponse(WireModel):
    sessions: list[SessionInfo]
    count: int
