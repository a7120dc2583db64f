"""
Routes for the shell relay.

Provides:
- WebSocket endpoint for browser clients (/ws/shell?token=...)
- REST endpoints for health and session management
"""

from starlette.requests import HTTPConnection, Request
from starlette.responses import JSONResponse
from starlette.websockets import WebSocket, WebSocketDisconnect

from ucrbridge.errors import NotAuthorized, SessionNotFound
from ucrbridge.logger import get_logger
from ucrbridge.relay.auth import OperatorIdentity, extract_token
from ucrbridge.relay.connection import RelayConnection
from ucrbridge.relay.models import SessionInfo, SessionListResponse

logger = get_logger(__name__)

UNAUTHORIZED_CLOSE_CODE = 4401


def _get_registry(conn: HTTPConnection):
    """Get SessionRegistry from app state."""
    return getattr(conn.app.state, "registry", None)


def _authenticate(conn: HTTPConnection) -> OperatorIdentity:
    return conn.app.state.signer.verify(extract_token(conn))


async def shell_websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for the browser console.

    Protocol:
        1. Client connects to /ws/shell?token=<bearer>; a bad token is
           refused with close code 4401 before the socket is accepted.
        2. Client sends JSON messages with a ``type`` field
           (create_session, submit_second_factor, run_operation,
           close_session, attach_session, ping).
        3. Server pushes session events and replies on the same socket.
    """
    registry = _get_registry(websocket)
    if registry is None:
        await websocket.close(code=1011, reason="Session registry not initialized")
        return

    try:
        operator = _authenticate(websocket)
    except NotAuthorized as e:
        logger.info(f"Rejected relay connection: {e.message}")
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE, reason="Unauthorized")
        return

    await websocket.accept()
    state = websocket.app.state
    connection = RelayConnection(
        websocket,
        operator,
        registry,
        credentials=state.credentials,
        authorizer=state.authorizer,
        audit=state.audit,
    )
    logger.info(f"Relay connected: {operator.email} ({operator.role})")

    try:
        await connection.run()
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Relay connection error for {operator.email}: {e}")
    finally:
        await connection.close()
        logger.info(f"Relay disconnected: {operator.email}")


async def health(request: Request) -> JSONResponse:
    """GET /health"""
    registry = _get_registry(request)
    return JSONResponse(
        {"status": "ok", "sessions": len(registry) if registry is not None else 0}
    )


async def list_sessions(request: Request) -> JSONResponse:
    """GET /sessions: the caller's sessions (admins see all)."""
    registry = _get_registry(request)
    if registry is None:
        return JSONResponse({"error": "Session registry not initialized"}, status_code=503)
    try:
        operator = _authenticate(request)
    except NotAuthorized as e:
        return JSONResponse({"error": e.message}, status_code=401)

    owner = None if operator.is_admin else operator.email
    sessions = [SessionInfo(**s) for s in registry.describe(owner)]
    resp = SessionListResponse(sessions=sessions, count=len(sessions))
    return JSONResponse(resp.to_wire())


async def delete_session(request: Request) -> JSONResponse:
    """DELETE /sessions/{session_id}"""
    registry = _get_registry(request)
    if registry is None:
        return JSONResponse({"error": "Session registry not initialized"}, status_code=503)
    try:
        operator = _authenticate(request)
    except NotAuthorized as e:
        return JSONResponse({"error": e.message}, status_code=401)

    session_id = request.path_params.get("session_id", "")
    try:
        session = registry.get_session(session_id)
        if session.operator != operator.email and not operator.is_admin:
            raise SessionNotFound(session_id)
    except SessionNotFound as e:
        return JSONResponse({"error": e.message}, status_code=404)

    await registry.destroy_session(session_id, f"closed by {operator.email}")
    return JSONResponse({"sessionId": session_id, "closed": True})
