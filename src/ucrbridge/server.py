"""
ASGI application for the ucrbridge relay.

Run with ``ucrbridge serve`` or ``python -m ucrbridge.server``.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from starlette.applications import Starlette
from starlette.routing import Route, WebSocketRoute

from ucrbridge.config import CONFIG, Config
from ucrbridge.logger import get_logger, setup_logging
from ucrbridge.relay.auth import TokenSigner
from ucrbridge.relay.collaborators import (
    AuditSink,
    CredentialStore,
    JsonlAuditSink,
    OperatorTenantAuthorizer,
    StaticCredentialStore,
    TenantAuthorizer,
)
from ucrbridge.relay.routes import (
    delete_session,
    health,
    list_sessions,
    shell_websocket_endpoint,
)
from ucrbridge.shell.registry import SessionRegistry
from ucrbridge.shell.supervisor import LifecycleSupervisor

logger = get_logger(__name__)


def configure_logging() -> None:
    setup_logging(level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE"))


def create_app(
    config: Optional[Config] = None,
    registry: Optional[SessionRegistry] = None,
    credentials: Optional[CredentialStore] = None,
    authorizer: Optional[TenantAuthorizer] = None,
    audit: Optional[AuditSink] = None,
    signer: Optional[TokenSigner] = None,
    supervise: bool = True,
) -> Starlette:
    """
    Build the application. Anything not injected is built from ``config``
    when the app starts.
    """
    config = config or CONFIG

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Application startup - initializing services")
        state = app.state
        state.config = config
        state.registry = registry or SessionRegistry(config)
        state.signer = signer or TokenSigner(config.token_secret, config.token_ttl)
        state.credentials = credentials or (
            StaticCredentialStore.from_file(config.credentials_file)
            if config.credentials_file
            else StaticCredentialStore()
        )
        state.authorizer = authorizer or (
            OperatorTenantAuthorizer.from_file(config.operators_file)
            if config.operators_file
            else OperatorTenantAuthorizer()
        )
        state.audit = audit or JsonlAuditSink(config.audit_log_path)

        state.supervisor = None
        if supervise:
            state.supervisor = LifecycleSupervisor(state.registry, config=config)
            await state.supervisor.start()

        try:
            yield
        finally:
            logger.info("Application shutdown - closing sessions")
            if state.supervisor is not None:
                await state.supervisor.stop()
            await state.registry.close_all()

    return Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/sessions", list_sessions, methods=["GET"]),
            Route("/sessions/{session_id}", delete_session, methods=["DELETE"]),
            WebSocketRoute("/ws/shell", shell_websocket_endpoint),
        ],
        lifespan=lifespan,
    )


app = create_app()


def run(host: Optional[str] = None, port: Optional[int] = None) -> None:
    configure_logging()
    host = host or CONFIG.host
    port = port or CONFIG.port
    logger.info(f"Starting ucrbridge relay on http://{host}:{port}")
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=os.getenv("LOG_LEVEL", "INFO").lower(),
        ws="websockets",
    )


if __name__ == "__main__":
    run()
