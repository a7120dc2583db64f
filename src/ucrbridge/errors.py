"""
Error taxonomy for shell sessions and the relay.

Every error carries a stable ``code`` (sent to the browser client) and an
optional retry hint. Terminal session failures always carry a hint telling
the operator to start a new session.
"""

from typing import Any, Optional

NEW_SESSION_HINT = "Start a new session."


class ShellSessionError(Exception):
    """Base class for all session manager errors."""

    code = "session_error"
    terminal = False

    def __init__(self, message: str, retry_hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.retry_hint = retry_hint

    def to_message(self, session_id: Optional[str] = None) -> dict[str, Any]:
        """Render as a relay ``error`` message."""
        msg: dict[str, Any] = {
            "type": "error",
            "code": self.code,
            "message": self.message,
        }
        if session_id:
            msg["sessionId"] = session_id
        if self.retry_hint:
            msg["retryHint"] = self.retry_hint
        return msg


class LaunchFailure(ShellSessionError):
    """The automation subprocess could not be started."""

    code = "launch_failure"
    terminal = True

    def __init__(self, message: str):
        super().__init__(message, retry_hint=NEW_SESSION_HINT)


class AuthFailure(ShellSessionError):
    """The subprocess rejected the supplied credential variant."""

    code = "auth_failure"
    terminal = True

    def __init__(self, message: str, output_tail: Optional[list[str]] = None):
        super().__init__(message, retry_hint=NEW_SESSION_HINT)
        self.output_tail = list(output_tail or [])


class Timeout(ShellSessionError):
    """A command or the second-factor wait exceeded its bound."""

    code = "timeout"

    def __init__(
        self, message: str, retry_hint: Optional[str] = None, terminal: bool = False
    ):
        super().__init__(message, retry_hint=retry_hint)
        self.terminal = terminal


class MalformedResult(ShellSessionError):
    """A structured block did not parse as JSON."""

    code = "malformed_result"

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class OperationFailed(ShellSessionError):
    """The remote administrative call reported an error."""

    code = "operation_failed"


class ProtocolViolation(ShellSessionError):
    """A client message is inconsistent with the current session state."""

    code = "protocol_violation"


class ResourceExhausted(ShellSessionError):
    """Registry or spawn limits were reached."""

    code = "resource_exhausted"


class SessionNotFound(ShellSessionError):
    """No session with the given id is registered."""

    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(
            f"Session not found: {session_id}", retry_hint=NEW_SESSION_HINT
        )
        self.session_id = session_id


class NotAuthorized(ShellSessionError):
    """The operator may not act on the requested tenant or session."""

    code = "not_authorized"


class CredentialsNotFound(ShellSessionError):
    """The credential store has nothing for the requested tenant."""

    code = "credentials_not_found"


class AuditFailure(ShellSessionError):
    """An audit record could not be appended."""

    code = "audit_failed"
