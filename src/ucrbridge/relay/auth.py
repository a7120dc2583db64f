"""
Operator bearer tokens.

A token is ``<payload>.<signature>``, both base64url without padding. The
payload is compact JSON ``{"sub": email, "role": role, "exp": unix_seconds}``
and the signature is HMAC-SHA256 over the encoded payload.
"""

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional

from starlette.requests import HTTPConnection

from ucrbridge.errors import NotAuthorized

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class OperatorIdentity:
    email: str
    role: str = "operator"
    expires_at: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class TokenSigner:
    """Issues and verifies short-lived operator tokens."""

    def __init__(self, secret: str, ttl: int = 900):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._key = secret.encode()
        self.ttl = ttl

    def _sign(self, payload: str) -> str:
        return _b64encode(hmac.new(self._key, payload.encode(), hashlib.sha256).digest())

    def issue(
        self,
        email: str,
        role: str = "operator",
        ttl: Optional[int] = None,
        now: Optional[float] = None,
    ) -> str:
        issued = int(now if now is not None else time.time())
        claims = {"sub": email, "role": role, "exp": issued + (ttl or self.ttl)}
        payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode())
        return f"{payload}.{self._sign(payload)}"

    def verify(self, token: Optional[str], now: Optional[float] = None) -> OperatorIdentity:
        """
        Raises:
            NotAuthorized: If the token is missing, tampered with, or expired.
        """
        if not token or token.count(".") != 1:
            raise NotAuthorized("Missing or malformed token")
        payload, signature = token.split(".")
        if not hmac.compare_digest(self._sign(payload), signature):
            raise NotAuthorized("Invalid token signature")
        try:
            claims = json.loads(_b64decode(payload))
            email = str(claims["sub"])
            role = str(claims.get("role", "operator"))
            expires_at = int(claims["exp"])
        except (ValueError, KeyError, TypeError) as e:
            raise NotAuthorized(f"Invalid token payload: {e}") from None
        if expires_at < (now if now is not None else time.time()):
            raise NotAuthorized("Token expired")
        return OperatorIdentity(email=email, role=role, expires_at=expires_at)


def extract_token(conn: HTTPConnection) -> Optional[str]:
    """Read a bearer token from the Authorization header or ``?token=``."""
    auth = conn.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip()
    return conn.query_params.get("token")
