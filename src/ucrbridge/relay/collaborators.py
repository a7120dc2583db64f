"""
External collaborators of the relay.

The relay never stores tenants, credentials or audit history itself. It talks
to three small interfaces, and ships file-backed implementations good enough
for a single-host deployment:

- ``CredentialStore``: resolves a tenant to a credential descriptor.
- ``TenantAuthorizer``: decides whether an operator may act on a tenant.
- ``AuditSink``: records every completed high-level operation.
"""

import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, Union

from pydantic import ValidationError

from ucrbridge.errors import AuditFailure, CredentialsNotFound
from ucrbridge.logger import get_logger
from ucrbridge.relay.auth import OperatorIdentity
from ucrbridge.shell.credentials import parse_descriptor
from ucrbridge.shell.launcher import Descriptor

logger = get_logger(__name__)


# ─── Interfaces ─────────────────────────────────────────────────────


class CredentialStore(Protocol):
    async def get_credentials(
        self, tenant_id: str, credentials_ref: Optional[str] = None
    ) -> Descriptor: ...


class TenantAuthorizer(Protocol):
    async def is_authorized(self, operator: OperatorIdentity, tenant_id: str) -> bool: ...


@dataclass
class AuditRecord:
    operator: str
    tenant: str
    target_identity: Optional[str]
    change_type: str
    operation: str
    outcome: str
    before_state: Any = None
    after_state: Any = None
    detail: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditSink(Protocol):
    async def append(self, record: AuditRecord) -> None: ...


# ─── Credentials ────────────────────────────────────────────────────


def _load_json(path: Union[str, Path]) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


class StaticCredentialStore:
    """
    Credentials held in memory, optionally loaded from a JSON file.

    File layout::

        {
          "<tenant-id>": [
            {"ref": "teams-admin", "kind": "certificate", "app_id": "...",
             "certificate_thumbprint": "...", "tenant_directory_id": "..."},
            {"ref": "break-glass", "kind": "interactive", "username": "...",
             "secret": "..."}
          ]
        }

    When no ref is requested the tenant's first credential is used.
    """

    def __init__(self, entries: Optional[dict[str, list[dict[str, Any]]]] = None):
        self._entries: dict[str, list[dict[str, Any]]] = {
            tenant: list(items) for tenant, items in (entries or {}).items()
        }

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticCredentialStore":
        store = cls(_load_json(path))
        logger.info(f"Loaded credentials for {len(store._entries)} tenants from {path}")
        return store

    def tenants(self) -> list[str]:
        return list(self._entries)

    async def get_credentials(
        self, tenant_id: str, credentials_ref: Optional[str] = None
    ) -> Descriptor:
        items = self._entries.get(tenant_id) or []
        if credentials_ref is not None:
            items = [item for item in items if item.get("ref") == credentials_ref]
        if not items:
            suffix = f" (ref {credentials_ref})" if credentials_ref else ""
            raise CredentialsNotFound(f"No credentials for tenant {tenant_id}{suffix}")

        entry = {k: v for k, v in items[0].items() if k != "ref"}
        try:
            return parse_descriptor(entry)
        except ValidationError as e:
            raise CredentialsNotFound(
                f"Stored credentials for tenant {tenant_id} are invalid: "
                f"{e.error_count()} validation errors"
            ) from None


# ─── Authorization ──────────────────────────────────────────────────


class OperatorTenantAuthorizer:
    """
    Maps operator email to the tenants they may administer.

    Admins may act on every tenant. File layout: ``{"<email>": ["<tenant-id>", ...]}``.
    """

    def __init__(self, grants: Optional[dict[str, list[str]]] = None):
        self._grants = {
            email.lower(): set(tenants) for email, tenants in (grants or {}).items()
        }

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "OperatorTenantAuthorizer":
        return cls(_load_json(path))

    def grant(self, email: str, tenant_id: str) -> None:
        self._grants.setdefault(email.lower(), set()).add(tenant_id)

    async def is_authorized(self, operator: OperatorIdentity, tenant_id: str) -> bool:
        if operator.is_admin:
            return True
        return tenant_id in self._grants.get(operator.email.lower(), set())


# ─── Audit ──────────────────────────────────────────────────────────


class JsonlAuditSink:
    """Append-only JSONL audit log, one record per line."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def append(self, record: AuditRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False, default=str) + "\n"
        try:
            async with self._lock:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            raise AuditFailure(f"Could not write audit record: {e}") from e

    def read(self, last_n: Optional[int] = None) -> list[dict]:
        if not self.path.exists():
            return []
        entries = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        if last_n is not None:
            return entries[-last_n:]
        return entries


class MemoryAuditSink:
    """Keeps records in a list. Set ``fail`` to simulate an unavailable sink."""

    def __init__(self):
        self.records: list[AuditRecord] = []
        self.fail = False

    async def append(self, record: AuditRecord) -> None:
        if self.fail:
            raise AuditFailure("Audit sink unavailable")
        self.records.append(record)
