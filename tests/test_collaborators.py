"""
Tests for the shipped credential store, authorizer and audit sinks.
"""

import json

import pytest

from ucrbridge.errors import AuditFailure, CredentialsNotFound
from ucrbridge.relay.auth import OperatorIdentity
from ucrbridge.relay.collaborators import (
    AuditRecord,
    JsonlAuditSink,
    MemoryAuditSink,
    OperatorTenantAuthorizer,
    StaticCredentialStore,
)
from ucrbridge.shell.credentials import CertificateCredentials, InteractiveCredentials

ENTRIES = {
    "contoso": [
        {
            "ref": "app",
            "kind": "certificate",
            "app_id": "app-1",
            "certificate_thumbprint": "ABC",
            "tenant_directory_id": "contoso.onmicrosoft.com",
        },
        {"ref": "admin", "kind": "interactive", "username": "admin@contoso.com", "secret": "pw"},
    ],
    "broken": [{"kind": "interactive", "username": "x"}],
}


def record(**overrides) -> AuditRecord:
    values = dict(
        operator="alice@contoso.com",
        tenant="contoso",
        target_identity="bob@contoso.com",
        change_type="phone_number_assigned",
        operation="assign_phone_number",
        outcome="success",
    )
    values.update(overrides)
    return AuditRecord(**values)


class TestStaticCredentialStore:
    @pytest.mark.asyncio
    async def test_first_credential_by_default(self):
        store = StaticCredentialStore(ENTRIES)
        descriptor = await store.get_credentials("contoso")
        assert isinstance(descriptor, CertificateCredentials)
        assert descriptor.app_id == "app-1"

    @pytest.mark.asyncio
    async def test_select_by_ref(self):
        store = StaticCredentialStore(ENTRIES)
        descriptor = await store.get_credentials("contoso", "admin")
        assert isinstance(descriptor, InteractiveCredentials)
        assert descriptor.secret.get_secret_value() == "pw"
        assert "pw" not in repr(descriptor)

    @pytest.mark.asyncio
    async def test_missing(self):
        store = StaticCredentialStore(ENTRIES)
        with pytest.raises(CredentialsNotFound):
            await store.get_credentials("fabrikam")
        with pytest.raises(CredentialsNotFound):
            await store.get_credentials("contoso", "nope")

    @pytest.mark.asyncio
    async def test_invalid_entry(self):
        store = StaticCredentialStore(ENTRIES)
        with pytest.raises(CredentialsNotFound, match="invalid"):
            await store.get_credentials("broken")

    @pytest.mark.asyncio
    async def test_from_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps(ENTRIES), encoding="utf-8")
        store = StaticCredentialStore.from_file(path)
        assert set(store.tenants()) == {"contoso", "broken"}


class TestOperatorTenantAuthorizer:
    @pytest.mark.asyncio
    async def test_grants(self):
        authorizer = OperatorTenantAuthorizer({"Alice@Contoso.com": ["contoso"]})
        alice = OperatorIdentity("alice@contoso.com")
        assert await authorizer.is_authorized(alice, "contoso")
        assert not await authorizer.is_authorized(alice, "fabrikam")

        authorizer.grant("alice@contoso.com", "fabrikam")
        assert await authorizer.is_authorized(alice, "fabrikam")

    @pytest.mark.asyncio
    async def test_admin_sees_everything(self):
        authorizer = OperatorTenantAuthorizer()
        assert await authorizer.is_authorized(OperatorIdentity("root@x.com", role="admin"), "any")
        assert not await authorizer.is_authorized(OperatorIdentity("op@x.com"), "any")


class TestAuditSinks:
    @pytest.mark.asyncio
    async def test_jsonl_appends(self, tmp_path):
        sink = JsonlAuditSink(tmp_path / "audit" / "audit.jsonl")
        await sink.append(record(before_state={"LineURI": None}, after_state={"LineURI": "tel:+1"}))
        await sink.append(record(outcome="failure", detail="boom"))

        entries = sink.read()
        assert len(entries) == 2
        assert entries[0]["before_state"] == {"LineURI": None}
        assert entries[1]["outcome"] == "failure"
        assert sink.read(last_n=1)[0]["detail"] == "boom"

    @pytest.mark.asyncio
    async def test_jsonl_write_failure(self, tmp_path):
        sink = JsonlAuditSink(tmp_path / "audit.jsonl")
        sink.path = tmp_path  # a directory cannot be opened for append
        with pytest.raises(AuditFailure):
            await sink.append(record())

    @pytest.mark.asyncio
    async def test_memory_sink(self):
        sink = MemoryAuditSink()
        await sink.append(record())
        assert len(sink.records) == 1
        sink.fail = True
        with pytest.raises(AuditFailure):
            await sink.append(record())
