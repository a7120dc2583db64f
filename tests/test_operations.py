"""
Tests for the high-level operation catalogue.
"""

import pytest
import pytest_asyncio

from ucrbridge.errors import OperationFailed, ProtocolViolation
from ucrbridge.shell.operations import (
    OPERATIONS,
    POLICY_TYPES,
    get_operation,
    run_operation,
)
from ucrbridge.shell.session import Session, SessionState


class ScriptedSession:
    """Records scripts and replays canned results."""

    def __init__(self, results=None, state=SessionState.CONNECTED):
        self.id = "ps-scripted"
        self.state = state
        self.scripts: list[tuple[str, str]] = []
        self.results = list(results or [])

    @property
    def is_ready(self):
        return self.state in (SessionState.CONNECTED, SessionState.EXECUTING)

    @property
    def is_terminated(self):
        return self.state == SessionState.TERMINATED

    async def execute(self, script, label="command", timeout=None):
        self.scripts.append((label, script))
        result = self.results.pop(0) if self.results else None
        if isinstance(result, Exception):
            raise result
        return result


class TestCatalogue:
    def test_expected_operations_registered(self):
        assert {
            "get_tenant",
            "get_user",
            "list_voice_enabled_users",
            "list_voice_routing_policies",
            "list_policies",
            "get_phone_number_assignment",
            "assign_phone_number",
            "remove_phone_number",
            "grant_voice_routing_policy",
            "grant_policy",
            "assign_phone_and_policy",
        } <= set(OPERATIONS)

    def test_mutating_flags(self):
        mutating = {name for name, op in OPERATIONS.items() if op.mutating}
        assert mutating == {
            "assign_phone_number",
            "remove_phone_number",
            "grant_voice_routing_policy",
            "grant_policy",
            "assign_phone_and_policy",
        }

    def test_unknown_operation(self):
        with pytest.raises(ProtocolViolation, match="Unknown operation"):
            get_operation("format_c")

    def test_camel_case_arguments(self):
        op = get_operation("assign_phone_number")
        args = op.parse_args({"identity": "alice@contoso.com", "phoneNumber": "+15550100", "locationId": "loc-1"})
        assert args.phone_number == "+15550100"
        script = op.render(args)
        assert "Set-CsPhoneNumberAssignment -Identity 'alice@contoso.com'" in script
        assert "-PhoneNumber '+15550100' -PhoneNumberType DirectRouting -LocationId 'loc-1'" in script

    def test_location_is_optional(self):
        op = get_operation("assign_phone_number")
        script = op.render(op.parse_args({"identity": "a@b.c", "phoneNumber": "15550100"}))
        assert "-LocationId" not in script

    @pytest.mark.parametrize(
        "name, args",
        [
            ("get_user", {}),
            ("get_user", {"identity": ""}),
            ("assign_phone_number", {"identity": "a@b.c", "phoneNumber": "555-CALL-NOW"}),
            ("get_tenant", {"unexpected": 1}),
        ],
    )
    def test_invalid_arguments(self, name, args):
        with pytest.raises(ProtocolViolation, match="Invalid arguments"):
            get_operation(name).parse_args(args)

    def test_values_are_quoted(self):
        op = get_operation("get_user")
        script = op.render(op.parse_args({"identity": "o'brien@contoso.com'; Remove-Item *"}))
        assert "-Identity 'o''brien@contoso.com''; Remove-Item *'" in script

    def test_policy_types(self):
        for key in ("voiceRouting", "calling", "callerId", "dialPlan", "voicemail", "meeting", "messaging"):
            assert key in POLICY_TYPES
        op = get_operation("grant_policy")
        script = op.render(
            op.parse_args({"identity": "a@b.c", "policyType": "callerId", "policyName": "Anonymous"})
        )
        assert script.startswith("Grant-CsCallingLineIdentity -Identity 'a@b.c' -PolicyName 'Anonymous'")

    def test_unknown_policy_type(self):
        op = get_operation("list_policies")
        with pytest.raises(ProtocolViolation, match="Unknown policy type"):
            op.render(op.parse_args({"policyType": "parking"}))

    def test_policy_listing_without_description(self):
        op = get_operation("list_policies")
        script = op.render(op.parse_args({"policyType": "callHold"}))
        assert script == "Get-CsTeamsCallHoldPolicy | Select-Object Identity"


class TestRunOperation:
    @pytest.mark.asyncio
    async def test_read_operation_has_no_snapshots(self):
        session = ScriptedSession([{"TenantId": "t"}])
        outcome = await run_operation(session, "get_tenant")
        assert outcome.result == {"TenantId": "t"}
        assert outcome.before is None and outcome.after is None
        assert [label for label, _ in session.scripts] == ["get_tenant"]

    @pytest.mark.asyncio
    async def test_mutating_operation_snapshots_target(self):
        before = {"LineURI": None}
        after = {"LineURI": "tel:+15550100"}
        session = ScriptedSession([before, {"Identity": "a@b.c"}, after])

        outcome = await run_operation(
            session, "assign_phone_number", {"identity": "a@b.c", "phoneNumber": "+15550100"}
        )
        assert outcome.succeeded
        assert outcome.target == "a@b.c"
        assert outcome.before == before and outcome.after == after
        assert outcome.change_type == "phone_number_assigned"
        assert [label for label, _ in session.scripts] == [
            "assign_phone_number:before",
            "assign_phone_number",
            "assign_phone_number:after",
        ]

    @pytest.mark.asyncio
    async def test_remote_failure_is_captured(self):
        session = ScriptedSession([{"LineURI": None}, OperationFailed("Number not in inventory"), {"LineURI": None}])
        outcome = await run_operation(
            session, "assign_phone_number", {"identity": "a@b.c", "phoneNumber": "+15550100"}
        )
        assert not outcome.succeeded
        assert isinstance(outcome.error, OperationFailed)
        assert outcome.before == {"LineURI": None}

    @pytest.mark.asyncio
    async def test_not_connected(self):
        session = ScriptedSession(state=SessionState.AWAITING_SECOND_FACTOR)
        with pytest.raises(ProtocolViolation):
            await run_operation(session, "get_tenant")
        assert session.scripts == []

    @pytest.mark.asyncio
    async def test_invalid_arguments_run_nothing(self):
        session = ScriptedSession()
        with pytest.raises(ProtocolViolation):
            await run_operation(session, "get_user", {"who": "alice"})
        assert session.scripts == []


@pytest_asyncio.fixture
async def connected_session(fake_config, certificate_credentials):
    session = Session("ps-ops", certificate_credentials, "contoso", "ops@contoso.com", config=fake_config())
    await session.start()
    await session.wait_connected(timeout=10)
    yield session
    await session.terminate("test teardown")


class TestAgainstFakeShell:
    @pytest.mark.asyncio
    async def test_assign_phone_and_policy(self, connected_session):
        outcome = await connected_session.run_operation(
            "assign_phone_and_policy",
            {"identity": "alice@contoso.com", "phoneNumber": "+15550111", "policyName": "US-East"},
        )
        assert outcome.succeeded
        assert outcome.before["LineURI"] is None
        assert outcome.after["LineURI"] == "tel:+15550111"
        assert outcome.after["OnlineVoiceRoutingPolicy"] == "US-East"

    @pytest.mark.asyncio
    async def test_unknown_user_fails_remotely(self, connected_session):
        outcome = await connected_session.run_operation(
            "remove_phone_number", {"identity": "nobody@contoso.com"}
        )
        assert not outcome.succeeded
        assert "Management object not found" in outcome.error.message
        assert connected_session.state == SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_list_voice_enabled_users(self, connected_session):
        outcome = await connected_session.run_operation("list_voice_enabled_users")
        assert [u["UserPrincipalName"] for u in outcome.result] == ["alice@contoso.com"]

    @pytest.mark.asyncio
    async def test_phone_number_assignment_empty(self, connected_session):
        outcome = await connected_session.run_operation(
            "get_phone_number_assignment", {"identity": "alice@contoso.com"}
        )
        assert outcome.succeeded
        assert outcome.result is None
