"""
High-level tenant operations.

Each operation is a small PowerShell body registered with ``@operation``. The
session wraps the body so its output comes back as one JSON block. Mutating
operations are bracketed by a snapshot of the target user so the audit trail
gets a before/after state.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ucrbridge.errors import ProtocolViolation, ShellSessionError
from ucrbridge.logger import get_logger
from ucrbridge.shell.launcher import ps_quote

logger = get_logger(__name__)


# ─── Argument models ────────────────────────────────────────────────


class OperationArgs(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


class NoArgs(OperationArgs):
    pass


class IdentityArgs(OperationArgs):
    identity: str = Field(min_length=1, max_length=256)


class PolicyTypeArgs(OperationArgs):
    policy_type: str


class PhoneNumberArgs(IdentityArgs):
    phone_number: str = Field(pattern=r"^\+?[0-9]{4,15}$")
    location_id: Optional[str] = Field(default=None, max_length=64)


class PolicyNameArgs(IdentityArgs):
    policy_name: str = Field(min_length=1, max_length=256)


class PolicyGrantArgs(PolicyNameArgs):
    policy_type: str


class PhoneAndPolicyArgs(PhoneNumberArgs):
    policy_name: str = Field(min_length=1, max_length=256)


# ─── Policy types ───────────────────────────────────────────────────


@dataclass(frozen=True)
class PolicyType:
    display_name: str
    get_cmdlet: str
    grant_cmdlet: str
    user_property: str
    supports_description: bool = True


POLICY_TYPES: dict[str, PolicyType] = {
    "voiceRouting": PolicyType(
        "Voice Routing Policy",
        "Get-CsOnlineVoiceRoutingPolicy",
        "Grant-CsOnlineVoiceRoutingPolicy",
        "OnlineVoiceRoutingPolicy",
    ),
    "audioConferencing": PolicyType(
        "Audio Conferencing Policy",
        "Get-CsTeamsAudioConferencingPolicy",
        "Grant-CsTeamsAudioConferencingPolicy",
        "TeamsAudioConferencingPolicy",
    ),
    "callHold": PolicyType(
        "Call Hold Policy",
        "Get-CsTeamsCallHoldPolicy",
        "Grant-CsTeamsCallHoldPolicy",
        "TeamsCallHoldPolicy",
        supports_description=False,
    ),
    "callerId": PolicyType(
        "Caller ID Policy",
        "Get-CsCallingLineIdentity",
        "Grant-CsCallingLineIdentity",
        "CallingLineIdentity",
    ),
    "calling": PolicyType(
        "Calling Policy",
        "Get-CsTeamsCallingPolicy",
        "Grant-CsTeamsCallingPolicy",
        "TeamsCallingPolicy",
    ),
    "emergencyCallRouting": PolicyType(
        "Emergency Call Routing Policy",
        "Get-CsTeamsEmergencyCallRoutingPolicy",
        "Grant-CsTeamsEmergencyCallRoutingPolicy",
        "TeamsEmergencyCallRoutingPolicy",
    ),
    "emergencyCalling": PolicyType(
        "Emergency Calling Policy",
        "Get-CsTeamsEmergencyCallingPolicy",
        "Grant-CsTeamsEmergencyCallingPolicy",
        "TeamsEmergencyCallingPolicy",
    ),
    "meeting": PolicyType(
        "Meeting Policy",
        "Get-CsTeamsMeetingPolicy",
        "Grant-CsTeamsMeetingPolicy",
        "TeamsMeetingPolicy",
    ),
    "voiceApplications": PolicyType(
        "Voice Applications Policy",
        "Get-CsTeamsVoiceApplicationsPolicy",
        "Grant-CsTeamsVoiceApplicationsPolicy",
        "TeamsVoiceApplicationsPolicy",
        supports_description=False,
    ),
    "dialPlan": PolicyType(
        "Dial Plan",
        "Get-CsTenantDialPlan",
        "Grant-CsTenantDialPlan",
        "TenantDialPlan",
    ),
    "messaging": PolicyType(
        "Messaging Policy",
        "Get-CsTeamsMessagingPolicy",
        "Grant-CsTeamsMessagingPolicy",
        "TeamsMessagingPolicy",
    ),
    "voicemail": PolicyType(
        "Voicemail Policy",
        "Get-CsOnlineVoicemailPolicy",
        "Grant-CsOnlineVoicemailPolicy",
        "OnlineVoicemailPolicy",
    ),
}


def get_policy_type(key: str) -> PolicyType:
    policy_type = POLICY_TYPES.get(key)
    if policy_type is None:
        raise ProtocolViolation(
            f"Unknown policy type '{key}'. Available: {', '.join(POLICY_TYPES)}"
        )
    return policy_type


# ─── Registry ───────────────────────────────────────────────────────


@dataclass
class Operation:
    name: str
    description: str
    args_model: type[OperationArgs]
    render: Callable[[Any], str]
    change_type: str
    mutating: bool = False

    def parse_args(self, args: Optional[dict[str, Any]]) -> OperationArgs:
        try:
            return self.args_model.model_validate(args or {})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ProtocolViolation(f"Invalid arguments for {self.name}: {problems}") from None


OPERATIONS: dict[str, Operation] = {}


def operation(
    name: str,
    args_model: type[OperationArgs] = NoArgs,
    change_type: Optional[str] = None,
    mutating: bool = False,
    description: str = "",
):
    """Decorator to register a script renderer as a named operation."""

    def decorator(fn: Callable[[Any], str]):
        OPERATIONS[name] = Operation(
            name=name,
            description=description or (fn.__doc__ or "").strip(),
            args_model=args_model,
            render=fn,
            change_type=change_type or name,
            mutating=mutating,
        )
        return fn

    return decorator


def get_operation(name: str) -> Operation:
    op = OPERATIONS.get(name)
    if op is None:
        raise ProtocolViolation(
            f"Unknown operation '{name}'. Available: {', '.join(sorted(OPERATIONS))}"
        )
    return op


# ─── Read operations ────────────────────────────────────────────────


@operation("get_tenant", change_type="tenant_viewed")
def render_get_tenant(args: NoArgs) -> str:
    """Tenant id and display name of the connected tenant."""
    return "Get-CsTenant | Select-Object TenantId, DisplayName"


@operation("get_user", IdentityArgs, change_type="user_viewed")
def render_get_user(args: IdentityArgs) -> str:
    """Voice configuration of one Teams user."""
    return (
        f"$user = Get-CsOnlineUser -Identity {ps_quote(args.identity)}\n"
        "[PSCustomObject]@{\n"
        "    DisplayName = $user.DisplayName\n"
        "    UserPrincipalName = $user.UserPrincipalName\n"
        "    LineURI = $user.LineURI\n"
        "    OnlineVoiceRoutingPolicy = [string]$user.OnlineVoiceRoutingPolicy\n"
        "    EnterpriseVoiceEnabled = $user.EnterpriseVoiceEnabled\n"
        "    HostedVoiceMail = $user.HostedVoiceMail\n"
        "}"
    )


@operation("list_voice_enabled_users", change_type="users_listed")
def render_list_voice_enabled_users(args: NoArgs) -> str:
    """All users with Enterprise Voice enabled."""
    return (
        "Get-CsOnlineUser -Filter {EnterpriseVoiceEnabled -eq $true} |\n"
        "    Select-Object DisplayName, UserPrincipalName, LineURI, OnlineVoiceRoutingPolicy"
    )


@operation("list_voice_routing_policies", change_type="policies_listed")
def render_list_voice_routing_policies(args: NoArgs) -> str:
    """Online voice routing policies with their PSTN usages."""
    return (
        "Get-CsOnlineVoiceRoutingPolicy |\n"
        "    Select-Object Identity, Description, OnlinePstnUsages"
    )


@operation("list_policies", PolicyTypeArgs, change_type="policies_listed")
def render_list_policies(args: PolicyTypeArgs) -> str:
    """Policies of any supported policy type."""
    policy_type = get_policy_type(args.policy_type)
    properties = "Identity, Description" if policy_type.supports_description else "Identity"
    return f"{policy_type.get_cmdlet} | Select-Object {properties}"


@operation("get_phone_number_assignment", IdentityArgs, change_type="assignment_viewed")
def render_get_phone_number_assignment(args: IdentityArgs) -> str:
    """Phone number assignment of one user."""
    return (
        f"Get-CsPhoneNumberAssignment -AssignedPstnTargetId {ps_quote(args.identity)} |\n"
        "    Select-Object TelephoneNumber, NumberType, LocationId, CivicAddressId"
    )


# ─── Mutating operations ────────────────────────────────────────────


def _location(args: PhoneNumberArgs) -> str:
    return f" -LocationId {ps_quote(args.location_id)}" if args.location_id else ""


@operation("assign_phone_number", PhoneNumberArgs, change_type="phone_number_assigned", mutating=True)
def render_assign_phone_number(args: PhoneNumberArgs) -> str:
    """Assign a Direct Routing number to a user."""
    return (
        f"Set-CsPhoneNumberAssignment -Identity {ps_quote(args.identity)} "
        f"-PhoneNumber {ps_quote(args.phone_number)} -PhoneNumberType DirectRouting{_location(args)}\n"
        f"[PSCustomObject]@{{ Identity = {ps_quote(args.identity)}; PhoneNumber = {ps_quote(args.phone_number)} }}"
    )


@operation("remove_phone_number", IdentityArgs, change_type="phone_number_removed", mutating=True)
def render_remove_phone_number(args: IdentityArgs) -> str:
    """Remove every number assignment from a user."""
    return (
        f"Remove-CsPhoneNumberAssignment -Identity {ps_quote(args.identity)} -RemoveAll\n"
        f"[PSCustomObject]@{{ Identity = {ps_quote(args.identity)}; Removed = $true }}"
    )


@operation(
    "grant_voice_routing_policy",
    PolicyNameArgs,
    change_type="voice_routing_policy_granted",
    mutating=True,
)
def render_grant_voice_routing_policy(args: PolicyNameArgs) -> str:
    """Grant an online voice routing policy to a user."""
    return (
        f"Grant-CsOnlineVoiceRoutingPolicy -Identity {ps_quote(args.identity)} "
        f"-PolicyName {ps_quote(args.policy_name)}\n"
        f"[PSCustomObject]@{{ Identity = {ps_quote(args.identity)}; PolicyName = {ps_quote(args.policy_name)} }}"
    )


@operation("grant_policy", PolicyGrantArgs, change_type="policy_granted", mutating=True)
def render_grant_policy(args: PolicyGrantArgs) -> str:
    """Grant a policy of any supported type to a user."""
    policy_type = get_policy_type(args.policy_type)
    return (
        f"{policy_type.grant_cmdlet} -Identity {ps_quote(args.identity)} "
        f"-PolicyName {ps_quote(args.policy_name)}\n"
        f"[PSCustomObject]@{{ Identity = {ps_quote(args.identity)}; "
        f"PolicyType = {ps_quote(policy_type.display_name)}; PolicyName = {ps_quote(args.policy_name)} }}"
    )


@operation(
    "assign_phone_and_policy",
    PhoneAndPolicyArgs,
    change_type="voice_configuration_updated",
    mutating=True,
)
def render_assign_phone_and_policy(args: PhoneAndPolicyArgs) -> str:
    """Assign a number and a voice routing policy in one step."""
    return (
        f"Set-CsPhoneNumberAssignment -Identity {ps_quote(args.identity)} "
        f"-PhoneNumber {ps_quote(args.phone_number)} -PhoneNumberType DirectRouting{_location(args)}\n"
        f"Grant-CsOnlineVoiceRoutingPolicy -Identity {ps_quote(args.identity)} "
        f"-PolicyName {ps_quote(args.policy_name)}\n"
        f"[PSCustomObject]@{{ Identity = {ps_quote(args.identity)}; "
        f"PhoneNumber = {ps_quote(args.phone_number)}; PolicyName = {ps_quote(args.policy_name)} }}"
    )


# ─── Execution ──────────────────────────────────────────────────────


@dataclass
class OperationOutcome:
    operation: str
    change_type: str
    target: Optional[str] = None
    result: Any = None
    before: Any = None
    after: Any = None
    error: Optional[ShellSessionError] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.error is None


async def run_operation(session, name: str, args: Optional[dict[str, Any]] = None) -> OperationOutcome:
    """
    Run a named operation on a connected session.

    Remote failures, timeouts and malformed results are captured on the
    outcome so the caller can audit them.

    Raises:
        ProtocolViolation: Unknown operation, invalid arguments, or the
            session is not connected. Nothing has run in that case.
    """
    op = get_operation(name)
    params = op.parse_args(args)
    script = op.render(params)
    if not session.is_ready:
        raise ProtocolViolation(
            f"Session {session.id} is {session.state.value}, cannot run {name}"
        )
    target = getattr(params, "identity", None)
    outcome = OperationOutcome(operation=name, change_type=op.change_type, target=target)

    snapshot = render_get_user(IdentityArgs(identity=target)) if op.mutating and target else None

    if snapshot is not None:
        try:
            outcome.before = await session.execute(snapshot, label=f"{name}:before")
        except ShellSessionError as e:
            logger.warning(f"[{session.id}] Could not snapshot {target} before {name}: {e.message}")

    try:
        outcome.result = await session.execute(script, label=name)
    except ShellSessionError as e:
        outcome.error = e
        logger.warning(f"[{session.id}] {name} failed: {e.message}")

    if snapshot is not None and not session.is_terminated:
        try:
            outcome.after = await session.execute(snapshot, label=f"{name}:after")
        except ShellSessionError as e:
            logger.warning(f"[{session.id}] Could not snapshot {target} after {name}: {e.message}")

    return outcome
