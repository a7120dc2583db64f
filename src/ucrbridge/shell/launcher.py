"""
Process launcher for automation shell sessions.

Spawns PowerShell with three pipes in interactive mode (so a second-factor
prompt stays observable) and builds the authentication script for the
session's credential variant.
"""

import asyncio
import os
from dataclasses import dataclass, field
from typing import Optional, Union

from ucrbridge.config import CONFIG, Config
from ucrbridge.errors import LaunchFailure
from ucrbridge.logger import get_logger
from ucrbridge.shell.credentials import CertificateCredentials, InteractiveCredentials
from ucrbridge.shell.events import Sentinels
from ucrbridge.shell.rules import AUTH_FAILED_MARKER, CONNECTED_MARKER

logger = get_logger(__name__)

Descriptor = Union[CertificateCredentials, InteractiveCredentials]

SHELL_ENV = {
    "TERM": "dumb",
    "NO_COLOR": "1",
    "POWERSHELL_TELEMETRY_OPTOUT": "1",
    "POWERSHELL_UPDATECHECK": "Off",
}

# Keeps the shell quiet without making it non-interactive.
PRELUDE = """\
$ErrorActionPreference = 'Stop'
$ConfirmPreference = 'None'
$ProgressPreference = 'SilentlyContinue'
$InformationPreference = 'Continue'
if (Get-Module -Name PSReadLine) { Remove-Module PSReadLine -Force -ErrorAction SilentlyContinue }
"""


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def ps_split_literal(value: str) -> str:
    """
    Emit a string expression that evaluates to ``value`` but never contains it
    verbatim, so the shell echoing the script cannot fake the marker.
    """
    cut = max(1, len(value) // 2)
    return f"({ps_quote(value[:cut])} + {ps_quote(value[cut:])})"


def _connect_block(connect_command: str) -> str:
    return (
        "try {\n"
        "    Import-Module MicrosoftTeams -ErrorAction Stop\n"
        f"    {connect_command}\n"
        f"    Write-Output {ps_split_literal(CONNECTED_MARKER)}\n"
        "} catch {\n"
        f"    Write-Output ({ps_split_literal(AUTH_FAILED_MARKER)} + ' ' + $_.Exception.Message)\n"
        "}\n"
    )


def certificate_auth_script(credentials: CertificateCredentials) -> str:
    connect = (
        "Connect-MicrosoftTeams "
        f"-ApplicationId {ps_quote(credentials.app_id)} "
        f"-CertificateThumbprint {ps_quote(credentials.certificate_thumbprint)} "
        f"-TenantId {ps_quote(credentials.tenant_directory_id)} "
        "-ErrorAction Stop | Out-Null"
    )
    return _connect_block(connect)


def interactive_auth_script(credentials: InteractiveCredentials) -> str:
    secret = credentials.secret.get_secret_value()
    setup = (
        f"$__ucrUser = {ps_quote(credentials.username)}\n"
        f"$__ucrPass = ConvertTo-SecureString {ps_quote(secret)} -AsPlainText -Force\n"
        "$__ucrCred = New-Object System.Management.Automation.PSCredential($__ucrUser, $__ucrPass)\n"
        "Remove-Variable __ucrPass\n"
    )
    connect = "Connect-MicrosoftTeams -Credential $__ucrCred -ErrorAction Stop | Out-Null"
    return setup + _connect_block(connect)


def structured_command(body: str, sentinels: Sentinels) -> str:
    """
    Wrap a script so its result prints as one sentinel-delimited JSON block.

    Whatever ``body`` outputs is captured and serialized with ConvertTo-Json.
    A terminating error prints the failure marker followed by the message on
    a single line.
    """
    indented = "\n".join("        " + line for line in body.strip("\n").splitlines())
    return (
        "try {\n"
        "    $__ucrResult = & {\n"
        f"{indented}\n"
        "    }\n"
        f"    Write-Output {ps_split_literal(sentinels.begin)}\n"
        "    if ($null -ne $__ucrResult) { $__ucrResult | ConvertTo-Json -Depth 6 -Compress }\n"
        f"    Write-Output {ps_split_literal(sentinels.end)}\n"
        "} catch {\n"
        f"    Write-Output ({ps_split_literal(sentinels.failed)} + ' ' + "
        "($_.Exception.Message -replace '\\r?\\n', ' '))\n"
        "}\n"
    )


def build_auth_script(descriptor: Descriptor) -> str:
    """Select the authentication template by the descriptor's variant tag."""
    if descriptor.kind == "certificate":
        return certificate_auth_script(descriptor)
    if descriptor.kind == "interactive":
        return interactive_auth_script(descriptor)
    raise ValueError(f"Unknown credential variant: {descriptor.kind!r}")


@dataclass
class LaunchedProcess:
    """A running shell plus the script that authenticates it."""

    process: asyncio.subprocess.Process
    variant: str
    auth_script: str
    argv: list[str] = field(default_factory=list)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid


class ProcessLauncher:
    """Spawns one automation shell per session."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or CONFIG

    def argv(self) -> list[str]:
        return [self.config.shell_executable, *self.config.shell_args]

    def environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(SHELL_ENV)
        return env

    async def launch(self, descriptor: Descriptor, tenant_id: str) -> LaunchedProcess:
        """
        Start the shell for a tenant.

        Raises:
            LaunchFailure: If the executable is missing or cannot be spawned.
        """
        argv = self.argv()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.environment(),
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to spawn {argv[0]} for tenant {tenant_id}: {e}")
            raise LaunchFailure(f"Could not start {argv[0]}: {e}") from e

        logger.info(
            f"Spawned {argv[0]} (pid={process.pid}) for tenant {tenant_id} "
            f"using {descriptor.describe()}"
        )
        return LaunchedProcess(
            process=process,
            variant=descriptor.kind,
            auth_script=PRELUDE + build_auth_script(descriptor),
            argv=argv,
        )
