"""
Automation shell sessions.

- launcher:   spawns the shell and renders authentication scripts
- parser:     turns output chunks into classified events (rules in ``rules``)
- dispatcher: one-at-a-time command queue with sentinel-delimited results
- session:    state machine tying the above together
- registry:   owner of all live sessions
- supervisor: periodic reclamation
- operations: catalogue of high-level tenant operations
"""

from ucrbridge.shell.credentials import (
    CertificateCredentials,
    CredentialDescriptor,
    InteractiveCredentials,
    parse_descriptor,
)
from ucrbridge.shell.registry import SessionRegistry
from ucrbridge.shell.session import Session, SessionState
from ucrbridge.shell.supervisor import LifecycleSupervisor, SessionPolicy

__all__ = [
    "CertificateCredentials",
    "CredentialDescriptor",
    "InteractiveCredentials",
    "LifecycleSupervisor",
    "Session",
    "SessionPolicy",
    "SessionRegistry",
    "SessionState",
    "parse_descriptor",
]
