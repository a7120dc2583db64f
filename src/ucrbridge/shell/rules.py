"""
Classification rules for shell output.

Each rule looks at one complete line and either returns an event or ``None``.
The parser tries them in order and the first match wins, so the rule set can
change without touching the session state machine.

The phrases below target the current wording of PowerShell and the
MicrosoftTeams module. Nothing negotiates versions with that tool; a module
upgrade that rewords its prompts will show up here first.
"""

import re
from typing import TYPE_CHECKING, Iterable, Optional, Protocol

from ucrbridge.shell.events import (
    AuthFailedDetected,
    ConnectedDetected,
    ParserEvent,
    SecondFactorPromptDetected,
    StructuredBlockFailed,
    StructuredBlockStart,
)

if TYPE_CHECKING:
    from ucrbridge.shell.parser import OutputStreamParser

CONNECTED_MARKER = "UCR_SESSION_CONNECTED"
AUTH_FAILED_MARKER = "UCR_AUTH_FAILED:"

# Continuation prompt, or a primary prompt such as "PS C:\Users\op>" / "PS /home/op>"
ECHO_PATTERN = re.compile(r"^\s*(>>|PS\s+(?:[A-Za-z]:\\|/|~)[^>]*>)")

SECOND_FACTOR_PATTERNS = [
    r"enter.*code",
    r"verification.*code",
    r"authentication.*code",
    r"\bmfa\b",
    r"two.?factor",
    r"approve.*sign.?in",
    r"authenticator app",
]


class Rule(Protocol):
    name: str

    def match(self, line: str, parser: "OutputStreamParser") -> Optional[ParserEvent]:
        ...


class EchoRule:
    """Recognizes script text the shell echoes back at its prompts."""

    name = "echo"

    def __init__(self, pattern: re.Pattern = ECHO_PATTERN):
        self.pattern = pattern

    def is_echo(self, line: str) -> bool:
        return bool(self.pattern.match(line))


class SentinelRule:
    """Opens a structured block or reports a command failure marker."""

    name = "sentinel"

    def match(self, line, parser):
        stripped = line.strip()
        for sentinels in list(parser.expected):
            if stripped == sentinels.begin:
                parser.open_block(sentinels)
                return StructuredBlockStart(tag=sentinels.tag)
            if sentinels.failed and stripped.startswith(sentinels.failed):
                parser.forget(sentinels)
                message = stripped[len(sentinels.failed):].strip()
                return StructuredBlockFailed(tag=sentinels.tag, message=message)
        return None


class PatternRule:
    """Emits ``event_type(text=line)`` when any regex matches."""

    def __init__(self, name: str, patterns: Iterable[str], event_type):
        self.name = name
        self.patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
        self.event_type = event_type

    def match(self, line, parser):
        if any(p.search(line) for p in self.patterns):
            return self.event_type(text=line)
        return None


class MarkerRule:
    """Emits ``event_type`` when the stripped line equals one of the markers."""

    def __init__(self, name: str, markers: Iterable[str], event_type):
        self.name = name
        self.markers = frozenset(markers)
        self.event_type = event_type

    def match(self, line, parser):
        if line.strip() in self.markers:
            return self.event_type(text=line)
        return None


class AuthFailedRule:
    name = "auth_failed"

    def __init__(self, marker: str = AUTH_FAILED_MARKER):
        self.marker = marker

    def match(self, line, parser):
        stripped = line.strip()
        if stripped.startswith(self.marker):
            return AuthFailedDetected(
                text=line, reason=stripped[len(self.marker):].strip()
            )
        return None


def second_factor_rule(patterns: Iterable[str] = SECOND_FACTOR_PATTERNS) -> PatternRule:
    return PatternRule("second_factor", patterns, SecondFactorPromptDetected)


def connected_rule(markers: Iterable[str] = (CONNECTED_MARKER,)) -> MarkerRule:
    return MarkerRule("connected", markers, ConnectedDetected)


def default_rules(variant: str) -> list:
    """
    Ordered rules for a credential variant.

    Certificate sessions never prompt, so they do not get the second-factor
    rule at all. Failure markers are checked before prompt patterns, since a
    failure message may contain prompt-like words.
    """
    rules: list = [SentinelRule(), AuthFailedRule()]
    if variant == "interactive":
        rules.append(second_factor_rule())
    rules.append(connected_rule())
    return rules
