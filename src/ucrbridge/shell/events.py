"""Events produced by the output stream parser."""

import secrets
from dataclasses import dataclass, field
from typing import Any, Optional

SENTINEL_PREFIX = "<<<UCR"


@dataclass
class ParserEvent:
    """Base class for classified output."""

    pass


@dataclass
class Raw(ParserEvent):
    """An unclassified line. ``echo`` marks script text echoed by the shell."""

    text: str
    echo: bool = False


@dataclass
class SecondFactorPromptDetected(ParserEvent):
    text: str


@dataclass
class ConnectedDetected(ParserEvent):
    text: str


@dataclass
class AuthFailedDetected(ParserEvent):
    text: str
    reason: str = ""


@dataclass
class StructuredBlockStart(ParserEvent):
    tag: str


@dataclass
class StructuredBlockLine(ParserEvent):
    tag: str
    text: str


@dataclass
class StructuredBlockEnd(ParserEvent):
    tag: str
    value: Any = None


@dataclass
class StructuredBlockFailed(ParserEvent):
    """The script's catch block reported a remote error for this tag."""

    tag: str
    message: str = ""


@dataclass
class MalformedResult(ParserEvent):
    tag: str
    raw: str = ""
    error: str = ""


@dataclass(frozen=True)
class Sentinels:
    """
    Marker strings delimiting one command's structured result.

    ``begin``/``end`` must match a whole (stripped) output line; ``failed`` is
    a line prefix followed by the error message.
    """

    tag: str
    begin: str
    end: str
    failed: Optional[str] = None

    @classmethod
    def generate(cls, tag: Optional[str] = None) -> "Sentinels":
        tag = tag or secrets.token_hex(6)
        return cls(
            tag=tag,
            begin=f"{SENTINEL_PREFIX}:{tag}:BEGIN>>>",
            end=f"{SENTINEL_PREFIX}:{tag}:END>>>",
            failed=f"{SENTINEL_PREFIX}:{tag}:FAILED>>>",
        )


@dataclass
class SessionEvent:
    """An event fanned out to session subscribers (relay connections)."""

    type: str
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id, **self.data}
