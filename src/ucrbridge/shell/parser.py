"""
Output stream parser for automation shell sessions.

Turns arbitrarily chunked shell output into an ordered sequence of classified
events. Handles:
- partial lines split across chunks (carry-over buffer)
- UTF-8 sequences split across byte chunks
- script text echoed back by the shell (never classified)
- sentinel-delimited JSON blocks
"""

import codecs
import json
import re
from typing import Iterable, Iterator, Optional, Union

from ucrbridge.shell.events import (
    MalformedResult,
    ParserEvent,
    Raw,
    Sentinels,
    StructuredBlockEnd,
    StructuredBlockFailed,
    StructuredBlockLine,
)
from ucrbridge.shell.rules import EchoRule, default_rules

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class OutputStreamParser:
    """
    Stateful, line-oriented classifier.

    Usage:
        parser = OutputStreamParser(default_rules("interactive"))
        for event in parser.feed(chunk):
            ...
        for event in parser.flush():
            ...
    """

    def __init__(
        self,
        rules: Optional[Iterable] = None,
        echo_rule: Optional[EchoRule] = None,
        encoding: str = "utf-8",
    ):
        self.rules = list(rules) if rules is not None else default_rules("certificate")
        self.echo_rule = echo_rule or EchoRule()
        self.buffer = ""
        self.expected: list[Sentinels] = []
        self.block: Optional[Sentinels] = None
        self.block_lines: list[str] = []
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    # -- sentinel bookkeeping -------------------------------------------------

    def expect_block(self, sentinels: Sentinels) -> None:
        """Start watching for a command's sentinels."""
        if sentinels not in self.expected:
            self.expected.append(sentinels)

    def forget(self, sentinels: Sentinels) -> None:
        """Stop watching for a command's sentinels (resolved or abandoned)."""
        if sentinels in self.expected:
            self.expected.remove(sentinels)
        if self.block == sentinels:
            self.block = None
            self.block_lines = []

    def open_block(self, sentinels: Sentinels) -> None:
        self.block = sentinels
        self.block_lines = []

    @property
    def in_block(self) -> bool:
        return self.block is not None

    # -- feeding ----------------------------------------------------------------

    def feed(self, chunk: Union[str, bytes]) -> Iterator[ParserEvent]:
        """Consume one chunk and yield events for every completed line."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)

        data = self.buffer + chunk
        # A trailing CR may be the first half of a CRLF in the next chunk.
        held = ""
        if data.endswith("\r"):
            data, held = data[:-1], "\r"

        parts = _LINE_BREAK.split(data)
        self.buffer = parts.pop() + held

        for line in parts:
            yield from self.classify(line)

    def flush(self) -> Iterator[ParserEvent]:
        """Classify whatever is left in the buffer (end of stream)."""
        tail = self._decoder.decode(b"", final=True)
        rest = (self.buffer + tail).rstrip("\r")
        self.buffer = ""
        if rest:
            yield from self.classify(rest)

    # -- classification ---------------------------------------------------------

    def classify(self, line: str) -> Iterator[ParserEvent]:
        """Classify one complete line."""
        if self.echo_rule.is_echo(line):
            yield Raw(text=line, echo=True)
            return

        if self.block is not None:
            yield from self._classify_in_block(line)
            return

        for rule in self.rules:
            event = rule.match(line, self)
            if event is not None:
                yield event
                return

        yield Raw(text=line)

    def _classify_in_block(self, line: str) -> Iterator[ParserEvent]:
        sentinels = self.block
        stripped = line.strip()

        if stripped == sentinels.end:
            raw = "\n".join(self.block_lines)
            self.forget(sentinels)
            if not raw.strip():
                yield StructuredBlockEnd(tag=sentinels.tag, value=None)
                return
            try:
                value = json.loads(raw)
            except json.JSONDecodeError as e:
                yield MalformedResult(tag=sentinels.tag, raw=raw, error=str(e))
                return
            yield StructuredBlockEnd(tag=sentinels.tag, value=value)
            return

        if sentinels.failed and stripped.startswith(sentinels.failed):
            self.forget(sentinels)
            message = stripped[len(sentinels.failed):].strip()
            yield StructuredBlockFailed(tag=sentinels.tag, message=message)
            return

        self.block_lines.append(line)
        yield StructuredBlockLine(tag=sentinels.tag, text=line)
