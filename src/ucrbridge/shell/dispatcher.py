"""
Command dispatcher.

Writes queued commands to a shell's stdin strictly one at a time and
correlates each with its structured result. A command with sentinels stays
in flight until the parser reports its block end, its failure marker, or the
command timeout expires.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from ucrbridge.errors import MalformedResult as MalformedResultError
from ucrbridge.errors import OperationFailed, ShellSessionError, Timeout
from ucrbridge.logger import get_logger
from ucrbridge.shell.events import (
    MalformedResult,
    ParserEvent,
    Sentinels,
    StructuredBlockEnd,
    StructuredBlockFailed,
)
from ucrbridge.shell.parser import OutputStreamParser

logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60.0


@dataclass
class Command:
    """
    A script sent to the shell.

    ``label`` is what gets logged; ``text`` may hold secrets and never is.
    """

    text: str
    sentinels: Optional[Sentinels] = None
    label: str = "command"
    timeout: Optional[float] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    future: Optional[asyncio.Future] = None

    def payload(self) -> bytes:
        # The trailing blank line closes multi-line statements at the prompt.
        text = self.text.rstrip("\r\n")
        if "\n" in text:
            return (text + "\n\n").encode("utf-8")
        return (text + "\n").encode("utf-8")


class CommandDispatcher:
    """FIFO command queue with exactly one command in flight."""

    def __init__(
        self,
        write: Callable[[bytes], Awaitable[None]],
        parser: OutputStreamParser,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        on_timeout: Optional[Callable[[Command], None]] = None,
        name: str = "",
    ):
        self._write = write
        self._parser = parser
        self.command_timeout = command_timeout
        self._on_timeout = on_timeout
        self._name = name
        self._queue: asyncio.Queue[Command] = asyncio.Queue()
        self._current: Optional[Command] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed: Optional[BaseException] = None

    @property
    def current(self) -> Optional[Command]:
        return self._current

    @property
    def pending(self) -> int:
        """Queued commands, not counting the one in flight."""
        return self._queue.qsize()

    @property
    def busy(self) -> bool:
        return self._current is not None or not self._queue.empty()

    def start(self) -> None:
        if self._closed is not None:
            return
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"dispatcher-{self._name}")

    def submit(self, command: Command) -> asyncio.Future:
        """Queue a command. The returned future resolves to its result."""
        loop = asyncio.get_running_loop()
        command.future = loop.create_future()
        if self._closed is not None:
            command.future.set_exception(self._closed)
            return command.future
        self._queue.put_nowait(command)
        self.start()
        return command.future

    async def write_raw(self, text: str) -> None:
        """Write one line outside the queue (e.g. an answer to a prompt)."""
        if self._closed is not None:
            raise self._closed
        await self._write((text + "\n").encode("utf-8"))

    def handle_event(self, event: ParserEvent) -> None:
        """Route parser events that finish the command in flight."""
        command = self._current
        if command is None or command.sentinels is None or command.future.done():
            return
        tag = getattr(event, "tag", None)
        if tag != command.sentinels.tag:
            return

        if isinstance(event, StructuredBlockEnd):
            command.future.set_result(event.value)
        elif isinstance(event, StructuredBlockFailed):
            command.future.set_exception(
                OperationFailed(event.message or f"{command.label} failed")
            )
        elif isinstance(event, MalformedResult):
            logger.warning(f"[{self._name}] Malformed result for {command.label}: {event.error}")
            command.future.set_exception(
                MalformedResultError(
                    f"{command.label} returned output that is not valid JSON",
                    raw=event.raw,
                )
            )

    async def close(self, error: Optional[BaseException] = None) -> None:
        """Reject the command in flight and everything queued, then stop."""
        if self._closed is not None:
            return
        self._closed = error or ShellSessionError("Session closed")

        if self._current and self._current.future and not self._current.future.done():
            self._current.future.set_exception(self._closed)
        while not self._queue.empty():
            command = self._queue.get_nowait()
            if command.future and not command.future.done():
                command.future.set_exception(self._closed)

        if self._worker and self._worker is not asyncio.current_task():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

    # -- Internal ------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            command = await self._queue.get()
            if command.future.done():
                continue
            self._current = command
            try:
                await self._execute(command)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[{self._name}] Failed to send {command.label}: {e}")
                if not command.future.done():
                    command.future.set_exception(
                        e if isinstance(e, ShellSessionError) else ShellSessionError(str(e))
                    )
            finally:
                if command.sentinels is not None:
                    self._parser.forget(command.sentinels)
                self._current = None

    async def _execute(self, command: Command) -> None:
        if command.sentinels is not None:
            self._parser.expect_block(command.sentinels)

        logger.debug(f"[{self._name}] Sending {command.label}")
        await self._write(command.payload())

        if command.sentinels is None:
            if not command.future.done():
                command.future.set_result(None)
            return

        timeout = command.timeout or self.command_timeout
        # A cancelled future ends the wait without raising in the worker.
        await asyncio.wait({command.future}, timeout=timeout)
        if command.future.cancelled():
            logger.info(f"[{self._name}] {command.label} abandoned by its caller")
            return
        if command.future.done():
            return

        logger.warning(f"[{self._name}] {command.label} timed out after {timeout}s")
        command.future.set_exception(
            Timeout(f"{command.label} did not complete within {timeout:g}s")
        )
        if self._on_timeout:
            self._on_timeout(command)
