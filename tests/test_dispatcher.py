"""
Unit tests for the command dispatcher.
"""

import asyncio

import pytest

from ucrbridge.errors import MalformedResult, OperationFailed, ShellSessionError, Timeout
from ucrbridge.shell import events
from ucrbridge.shell.dispatcher import Command, CommandDispatcher
from ucrbridge.shell.events import Sentinels
from ucrbridge.shell.parser import OutputStreamParser
from ucrbridge.shell.rules import default_rules


class RecordingPipe:
    """Collects what the dispatcher writes to the shell."""

    def __init__(self):
        self.writes: list[str] = []

    async def write(self, data: bytes) -> None:
        self.writes.append(data.decode("utf-8"))

    async def wait_for(self, count: int, timeout: float = 2.0) -> None:
        async def _poll():
            while len(self.writes) < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)


def structured(label: str) -> Command:
    return Command(text=f"Get-Thing -Name {label}", sentinels=Sentinels.generate(), label=label)


def end(command: Command, value):
    return events.StructuredBlockEnd(tag=command.sentinels.tag, value=value)


class TestCommandPayload:
    def test_single_line(self):
        assert Command(text="exit").payload() == b"exit\n"

    def test_multi_line_gets_blank_terminator(self):
        assert Command(text="try {\n  1\n}\n").payload() == b"try {\n  1\n}\n\n"


class TestCommandDispatcher:
    def setup_method(self):
        self.pipe = RecordingPipe()
        self.parser = OutputStreamParser(default_rules("certificate"))
        self.timed_out: list[Command] = []

    def dispatcher(self, timeout: float = 5.0) -> CommandDispatcher:
        return CommandDispatcher(
            self.pipe.write,
            self.parser,
            command_timeout=timeout,
            on_timeout=self.timed_out.append,
            name="test",
        )

    @pytest.mark.asyncio
    async def test_command_without_sentinels_resolves_on_write(self):
        d = self.dispatcher()
        result = await d.submit(Command(text="$x = 1"))
        assert result is None
        assert self.pipe.writes == ["$x = 1\n"]
        await d.close()

    @pytest.mark.asyncio
    async def test_fifo_with_one_in_flight(self):
        d = self.dispatcher()
        commands = [structured(f"c{i}") for i in range(3)]
        futures = [d.submit(c) for c in commands]

        for i, command in enumerate(commands):
            await self.pipe.wait_for(i + 1)
            await asyncio.sleep(0.02)
            # Nothing else is written while this command is outstanding.
            assert len(self.pipe.writes) == i + 1
            assert f"c{i}" in self.pipe.writes[i]
            assert d.current is command
            d.handle_event(end(command, i * 10))

        assert await asyncio.gather(*futures) == [0, 10, 20]
        await d.close()

    @pytest.mark.asyncio
    async def test_sentinels_registered_while_in_flight(self):
        d = self.dispatcher()
        command = structured("c")
        future = d.submit(command)
        await self.pipe.wait_for(1)
        assert command.sentinels in self.parser.expected
        d.handle_event(end(command, None))
        await future
        await asyncio.sleep(0.02)
        assert command.sentinels not in self.parser.expected
        await d.close()

    @pytest.mark.asyncio
    async def test_events_for_other_tags_are_ignored(self):
        d = self.dispatcher()
        command = structured("c")
        future = d.submit(command)
        await self.pipe.wait_for(1)
        d.handle_event(events.StructuredBlockEnd(tag="someone-else", value=1))
        await asyncio.sleep(0.01)
        assert not future.done()
        d.handle_event(end(command, 2))
        assert await future == 2
        await d.close()

    @pytest.mark.asyncio
    async def test_failed_block(self):
        d = self.dispatcher()
        command = structured("c")
        future = d.submit(command)
        await self.pipe.wait_for(1)
        d.handle_event(events.StructuredBlockFailed(tag=command.sentinels.tag, message="nope"))
        with pytest.raises(OperationFailed, match="nope"):
            await future
        await d.close()

    @pytest.mark.asyncio
    async def test_malformed_block(self):
        d = self.dispatcher()
        command = structured("c")
        future = d.submit(command)
        await self.pipe.wait_for(1)
        d.handle_event(
            events.MalformedResult(tag=command.sentinels.tag, raw="{oops", error="bad")
        )
        with pytest.raises(MalformedResult) as exc:
            await future
        assert exc.value.raw == "{oops"
        await d.close()

    @pytest.mark.asyncio
    async def test_timeout_marks_degraded_and_moves_on(self):
        d = self.dispatcher(timeout=0.05)
        slow = structured("slow")
        fast = structured("fast")
        slow_future = d.submit(slow)
        fast_future = d.submit(fast)

        with pytest.raises(Timeout):
            await slow_future
        assert self.timed_out == [slow]
        assert slow.sentinels not in self.parser.expected

        await self.pipe.wait_for(2)
        d.handle_event(end(fast, "ok"))
        assert await fast_future == "ok"
        await d.close()

    @pytest.mark.asyncio
    async def test_per_command_timeout(self):
        d = self.dispatcher(timeout=5.0)
        command = structured("c")
        command.timeout = 0.05
        with pytest.raises(Timeout):
            await d.submit(command)
        await d.close()

    @pytest.mark.asyncio
    async def test_close_rejects_pending(self):
        d = self.dispatcher()
        first, second = structured("a"), structured("b")
        f1, f2 = d.submit(first), d.submit(second)
        await self.pipe.wait_for(1)

        await d.close(ShellSessionError("gone"))

        for future in (f1, f2):
            with pytest.raises(ShellSessionError, match="gone"):
                await future
        with pytest.raises(ShellSessionError, match="gone"):
            await d.submit(structured("late"))
        with pytest.raises(ShellSessionError, match="gone"):
            await d.write_raw("123456")

    @pytest.mark.asyncio
    async def test_write_failure_rejects_command(self):
        async def broken(data: bytes) -> None:
            raise ShellSessionError("Shell input is closed")

        d = CommandDispatcher(broken, self.parser, name="test")
        with pytest.raises(ShellSessionError, match="input is closed"):
            await d.submit(structured("c"))
        await d.close()

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_worker_running(self):
        d = self.dispatcher()
        abandoned = structured("abandoned")
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(d.submit(abandoned), 0.05)
        assert abandoned.future.cancelled()

        following = structured("following")
        future = d.submit(following)
        await self.pipe.wait_for(2)
        d.handle_event(end(following, 42))
        assert await asyncio.wait_for(future, 1) == 42
        await d.close()

    @pytest.mark.asyncio
    async def test_timeout_still_armed_after_cancelled_caller(self):
        d = self.dispatcher(timeout=0.1)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(d.submit(structured("abandoned")), 0.02)

        with pytest.raises(Timeout):
            await asyncio.wait_for(d.submit(structured("next")), 2)
        await d.close()

    @pytest.mark.asyncio
    async def test_dead_worker_is_restarted(self):
        d = self.dispatcher()
        await d.submit(Command(text="$x = 1"))
        d._worker.cancel()
        await asyncio.sleep(0.01)
        assert d._worker.done()

        command = structured("c")
        future = d.submit(command)
        await self.pipe.wait_for(2)
        d.handle_event(end(command, "ok"))
        assert await asyncio.wait_for(future, 1) == "ok"
        await d.close()
