"""Helpers shared by the test modules."""

import asyncio
import sys
from pathlib import Path

from ucrbridge.config import Config

FAKE_SHELL = str(Path(__file__).parent / "fake_shell.py")

TOKEN_SECRET = "test-token-secret"


def make_config(mode: str = "certificate", **overrides) -> Config:
    """Config that runs tests/fake_shell.py in place of pwsh."""
    values = dict(
        shell_executable=sys.executable,
        shell_args=["-u", FAKE_SHELL, "--mode", mode],
        command_timeout=5.0,
        connect_timeout=10.0,
        terminate_grace=1.0,
        sweep_interval=0.05,
        token_secret=TOKEN_SECRET,
    )
    values.update(overrides)
    return Config(**values)


async def collect_until(queue: asyncio.Queue, event_type: str, timeout: float = 5.0) -> list:
    """Read session events from a subscriber queue up to ``event_type``."""

    async def _collect():
        events = []
        while True:
            event = await queue.get()
            events.append(event)
            if event.type == event_type:
                return events

    return await asyncio.wait_for(_collect(), timeout)
