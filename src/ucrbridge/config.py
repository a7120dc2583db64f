"""
Configuration for ucrbridge.

Values come from ``UCRBRIDGE_*`` environment variables (a ``.env`` file in the
project directory is loaded first). ``CONFIG`` is the process-wide instance;
call ``CONFIG.reload()`` after changing the environment.
"""

import os
import secrets
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

PROJECT_DIR = Path(os.getenv("UCRBRIDGE_PROJECT_DIR", Path.cwd()))
DATA_DIR = Path(os.getenv("UCRBRIDGE_DATA_DIR", PROJECT_DIR / ".ucrbridge"))

ENV_PREFIX = "UCRBRIDGE_"

# Interactive mode on purpose: -NonInteractive would suppress the
# second-factor prompt.
DEFAULT_SHELL_ARGS = ["-NoProfile", "-NoLogo", "-ExecutionPolicy", "Bypass"]


class Config(BaseModel):
    # Shell
    shell_executable: str = "pwsh"
    shell_args: list[str] = Field(default_factory=lambda: list(DEFAULT_SHELL_ARGS))

    # Timeouts (seconds)
    command_timeout: float = 60.0
    connect_timeout: float = 120.0
    second_factor_timeout: float = 600.0
    idle_timeout: float = 1800.0
    sweep_interval: float = 60.0
    terminate_grace: float = 2.0

    # Limits
    max_sessions: int = 50
    max_sessions_per_operator: int = 5
    output_tail_lines: int = 200
    subscriber_queue_size: int = 500

    # Relay auth
    token_secret: str = Field(default_factory=lambda: secrets.token_hex(32))
    token_ttl: int = 900

    # Collaborators
    credentials_file: Optional[str] = None
    operators_file: Optional[str] = None
    audit_log_path: str = str(DATA_DIR / "audit.jsonl")

    # Server
    host: str = "127.0.0.1"
    port: int = 8765

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "Config":
        """Build a config from ``UCRBRIDGE_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if field.annotation == list[str]:
                values[name] = raw.split()
            else:
                values[name] = raw
        return cls(**values)

    def reload(self) -> None:
        """Re-read the environment in place."""
        load_dotenv(PROJECT_DIR / ".env")
        fresh = Config.from_env()
        for name in Config.model_fields:
            if ENV_PREFIX + name.upper() in os.environ:
                setattr(self, name, getattr(fresh, name))


load_dotenv(PROJECT_DIR / ".env")
CONFIG = Config.from_env()
