"""
Top-level CLI commands: serve, operations.
"""

import os
from typing import Optional

import typer


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    from ucrbridge.logger import setup_logging

    setup_logging(level="DEBUG" if verbose else os.getenv("LOG_LEVEL", "WARNING"))


def register_commands(app: typer.Typer):
    @app.command()
    def serve(
        host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
        port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
        debug: bool = typer.Option(False, "--debug", help="Log at DEBUG level"),
    ):
        """Run the relay server."""
        if debug:
            os.environ["LOG_LEVEL"] = "DEBUG"
        elif "LOG_LEVEL" not in os.environ:
            os.environ["LOG_LEVEL"] = "INFO"

        from ucrbridge.server import run

        run(host=host, port=port)

    @app.command()
    def operations():
        """List the high-level operations a session can run."""
        from ucrbridge.shell.operations import OPERATIONS, POLICY_TYPES

        for name in sorted(OPERATIONS):
            op = OPERATIONS[name]
            fields = ", ".join(
                f.alias or key for key, f in op.args_model.model_fields.items()
            )
            marker = "✏️ " if op.mutating else "🔍"
            typer.echo(f"{marker} {name}({fields})")
            if op.description:
                typer.echo(f"     {op.description}")

        typer.echo(f"\nPolicy types: {', '.join(POLICY_TYPES)}")
