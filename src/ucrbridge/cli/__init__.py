"""
ucrbridge CLI.

This package splits CLI commands into focused modules:
- main:     serve, operations
- token:    issue
- sessions: list, close (talks to a running server)
"""

import typer

from ucrbridge.cli._http import _http_delete, _http_get  # noqa: F401 re-export for test patching
from ucrbridge.cli.main import configure_logging, register_commands
from ucrbridge.cli.sessions import sessions_app
from ucrbridge.cli.token import token_app

app = typer.Typer(help="ucrbridge - Teams voice administration shell relay")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """ucrbridge - Teams voice administration shell relay."""
    configure_logging(verbose)


register_commands(app)

app.add_typer(token_app, name="token")
app.add_typer(sessions_app, name="sessions")

if __name__ == "__main__":
    app()
