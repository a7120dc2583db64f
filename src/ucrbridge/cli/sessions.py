"""
CLI subcommands for sessions on a running server.

Usage:
    ucrbridge sessions list [--token TOKEN]
    ucrbridge sessions close <session_id> [--token TOKEN]
"""

from typing import Optional

import typer

from ucrbridge.cli._http import _http_delete, _http_get

sessions_app = typer.Typer(help="Inspect and close shell sessions")

TOKEN_OPTION = typer.Option(None, "--token", "-t", help="Bearer token (or UCRBRIDGE_TOKEN)")


@sessions_app.command("list")
def sessions_list(token: Optional[str] = TOKEN_OPTION):
    """List open sessions."""
    data = _http_get("/sessions", token)
    sessions = data.get("sessions", [])
    if not sessions:
        typer.echo("No open sessions.")
        return

    typer.echo(f"Open sessions ({len(sessions)}):\n")
    for s in sessions:
        flag = " (degraded)" if s.get("degraded") else ""
        typer.echo(
            f"  {s['sessionId']}  {s['state']:<22} tenant={s['tenantId']} "
            f"operator={s['operator']} variant={s['variant']}{flag}"
        )


@sessions_app.command("close")
def sessions_close(
    session_id: str = typer.Argument(..., help="Session id"),
    token: Optional[str] = TOKEN_OPTION,
):
    """Close a session."""
    _http_delete(f"/sessions/{session_id}", token)
    typer.echo(f"Closed {session_id}")
