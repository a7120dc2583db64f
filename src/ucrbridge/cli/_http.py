"""
Shared HTTP helpers for CLI commands that talk to the running server.
"""

import os
from typing import Optional

import httpx
import typer


def get_server_url() -> str:
    url = os.getenv("UCRBRIDGE_URL")
    if url:
        return url.rstrip("/")
    from ucrbridge.config import CONFIG

    return f"http://{CONFIG.host}:{CONFIG.port}"


def _headers(token: Optional[str]) -> dict:
    token = token or os.getenv("UCRBRIDGE_TOKEN")
    return {"Authorization": f"Bearer {token}"} if token else {}


def _handle(resp: httpx.Response) -> dict:
    try:
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("error", str(e))
        except ValueError:
            detail = str(e)
        typer.echo(f"❌ Server error ({e.response.status_code}): {detail}")
        raise typer.Exit(code=1)
    return resp.json()


def _http_get(path: str, token: Optional[str] = None) -> dict:
    """Make a GET request to the running server."""
    try:
        resp = httpx.get(f"{get_server_url()}{path}", headers=_headers(token), timeout=10.0)
    except httpx.ConnectError:
        typer.echo("❌ Cannot connect to the ucrbridge server. Is it running?")
        raise typer.Exit(code=1)
    return _handle(resp)


def _http_delete(path: str, token: Optional[str] = None) -> dict:
    """Make a DELETE request to the running server."""
    try:
        resp = httpx.delete(f"{get_server_url()}{path}", headers=_headers(token), timeout=30.0)
    except httpx.ConnectError:
        typer.echo("❌ Cannot connect to the ucrbridge server. Is it running?")
        raise typer.Exit(code=1)
    return _handle(resp)
