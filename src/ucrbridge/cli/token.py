"""
CLI subcommands for operator tokens.

Usage:
    ucrbridge token issue <email> [--role admin] [--ttl SECONDS]
"""

from typing import Optional

import typer

token_app = typer.Typer(help="Issue operator bearer tokens")


@token_app.command("issue")
def token_issue(
    email: str = typer.Argument(..., help="Operator email"),
    role: str = typer.Option("operator", "--role", "-r", help="operator or admin"),
    ttl: Optional[int] = typer.Option(None, "--ttl", help="Lifetime in seconds"),
):
    """Print a signed token for an operator (uses UCRBRIDGE_TOKEN_SECRET)."""
    from ucrbridge.config import CONFIG, ENV_PREFIX
    from ucrbridge.relay.auth import TokenSigner

    if "token_secret" not in CONFIG.model_fields_set:
        typer.echo(
            f"⚠️  {ENV_PREFIX}TOKEN_SECRET is not set; this token will not "
            "validate against a running server.",
            err=True,
        )
    signer = TokenSigner(CONFIG.token_secret, CONFIG.token_ttl)
    typer.echo(signer.issue(email, role=role, ttl=ttl))
