"""CLI: deskline auth login|reset-password|status|logout"""

from typing import Optional

import click
from rich.console import Console

from deskline.client import AsyncDeskline
from deskline.errors import AuthError

console = Console()


def _load_config() -> dict:
    from deskline.cli.main import _load_config
    return _load_config()


def _save_config(cfg: dict) -> None:
    from deskline.cli.main import _save_config
    _save_config(cfg)


def _run(coro):
    from deskline.cli.main import _run
    return _run(coro)


@click.group()
def auth():
    """Authentication commands."""


@auth.command("login")
@click.option("--base-url", default=None, help="Deskline backend URL")
def auth_login(base_url: Optional[str]):
    """Log in with email and password."""

    async def _login():
        cfg = _load_config()
        url = base_url or cfg.get("base_url")
        client = AsyncDeskline(base_url=url) if url else AsyncDeskline()

        email = click.prompt("Email")
        password = click.prompt("Password", hide_input=True)
        try:
            with console.status("Signing in..."):
                identity = await client.sign_in(email, password)
        except AuthError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
        finally:
            await client.http.close()
        console.print(f"[green]Logged in as {identity.email} (ID: {identity.id})[/green]")

        saved = {**cfg, "access_token": client.auth.access_token, "refresh_token": client.auth.refresh_token,
                 "user_id": identity.id, "email": identity.email}
        if url:
            saved["base_url"] = url
        _save_config(saved)
        console.print("[dim]Token saved to ~/.deskline/config.json[/dim]")

    _run(_login())


@auth.command("reset-password")
@click.argument("email")
@click.option("--base-url", default=None, help="Deskline backend URL")
def auth_reset_password(email: str, base_url: Optional[str]):
    """Email a password reset link."""

    async def _reset():
        url = base_url or _load_config().get("base_url")
        client = AsyncDeskline(base_url=url) if url else AsyncDeskline()
        try:
            await client.auth.request_password_reset(email)
        except AuthError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
        finally:
            await client.http.close()
        console.print(f"[green]Reset link sent to {email}[/green]")

    _run(_reset())


@auth.command("status")
def auth_status():
    """Show current auth status."""
    cfg = _load_config()
    if cfg.get("access_token"):
        console.print(f"[green]Logged in[/green] as {cfg.get('email', 'unknown')} (ID: {cfg.get('user_id')})")
    else:
        console.print("[yellow]Not logged in. Run `deskline auth login`.[/yellow]")


@auth.command("logout")
def auth_logout():
    """Sign out and clear saved credentials."""
    cfg = _load_config()
    if cfg.get("access_token"):
        async def _logout():
            client = AsyncDeskline(base_url=cfg["base_url"]) if cfg.get("base_url") else AsyncDeskline()
            client.auth.restore(cfg["access_token"], cfg.get("refresh_token"))
            try:
                await client.auth.sign_out()
            finally:
                await client.http.close()
        _run(_logout())
    _save_config({k: v for k, v in cfg.items() if k == "base_url"})
    console.print("[green]Logged out.[/green]")
