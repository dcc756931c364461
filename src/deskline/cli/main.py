"""
Deskline CLI — `deskline` command.

Commands:
  deskline auth login            Password sign-in
  deskline auth reset-password   Email a password reset link
  deskline conversations         List conversations, most recent first
  deskline chat [counterpart]    Interactive chat
  deskline send <message>        One-shot message
"""

import asyncio
import logging

try:
    import click
    from rich.console import Console
except ImportError:
    raise SystemExit("CLI requires extras: pip install deskline[cli]")

from deskline.client import AsyncDeskline
from deskline.config import load_config, save_config

console = Console()


def _load_config() -> dict:
    return load_config()


def _save_config(cfg: dict) -> None:
    save_config(cfg)


def _get_client() -> AsyncDeskline:
    cfg = _load_config()
    if not cfg.get("access_token"):
        console.print("[red]Not logged in. Run `deskline auth login` first.[/red]")
        raise SystemExit(1)
    kwargs = {
        "access_token": cfg["access_token"],
        "refresh_token": cfg.get("refresh_token"),
    }
    if cfg.get("base_url"):
        kwargs["base_url"] = cfg["base_url"]
    return AsyncDeskline(**kwargs)


def _remember_tokens(client: AsyncDeskline) -> None:
    """Save tokens the client refreshed while connecting."""
    cfg = _load_config()
    token = client.auth.access_token
    if token and token != cfg.get("access_token"):
        cfg["access_token"] = token
        cfg["refresh_token"] = client.auth.refresh_token
        _save_config(cfg)


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option("0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def main(verbose: bool):
    """Deskline CLI — talk to the admin team, or answer users as an admin."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Register subcommands from separate modules
from deskline.cli.auth import auth
from deskline.cli.chat import chat_cmd, conversations_cmd, send_cmd

main.add_command(auth)
main.add_command(conversations_cmd)
main.add_command(chat_cmd)
main.add_command(send_cmd)


if __name__ == "__main__":
    main()
