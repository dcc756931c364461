"""CLI: deskline conversations, deskline chat, deskline send"""

import asyncio
import json
from typing import Optional

import click
from rich.console import Console

from deskline.client import AsyncDeskline
from deskline.errors import DesklineError
from deskline.models.identity import Role
from deskline.models.message import Message
from deskline.stream import ConversationView

console = Console()


def _get_client() -> AsyncDeskline:
    from deskline.cli.main import _get_client
    return _get_client()


def _run(coro):
    from deskline.cli.main import _run
    return _run(coro)


def _remember_tokens(client: AsyncDeskline) -> None:
    from deskline.cli.main import _remember_tokens
    _remember_tokens(client)


def _print_message(client: AsyncDeskline, msg: Message) -> None:
    me = client.identity.id if client.identity else None
    stamp = msg.created_at.astimezone().strftime("%H:%M")
    if msg.sender_id == me:
        console.print(f"[dim]{stamp}[/dim] [cyan]You:[/cyan] {msg.body}")
    elif msg.is_admin_message:
        console.print(f"[dim]{stamp}[/dim] [green]Admin:[/green] {msg.body}")
    else:
        console.print(f"[dim]{stamp}[/dim] [yellow]{msg.sender_id}:[/yellow] {msg.body}")


async def _open_view(client: AsyncDeskline, role: Role, counterpart: Optional[str]) -> ConversationView:
    if role == Role.ADMIN:
        if not counterpart:
            console.print("[red]Admins must name a counterpart: deskline chat <user-id>[/red]")
            raise SystemExit(2)
        return await client.select(counterpart)
    view = client.view
    if view is None:
        view = await client.select(None)
    return view


@click.command("conversations")
@click.option("--json-output", "--json", is_flag=True)
def conversations_cmd(json_output: bool):
    """List conversations, most recent first."""

    async def _list():
        client = _get_client()
        try:
            await client.connect()
            _remember_tokens(client)
            convs = await client.conversations()
        finally:
            await client.close()
        if json_output:
            click.echo(json.dumps([c.model_dump(mode="json") for c in convs]))
            return
        if not convs:
            console.print("[dim]No conversations yet[/dim]")
        for c in convs:
            stamp = c.last_message_at.astimezone().strftime("%Y-%m-%d %H:%M")
            console.print(f"[bold]{c.counterpart_display_name}[/bold] [dim]{c.counterpart_id} {stamp}[/dim]")
            console.print(f"  {c.last_message_body}")

    _run(_list())


@click.command("chat")
@click.argument("counterpart", required=False)
def chat_cmd(counterpart: Optional[str]):
    """Interactive chat. Admins pass the user id to talk to."""

    async def _chat():
        client = _get_client()
        try:
            role = await client.connect()
            _remember_tokens(client)
            view = await _open_view(client, role, counterpart)
        except DesklineError as e:
            console.print(f"[red]{e}[/red]")
            await client.close()
            raise SystemExit(1)
        if view.history_error:
            console.print(f"[yellow]History unavailable: {view.history_error}[/yellow]")
        for msg in view.messages:
            _print_message(client, msg)
        seen = {m.id for m in view.messages}

        async def _follow():
            async for msg in view.updates():
                if msg.id not in seen:
                    seen.add(msg.id)
                    _print_message(client, msg)

        follower = asyncio.get_running_loop().create_task(_follow())
        console.print("[cyan]Type your message (Ctrl+C to exit)[/cyan]\n")
        loop = asyncio.get_running_loop()
        try:
            while True:
                text = await loop.run_in_executor(None, lambda: click.prompt("", prompt_suffix="> "))
                if text.lower() in ("/quit", "/exit"):
                    break
                try:
                    await client.send(text)
                except DesklineError as e:
                    console.print(f"[red]{e}[/red]")
        except (KeyboardInterrupt, EOFError, click.Abort):
            pass
        finally:
            follower.cancel()
            await client.close()

    _run(_chat())


@click.command("send")
@click.argument("message")
@click.option("--to", "counterpart", default=None, help="User id (admins only)")
@click.option("--json-output", "--json", is_flag=True)
def send_cmd(message: str, counterpart: Optional[str], json_output: bool):
    """Send a one-shot message."""

    async def _send():
        client = _get_client()
        try:
            role = await client.connect()
            _remember_tokens(client)
            await _open_view(client, role, counterpart)
            sent = await client.send(message)
        except DesklineError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()
        if json_output:
            click.echo(json.dumps(sent.model_dump(mode="json", by_alias=True)))
        else:
            console.print(f"[green]Sent[/green] [dim]{sent.id}[/dim]")

    _run(_send())
