#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import json
from pathlib import Path
from typing import Any, List, Optional, Tuple

import aioconsole
import typer
from rich.console import Console
from rich.table import Table

from dogehouse_shared.config import ClientSettings, load_settings
from dogehouse_shared.log import configure_root_logging, get_logger
from .connection import Connection, connect
from .errors import DogehouseError
from .supervisor import SessionSupervisor
from .tokens import TokenStore

app = typer.Typer(help="DogeHouse socket client")
console = Console()
logger = get_logger(__name__)


class _Options:
    def __init__(self, settings: ClientSettings, verbose: bool, token_path: Optional[Path]) -> None:
        self.settings = settings
        self.verbose = verbose
        self.token_path = token_path


def _parse_json(raw: Optional[str]) -> Any:
    if raw is None:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"not valid JSON: {e}")


def _print_frame(direction: str, opcode: Optional[str], payload: Any,
                 fetch_id: Optional[str], raw: Optional[str]) -> None:
    arrow = "[cyan]<-[/]" if direction == "in" else "[magenta]->[/]"
    if opcode is None:
        console.print(f"{arrow} [red]malformed[/] {raw}")
        return
    suffix = f" [dim]({fetch_id[:8]}...)[/]" if fetch_id else ""
    body = "" if payload is None else json.dumps(payload)
    console.print(f"{arrow} [bold]{opcode}[/]{suffix} {body}")


def _resolve_tokens(opts: _Options, token: Optional[str], refresh_token: Optional[str]) -> Tuple[str, str]:
    if token and refresh_token:
        return token, refresh_token
    stored = TokenStore(opts.token_path).load()
    if stored is None:
        console.print("[red]No tokens.[/] Pass --token/--refresh-token or run `dogehouse login`.")
        raise typer.Exit(code=2)
    return stored


async def _open(opts: _Options, tokens: Tuple[str, str]) -> Connection:
    return await connect(
        *tokens,
        settings=opts.settings,
        on_frame=_print_frame if opts.verbose else None,
    )


def _run(coro: Any) -> None:
    try:
        asyncio.run(coro)
    except DogehouseError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("[dim]interrupted[/]")


TokenOpt = typer.Option(None, "--token", envvar="DOGEHOUSE_TOKEN", help="Access token")
RefreshOpt = typer.Option(None, "--refresh-token", envvar="DOGEHOUSE_REFRESH_TOKEN", help="Refresh token")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="YAML settings file"),
    url: Optional[str] = typer.Option(None, "--url", help="Override the socket URL"),
    log_level: str = typer.Option("WARNING", "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print every frame in and out"),
    tokens_file: Optional[Path] = typer.Option(None, "--tokens-file", help="Token store location"),
):
    """Talk to the DogeHouse socket API."""
    configure_root_logging(log_level)
    ctx.obj = _Options(load_settings(config, url=url), verbose, tokens_file)


@app.command()
def login(
    ctx: typer.Context,
    token: str = typer.Option(..., "--token", prompt=True, hide_input=True, help="Access token"),
    refresh_token: str = typer.Option(..., "--refresh-token", prompt=True, hide_input=True, help="Refresh token"),
):
    """Store tokens for later commands."""
    store = TokenStore(ctx.obj.token_path)
    store.save(token, refresh_token)
    console.print(f"Saved tokens to {store.path}")


@app.command()
def logout(ctx: typer.Context):
    """Forget stored tokens."""
    TokenStore(ctx.obj.token_path).clear()
    console.print("Tokens removed")


@app.command()
def whoami(ctx: typer.Context, token: Optional[str] = TokenOpt, refresh_token: Optional[str] = RefreshOpt):
    """Authenticate and print the user the server reports."""
    opts: _Options = ctx.obj
    tokens = _resolve_tokens(opts, token, refresh_token)

    async def main_loop() -> None:
        async with await _open(opts, tokens) as conn:
            user = conn.user if isinstance(conn.user, dict) else {"user": conn.user}
            table = Table(title="Authenticated user")
            table.add_column("Field")
            table.add_column("Value")
            for key, value in user.items():
                table.add_row(str(key), json.dumps(value) if not isinstance(value, str) else value)
            console.print(table)

    _run(main_loop())


@app.command()
def fetch(
    ctx: typer.Context,
    opcode: str = typer.Argument(..., help="Request opcode"),
    data: Optional[str] = typer.Argument(None, help="JSON payload (default {})"),
    done_opcode: Optional[str] = typer.Option(None, "--done-opcode", help="Opcode that answers the request"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait for the response"),
    token: Optional[str] = TokenOpt,
    refresh_token: Optional[str] = RefreshOpt,
):
    """Send one request and print its response."""
    opts: _Options = ctx.obj
    payload = _parse_json(data)
    tokens = _resolve_tokens(opts, token, refresh_token)

    async def main_loop() -> None:
        async with await _open(opts, tokens) as conn:
            response = await conn.fetch(opcode, payload, done_opcode, timeout=timeout)
            console.print_json(json.dumps(response))

    _run(main_loop())


@app.command()
def listen(
    ctx: typer.Context,
    opcodes: List[str] = typer.Argument(..., help="Opcodes to print"),
    reconnect: bool = typer.Option(True, "--reconnect/--no-reconnect", help="Reconnect when the socket drops"),
    token: Optional[str] = TokenOpt,
    refresh_token: Optional[str] = RefreshOpt,
):
    """Print matching frames until interrupted or displaced."""
    opts: _Options = ctx.obj
    tokens = _resolve_tokens(opts, token, refresh_token)
    store = TokenStore(opts.token_path)

    def printer(opcode: str):
        def handler(payload: Any, fetch_id: Optional[str]) -> None:
            _print_frame("in", opcode, payload, fetch_id, None)
        return handler

    async def listen_once() -> None:
        conn = await _open(opts, tokens)
        for opcode in opcodes:
            conn.add_listener(opcode, printer(opcode))
        console.print(f"[green]connected[/] as {conn.user}")
        try:
            end = await conn.wait_closed()
        finally:
            await conn.close()
        console.print(f"[dim]session {end.state.value} (code={end.code})[/]")

    async def main_loop() -> None:
        supervisor = SessionSupervisor(
            *tokens,
            settings=opts.settings,
            on_frame=_print_frame if opts.verbose else None,
            on_tokens=store.save,
            on_connected=lambda conn: console.print(f"[green]connected[/] as {conn.user}"),
        )
        for opcode in opcodes:
            supervisor.add_listener(opcode, printer(opcode))
        end = await supervisor.run()
        if end.displaced:
            console.print("[yellow]Another client has taken the connection[/]")
        else:
            console.print(f"[dim]closed (code={end.code})[/]")

    _run(main_loop() if reconnect else listen_once())


_SHELL_HELP = "/send <op> [json], /fetch <op> [json] [done_op], /listen <op>, /user, /quit"


@app.command()
def shell(ctx: typer.Context, token: Optional[str] = TokenOpt, refresh_token: Optional[str] = RefreshOpt):
    """Interactive session."""
    opts: _Options = ctx.obj
    tokens = _resolve_tokens(opts, token, refresh_token)

    async def main_loop() -> None:
        conn = await _open(opts, tokens)
        console.print(f"[bold green]Connected[/] as {conn.user}. {_SHELL_HELP}")
        try:
            while not conn.closed:
                line = (await aioconsole.ainput(": ")).strip()
                if not line:
                    continue
                if line in {"/quit", "/exit"}:
                    break
                if line == "/help":
                    console.print(_SHELL_HELP)
                    continue
                if line == "/user":
                    console.print(conn.user)
                    continue
                command, _, rest = line.partition(" ")
                try:
                    await _shell_command(conn, command, rest.strip())
                except typer.BadParameter as e:
                    console.print(f"[red]{e}[/]")
                except DogehouseError as e:
                    console.print(f"[red]{e}[/]")
        finally:
            end = await conn.close()
            console.print(f"[dim]session {end.state.value}[/]")

    _run(main_loop())


async def _shell_command(conn: Connection, command: str, rest: str) -> None:
    if command == "/listen" and rest:
        opcode = rest.split(" ", 1)[0]
        conn.add_listener(opcode, lambda payload, fetch_id: _print_frame("in", opcode, payload, fetch_id, None))
        console.print(f"Listening for {opcode}")
        return
    if command in {"/send", "/fetch"} and rest:
        opcode, _, remainder = rest.partition(" ")
        done_opcode = None
        if command == "/fetch" and remainder and not remainder.rstrip().endswith(("}", "]")):
            remainder, _, done_opcode = remainder.rpartition(" ")
        payload = _parse_json(remainder or None)
        if command == "/send":
            await conn.send(opcode, payload)
            return
        response = await conn.fetch(opcode, payload, done_opcode or None)
        console.print_json(json.dumps(response))
        return
    console.print(f"Unknown command. {_SHELL_HELP}")


if __name__ == "__main__":
    app()
