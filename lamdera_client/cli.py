#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import dataclasses
import os
import time
from pathlib import Path
from typing import Any, Optional

import aioconsole
import typer
from rich.console import Console

from lamdera_client.config import ConnectionOptions
from lamdera_client.connection import ConnectionEvent, LamderaSocket, NotOpenError
from lamdera_wire.log import get_logger, set_level
from lamdera_wire.utils import buffer_to_hex

app = typer.Typer(help="Lamdera WebSocket client test harness")
console = Console()
logger = get_logger(__name__)

SUITE_TIMEOUT = 30.0


def _default_url() -> str:
    return os.getenv("LAMDERA_URL", "ws://localhost:8000/_w")


def _build_options(verbose: int, config: Optional[Path], session_prefix: str, **overrides: Any) -> ConnectionOptions:
    """Merge the YAML file, verbosity level and per-test overrides."""
    options = ConnectionOptions.from_yaml(config) if config else ConnectionOptions()
    debug = verbose >= 3
    if debug:
        set_level("DEBUG")
    options = dataclasses.replace(
        options,
        session_id=options.session_id or f"{session_prefix}-{int(time.time() * 1000)}",
        debug=options.debug or debug,
        debug_max_chars=200 if verbose == 3 else options.debug_max_chars,
        **overrides,
    )
    logger.debug("Connection options: %s", options)
    return options


def format_message(data: str, prefix: str, verbose: int) -> None:
    """Print a received message with as much detail as the verbosity asks for"""
    length = len(data)
    head = buffer_to_hex(data[:5].encode("utf-8"))
    if verbose >= 3:
        preview = data[:100] + "..." if length > 100 else data
        body = data if verbose >= 4 or length <= 200 else data[:200] + "..."
        console.print(f"{prefix}: Length={length} chars")
        console.print(f"   First 5 bytes: {head}")
        console.print(f"   Preview: {preview!r}")
        console.print(f"   Data: {body}", markup=False)
    elif verbose >= 1:
        preview = data[:200] + "..." if length > 200 else data
        console.print(f"{prefix}:")
        console.print(f"decoded length: {length}")
        console.print(f"first bytes: {head}")
        console.print(f"string: {preview}", markup=False)
    else:
        preview = data[:100] + "..." if length > 100 else data
        console.print(f"{prefix}: {preview!r}")


async def _run_until(done: asyncio.Event, ws: LamderaSocket, timeout: Optional[float]) -> None:
    try:
        await asyncio.wait_for(done.wait(), timeout)
    except asyncio.TimeoutError:
        console.print("[yellow]Test timeout, exiting...[/]")
    finally:
        ws.close()


async def _connection_test(url: str, options: ConnectionOptions) -> bool:
    console.print("[bold]TEST: Connection & Disconnection[/]")
    loop = asyncio.get_running_loop()
    done = asyncio.Event()
    result = {"ok": False}
    ws = LamderaSocket(url, options=options)

    def on_setup(event) -> None:
        console.print(f"[green]Handshake complete[/] - Client ID: {event.client_id}")
        loop.call_later(2.0, ws.close)

    def on_close(event) -> None:
        console.print(f"[green]Connection closed cleanly[/] (code {event.code})")
        result["ok"] = True
        done.set()

    def on_leader_disconnect(event) -> None:
        console.print(f"[cyan]Leader disconnection[/] - retry attempt {event.retry_count}")
        result["ok"] = True
        done.set()

    def on_error(event) -> None:
        console.print(f"[red]Connection error[/]: {event.error}")
        done.set()

    ws.on(ConnectionEvent.OPEN, lambda event: console.print("[green]Connection established[/]"))
    ws.on(ConnectionEvent.SETUP, on_setup)
    ws.on(ConnectionEvent.CLOSE, on_close)
    ws.on(ConnectionEvent.LEADER_DISCONNECT, on_leader_disconnect)
    ws.on(ConnectionEvent.ERROR, on_error)

    await _run_until(done, ws, SUITE_TIMEOUT)
    return result["ok"]


async def _leader_test(url: str, options: ConnectionOptions, wait: float) -> bool:
    console.print("[bold]TEST: Leader Disconnection & Retry[/]")
    console.print(f"Configuration: max_retries = {options.max_retries}, base delay = {options.retry_base_delay}ms")
    done = asyncio.Event()
    result = {"ok": True}
    ws = LamderaSocket(url, options=options)

    def on_leader_disconnect(event) -> None:
        console.print(f"[cyan]Leader disconnection[/] - attempt {event.retry_count}/{options.max_retries}")
        console.print("[green]Leader avoidance mechanism triggered[/]")
        done.set()

    def on_error(event) -> None:
        console.print(f"[red]Leader test error[/]: {event.error}")
        result["ok"] = False
        done.set()

    ws.on(ConnectionEvent.OPEN, lambda event: console.print("[green]Connected for leader test[/]"))
    ws.on(ConnectionEvent.SETUP, lambda event: console.print(
        f"[green]Setup complete[/] - Client ID: {event.client_id}; waiting for leader election..."))
    ws.on(ConnectionEvent.LEADER_DISCONNECT, on_leader_disconnect)
    ws.on(ConnectionEvent.ERROR, on_error)

    try:
        await asyncio.wait_for(done.wait(), wait)
    except asyncio.TimeoutError:
        console.print("No leader election detected in test period")
    finally:
        ws.close()
    return result["ok"]


async def _echo_test(url: str, options: ConnectionOptions, verbose: int, interval: float) -> bool:
    console.print("[bold]TEST: Continuous Echo[/] (Ctrl+C to stop)")
    done = asyncio.Event()
    result = {"ok": True}
    ws = LamderaSocket(url, options=options)
    echo_task: Optional[asyncio.Task] = None

    async def echo_loop() -> None:
        count = 0
        while True:
            message = f"echo-test-{count}"
            count += 1
            console.print(f"Sending: {message}")
            try:
                ws.send(message)
            except NotOpenError as e:
                console.print(f"[red]{e}[/]")
                done.set()
                return
            await asyncio.sleep(interval)

    def on_setup(event) -> None:
        nonlocal echo_task
        console.print(f"[green]Setup complete[/] - Client ID: {event.client_id}")
        if echo_task is None or echo_task.done():
            echo_task = asyncio.create_task(echo_loop())

    def on_error(event) -> None:
        console.print(f"[red]Echo test error[/]: {event.error}")
        result["ok"] = False
        done.set()

    ws.on(ConnectionEvent.SETUP, on_setup)
    ws.on(ConnectionEvent.MESSAGE, lambda event: format_message(event.data, "Received", verbose))
    ws.on(ConnectionEvent.LEADER_DISCONNECT, lambda event: done.set())
    ws.on(ConnectionEvent.CLOSE, lambda event: done.set())
    ws.on(ConnectionEvent.ERROR, on_error)

    try:
        await _run_until(done, ws, None)
    finally:
        if echo_task is not None:
            echo_task.cancel()
    return result["ok"]


async def _listen_test(url: str, options: ConnectionOptions, verbose: int) -> bool:
    console.print("[bold]TEST: Listen-Only Mode[/] (Ctrl+C to stop)")
    done = asyncio.Event()
    ws = LamderaSocket(url, options=options)

    ws.on(ConnectionEvent.SETUP, lambda event: console.print(
        f"[green]Setup complete[/] - Client ID: {event.client_id}; listening for messages..."))
    ws.on(ConnectionEvent.MESSAGE, lambda event: format_message(event.data, "Received (listen-only)", verbose))
    ws.on(ConnectionEvent.LEADER_DISCONNECT, lambda event: done.set())
    ws.on(ConnectionEvent.CLOSE, lambda event: done.set())
    ws.on(ConnectionEvent.ERROR, lambda event: console.print(f"[red]Listen error[/]: {event.error}"))

    await _run_until(done, ws, None)
    return True


async def _chat(url: str, options: ConnectionOptions, verbose: int) -> bool:
    console.print("[bold]Interactive chat[/] (/quit to exit)")
    ws = LamderaSocket(url, options=options)
    ws.on(ConnectionEvent.SETUP, lambda event: console.print(f"[green]Connected[/] as {event.client_id}"))
    ws.on(ConnectionEvent.MESSAGE, lambda event: format_message(event.data, "Received", verbose))
    ws.on(ConnectionEvent.LEADER_DISCONNECT, lambda event: console.print(
        f"[red]Gave up after {event.retry_count} leader retries[/]"))
    ws.on(ConnectionEvent.ERROR, lambda event: console.print(f"[red]Error[/]: {event.error}"))

    try:
        while True:
            line = (await aioconsole.ainput(": ")).strip()
            if not line:
                continue
            if line in {"/quit", "/exit"}:
                break
            try:
                ws.send(line)
            except NotOpenError as e:
                console.print(f"[red]{e}[/]")
                return False
    finally:
        ws.close()
    return True


_URL = typer.Option(_default_url(), help="WebSocket URL (env LAMDERA_URL)")
_VERBOSE = typer.Option(0, "--verbose", "-v", count=True,
                        help="-v hex preview, -vvv debug trace (200 chars), -vvvv full debug")
_CONFIG = typer.Option(None, "--config", help="YAML file with connection options")


def _finish(ok: bool) -> None:
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def connect(url: str = _URL, verbose: int = _VERBOSE, config: Optional[Path] = _CONFIG):
    """Connect, wait for the handshake, then disconnect cleanly."""
    options = _build_options(verbose, config, "connect-test")
    _finish(asyncio.run(_connection_test(url, options)))


@app.command()
def leader(
    url: str = _URL,
    verbose: int = _VERBOSE,
    config: Optional[Path] = _CONFIG,
    wait: float = typer.Option(5.0, help="Seconds to wait for an election"),
):
    """Stay connected until elected leader and watch the retry kick in."""
    options = _build_options(verbose, config, "leader-test",
                             max_retries=3, retry_base_delay=1000, retry_max_delay=3000)
    _finish(asyncio.run(_leader_test(url, options, wait)))


@app.command()
def echo(
    url: str = _URL,
    verbose: int = _VERBOSE,
    config: Optional[Path] = _CONFIG,
    interval: float = typer.Option(2.0, help="Seconds between echo messages"),
):
    """Send echo-test-N messages periodically and print replies."""
    options = _build_options(verbose, config, "echo-test")
    try:
        _finish(asyncio.run(_echo_test(url, options, verbose, interval)))
    except KeyboardInterrupt:
        console.print("Echo test stopped")


@app.command()
def listen(url: str = _URL, verbose: int = _VERBOSE, config: Optional[Path] = _CONFIG):
    """Print every message received without sending anything."""
    options = _build_options(verbose, config, "listen-only")
    try:
        _finish(asyncio.run(_listen_test(url, options, verbose)))
    except KeyboardInterrupt:
        console.print("Listen-only test stopped")


@app.command()
def chat(url: str = _URL, verbose: int = _VERBOSE, config: Optional[Path] = _CONFIG):
    """Send each line typed on stdin as an application message."""
    options = _build_options(verbose, config, "chat")
    try:
        _finish(asyncio.run(_chat(url, options, verbose)))
    except KeyboardInterrupt:
        console.print("Bye")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
