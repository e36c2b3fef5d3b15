"""Taskrelay CLI — the main entry point."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer
from rich.console import Console

from taskrelay import __version__
from taskrelay.tasks.errors import TaskRelayError

app = typer.Typer(
    name="taskrelay",
    help="Durable task dispatch over RabbitMQ and Redis.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_STATUS_STYLES = {
    "pending": "yellow",
    "started": "cyan",
    "completed": "green",
    "failed": "red",
}


@app.callback(invoke_without_command=True)
def version_callback(
    version: bool = typer.Option(False, "--version", "-v", help="Show version"),
):
    if version:
        console.print(f"taskrelay [dim]v{__version__}[/dim]")
        raise typer.Exit()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from settings)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default from settings)"),
    workers: Optional[int] = typer.Option(
        None, "--workers", "-w",
        help="Dispatchers to run inside the server process",
    ),
):
    """Start the HTTP submission server and live view."""
    import uvicorn

    from taskrelay.config.settings import get_settings
    from taskrelay.logging_setup import setup_logging
    from taskrelay.server.app import create_app

    settings = get_settings()
    if host:
        settings.server.host = host
    if port:
        settings.server.port = port
    if workers is not None:
        settings.server.embedded_workers = workers
    setup_logging(settings.log_level)

    _show_config(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        access_log=False,
        log_config=None,
    )


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c",
        help="Dispatcher instances in this process (default from settings)",
    ),
):
    """Consume tasks from the queue until interrupted."""
    from taskrelay.config.settings import get_settings
    from taskrelay.core.pool import run_workers
    from taskrelay.logging_setup import setup_logging

    settings = get_settings()
    if concurrency:
        settings.dispatcher.concurrency = concurrency
    setup_logging(settings.log_level)

    console.print(
        f"[bold]Worker[/bold] starting {settings.dispatcher.concurrency} dispatcher(s) "
        f"on queue [cyan]{settings.broker.queue}[/cyan]"
    )
    _run_or_exit(run_workers(settings))


@app.command()
def submit(
    task_type: str = typer.Argument(..., help="Registered task type"),
    field: Optional[list[str]] = typer.Option(
        None, "--field", "-f", help="Payload field as key=value (repeatable)",
    ),
    wait: Optional[bool] = typer.Option(
        None, "--wait/--no-wait",
        help="Wait for the result (default: only for interactive types)",
    ),
):
    """Submit a task and print its id (and result, if it arrives in time)."""
    fields = _parse_fields(field or [])
    submission = _run_or_exit(_submit(task_type, fields, wait))

    console.print(f"[green]Task queued[/green] (ID={submission.task_id})")
    if submission.resolved:
        style = _STATUS_STYLES.get(submission.status, "white")
        console.print(f"  [{style}]{submission.status}[/{style}]: {submission.result}")
    elif wait or wait is None and submission.type in _interactive_types():
        console.print(f"  [dim]still {submission.status}; check later with 'taskrelay status'[/dim]")


@app.command()
def status(task_id: str = typer.Argument(..., help="Task id returned by submit")):
    """Show the stored status record of a task."""
    record = _run_or_exit(_get_record(task_id))
    if record is None:
        console.print(f"[yellow]No record for task {task_id}[/yellow]")
        raise typer.Exit(1)

    style = _STATUS_STYLES.get(record.status, "white")
    console.print()
    console.print(f"  [bold]Task:[/bold]      {task_id}")
    console.print(f"  [bold]Type:[/bold]      {record.type}")
    console.print(f"  [bold]Status:[/bold]    [{style}]{record.status}[/{style}]")
    console.print(f"  [bold]Payload:[/bold]   {json.dumps(record.payload)}")
    if record.result is not None:
        console.print(f"  [bold]Result:[/bold]    {record.result}")
    console.print(f"  [bold]Worker:[/bold]    {record.worker_id or '-'}")
    console.print()


@app.command()
def watch():
    """Print task status broadcasts as they happen (Ctrl+C to stop)."""
    try:
        _run_or_exit(_watch())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped watching.[/dim]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _show_config(settings) -> None:
    """Print a short summary of where this process connects."""
    from kombu.utils.url import maybe_sanitize_url

    console.print()
    console.print(f"  [bold]Broker:[/bold]   {maybe_sanitize_url(settings.broker.url)}")
    console.print(f"  [bold]Store:[/bold]    {maybe_sanitize_url(settings.store.url)}")
    console.print(f"  [bold]Queue:[/bold]    {settings.broker.queue} (dead letters: {settings.broker.dead_letter_queue})")
    console.print(f"  [bold]Types:[/bold]    {', '.join(settings.gateway.allowed_types)}")
    console.print(f"  [bold]Server:[/bold]   http://{settings.server.host}:{settings.server.port}")
    console.print(f"  [bold]Live:[/bold]     ws://{settings.server.host}:{settings.server.port}/ws/tasks")
    console.print()


def _parse_fields(pairs: list[str]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            console.print(f"[red]Invalid field {pair!r}; expected key=value[/red]")
            raise typer.Exit(2)
        fields[key.strip()] = value
    return fields


def _interactive_types() -> list[str]:
    from taskrelay.config.settings import get_settings

    return get_settings().gateway.interactive_types


def _run_or_exit(coro):
    """Run *coro*, turning taskrelay errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except TaskRelayError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from None


def _store_from_settings(settings):
    from taskrelay.tasks.store import StatusStore

    return StatusStore.from_url(
        settings.store.url,
        key_prefix=settings.store.key_prefix,
        updates_channel=settings.store.updates_channel,
        queue_length_channel=settings.store.queue_length_channel,
    )


async def _submit(task_type: str, fields: dict[str, str], wait: bool | None):
    from taskrelay.broker.base import connect_with_retry
    from taskrelay.broker.kombu_broker import KombuBroker
    from taskrelay.config.settings import get_settings
    from taskrelay.core.gateway import SubmissionGateway
    from taskrelay.handlers.builtin import default_registry
    from taskrelay.tasks.errors import UnknownTaskType

    settings = get_settings()
    # Unknown types never touch the store or the broker
    if task_type not in settings.gateway.allowed_types:
        raise UnknownTaskType(task_type)
    registry = default_registry(settings.handlers.latency_seconds)
    store = _store_from_settings(settings)
    broker = KombuBroker(settings.broker, role="cli")
    try:
        await store.ping(settings.store.url)
        await connect_with_retry(
            broker,
            attempts=settings.broker.connect_attempts,
            delay=settings.broker.connect_delay_seconds,
            url=broker.url,
        )
        gateway = SubmissionGateway.from_settings(settings, store, broker, registry)
        payload = gateway.build_payload(task_type, fields)
        return await gateway.submit(task_type, payload, wait=wait)
    finally:
        await broker.close()
        await store.close()


async def _get_record(task_id: str):
    from taskrelay.config.settings import get_settings

    settings = get_settings()
    store = _store_from_settings(settings)
    try:
        await store.ping(settings.store.url)
        return await store.get(task_id)
    finally:
        await store.close()


async def _watch() -> None:
    from taskrelay.config.settings import get_settings
    from taskrelay.tasks.models import BroadcastEvent

    settings = get_settings()
    store = _store_from_settings(settings)
    await store.ping(settings.store.url)
    console.print(f"[dim]Watching {store.updates_channel}...[/dim]")
    try:
        async for raw in store.subscribe():
            event = BroadcastEvent.from_json(raw)
            style = _STATUS_STYLES.get(event.status, "white")
            line = f"{event.id}  {event.type:<24} [{style}]{event.status:<9}[/{style}]"
            if event.worker_id:
                line += f" [dim]{event.worker_id}[/dim]"
            if event.status.is_terminal:
                line += f"  {event.result}"
            console.print(line)
    finally:
        await store.close()


if __name__ == "__main__":
    app()
