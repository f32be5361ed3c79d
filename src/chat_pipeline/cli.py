"""Developer CLI: stream a chat message or watch server notifications."""

from __future__ import annotations

import asyncio
import logging

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from chat_pipeline import __version__
from chat_pipeline.config import PipelineConfig, load_config
from chat_pipeline.session import REASON_CHAT, EventStreamSession
from chat_pipeline.stream import ChatStreamClient
from chat_pipeline.types import EventKind, InteractionRecord, Notification

console = Console()


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


def render_record(record: InteractionRecord) -> Table:
    """Summary table for an interaction record."""
    table = Table(title="Interaction", show_header=False)
    table.add_column("field", style="bold cyan")
    table.add_column("value")
    table.add_row("id", record.id)
    table.add_row("model", f"{record.model} ({record.version})")
    table.add_row("time", f"{record.processing_time:.2f}s")
    table.add_row(
        "tokens",
        f"{record.tokens.prompt} prompt + {record.tokens.completion} completion"
        f" = {record.tokens.total}",
    )
    for i, method in enumerate(record.recall_methods, 1):
        table.add_row(f"recall {i}", f"{method.method} {method.args}")
    return table


async def _send(config: PipelineConfig, prompt: str, version: str | None) -> int:
    last_len = 0
    async with ChatStreamClient(config) as client:
        async for event in client.send_message(prompt, version):
            if event.kind is EventKind.PROGRESS:
                label = "retry" if event.retrying else "waiting"
                console.print(f"[yellow]{label}:[/yellow] [dim]{event.content}[/dim]")
            elif event.kind is EventKind.STREAM:
                # Payloads hold the full answer so far; print the new tail
                console.print(event.content[last_len:], end="", markup=False)
                last_len = len(event.content)
            elif event.kind is EventKind.COMPLETE:
                console.print()
                if event.reasoning:
                    console.print(Panel(event.reasoning, title="reasoning", style="dim"))
                console.print(Panel(Markdown(event.content), title="answer"))
                if event.parse_error:
                    console.print(f"[yellow]debug info degraded: {event.parse_error}[/yellow]")
                if event.debug is not None:
                    console.print(render_record(event.debug))
                return 0
            elif event.kind is EventKind.ERROR:
                console.print()
                console.print(f"[red]{event.content}[/red]")
                return 1
    return 1


async def _listen(config: PipelineConfig, reason: str) -> None:
    session = EventStreamSession(config)

    def _show(notification: Notification) -> None:
        console.print(f"[cyan]{notification.type.value}[/cyan] {notification.data}")

    session.subscribe(_show)
    session.subscribe_training(_show)
    session.connect_for_reason(reason)
    try:
        while session.is_open:
            await asyncio.sleep(0.5)
    finally:
        await session.aclose()


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to chat_pipeline.yaml (auto-detected from CWD or ~/.config/chat-pipeline/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """Chat pipeline - stream chat responses from the command line."""
    _setup_logging(verbose)
    ctx.obj = load_config(config_path)


@main.command()
@click.argument("prompt")
@click.option("--version", "model_version", default=None, help="Model version to query")
@click.pass_obj
def send(config: PipelineConfig, prompt: str, model_version: str | None):
    """Send PROMPT and stream the answer."""
    try:
        code = asyncio.run(_send(config, prompt, model_version))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
        code = 130
    raise SystemExit(code)


@main.command()
@click.option("--reason", default=REASON_CHAT, help="Reason to keep the connection open")
@click.pass_obj
def listen(config: PipelineConfig, reason: str):
    """Print server notifications until interrupted."""
    try:
        asyncio.run(_listen(config, reason))
    except KeyboardInterrupt:
        console.print("\n[dim]Disconnected[/dim]")


if __name__ == "__main__":
    main()
