"""Command-line front end for chat-relay."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.table import Table

from chat_relay.broker import RequestBroker
from chat_relay.config import ModelConfig, RelayConfig, load_config
from chat_relay.exceptions import ConfigError

console = Console()

_WAIT_SLICE = 0.1


class StreamPrinter:
    """ChunkSink that writes chunks to the console as they arrive."""

    def __init__(self, con: Console):
        self.console = con
        self.parts: list[str] = []
        self.finished = threading.Event()

    def on_chunk(self, text: str) -> None:
        self.parts.append(text)
        self.console.print(text, end="", markup=False, highlight=False)

    def on_done(self) -> None:
        self.finished.set()

    @property
    def text(self) -> str:
        return "".join(self.parts)


def _resolve_model(config: RelayConfig, model_id: str | None, no_stream: bool) -> ModelConfig:
    try:
        model = config.get_model(model_id)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    if no_stream:
        model = model.model_copy(update={"stream": False})
    return model


def stream_reply(
    broker: RequestBroker,
    model: ModelConfig,
    message: str,
    history: list[tuple[str, str]] | None = None,
) -> StreamPrinter:
    """Send *message* and block until done. Ctrl-C stops the request."""
    printer = StreamPrinter(console)
    request_id = broker.send_to_sink(model, message, printer, history=history or ())
    start = time.monotonic()
    try:
        while not printer.finished.wait(_WAIT_SLICE):
            pass
    except KeyboardInterrupt:
        broker.stop_current_request(request_id)
        console.print("\n[yellow]Stopped.[/yellow]")
        return printer
    console.print(f"\n[dim]({time.monotonic() - start:.1f}s)[/dim]")
    return printer


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to chat_relay.yaml (auto-detected from CWD or ~/.chat_relay/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """chat-relay - stream chat completions from local and hosted LLMs."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config, config_file = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        raise click.ClickException(str(e)) from e
    ctx.obj = {"config": config, "config_file": config_file}


@main.command()
@click.pass_obj
def models(obj: dict):
    """List configured models."""
    config: RelayConfig = obj["config"]
    config_file: Path | None = obj["config_file"]
    if config_file:
        console.print(f"[dim]Config: {config_file}[/dim]")
    else:
        console.print("[dim]Config: defaults (no chat_relay.yaml found)[/dim]")

    table = Table(title="Models")
    table.add_column("ID", style="cyan")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("URL", style="dim")
    table.add_column("Status")
    for m in config.models:
        if not m.enabled:
            status = "[dim]disabled[/dim]"
        elif not m.is_valid():
            status = "[yellow]incomplete[/yellow]"
        else:
            status = "[green]ready[/green]"
        marker = " *" if m.id == config.default_model else ""
        table.add_row(m.id + marker, m.provider.display_name, m.model_name, m.api_url, status)
    console.print(table)


@main.command()
@click.argument("message")
@click.option("--model", "-m", "model_id", default=None, help="Model id (default model if omitted)")
@click.option("--no-stream", is_flag=True, help="Request a single non-streamed response")
@click.pass_obj
def ask(obj: dict, message: str, model_id: str | None, no_stream: bool):
    """Send one MESSAGE and print the streamed answer."""
    config: RelayConfig = obj["config"]
    model = _resolve_model(config, model_id, no_stream)
    with RequestBroker(config) as broker:
        stream_reply(broker, model, message)


def _handle_command(command: str, broker: RequestBroker, history: list[tuple[str, str]]) -> str | None:
    cmd = command.split()[0].lower()
    if cmd in ("/quit", "/exit"):
        return "quit"
    if cmd == "/clear":
        history.clear()
        broker.clear_chat_history()
        console.print("[dim]History cleared.[/dim]")
        return "handled"
    console.print(f"[red]Unknown command: {cmd}[/red] [dim](/clear, /quit)[/dim]")
    return "handled"


@main.command()
@click.option("--model", "-m", "model_id", default=None, help="Model id (default model if omitted)")
@click.pass_obj
def chat(obj: dict, model_id: str | None):
    """Interactive chat session. /clear resets history, /quit exits."""
    config: RelayConfig = obj["config"]
    model = _resolve_model(config, model_id, no_stream=False)
    console.print(f"[dim]Model: {model.display_name}. Ctrl-C stops a reply, /quit exits.[/dim]")

    history_path = Path.home() / ".chat_relay" / "history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session: PromptSession = PromptSession(history=FileHistory(str(history_path)))
    history: list[tuple[str, str]] = []

    with RequestBroker(config) as broker:
        while True:
            try:
                user_input = session.prompt("> ").strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/dim]")
                break
            if not user_input:
                continue
            if user_input.startswith("/"):
                if _handle_command(user_input, broker, history) == "quit":
                    console.print("[dim]Goodbye![/dim]")
                    break
                continue

            printer = stream_reply(broker, model, user_input, history)
            if printer.finished.is_set():
                history.append(("user", user_input))
                history.append(("assistant", printer.text))


if __name__ == "__main__":
    main()
