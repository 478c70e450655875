"""Command line entry point for Script Agent."""

import asyncio
import signal
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from script_agent.callbacks import ChatCallback
from script_agent.config import Config, set_config
from script_agent.exceptions import ScriptAgentError
from script_agent.executor import PythonSubprocessExecutor
from script_agent.history import HistoryLog
from script_agent.history_export import EXPORT_MODES, export_session, format_timestamp
from script_agent.logging import configure_logging, log
from script_agent.orchestrator import Orchestrator
from script_agent.transport import (
    DirectTransport,
    SubprocessTransport,
    check_cli_connection,
    select_transport_kind,
)
from script_agent.types import AuthCredentials, AuthType, ProcessResult
from script_agent.worker import AgentWorker

app = typer.Typer(help="Script Agent - chat with a model that runs scripts for you")
console = Console()

QUIT_COMMANDS = ("/quit", "/exit")
NEW_SESSION_COMMAND = "/new"


class ConsoleCallback(ChatCallback):
    """Plain terminal lines for chat progress."""

    def __init__(self, out: Console, verbose: bool = False):
        self.out = out
        self.verbose = verbose

    def on_turn_start(self, turn: int, max_turns: int) -> None:
        if turn > 1 or self.verbose:
            self.out.print(f"[dim]-- turn {turn}/{max_turns}[/dim]")

    def on_thinking(self) -> None:
        if self.verbose:
            self.out.print("[dim]thinking...[/dim]")

    def on_thinking_done(self) -> None:
        pass

    def on_tool_use(self, tool_name: str, details: str) -> None:
        self.out.print(f"[dim]tool: {tool_name}[/dim]")

    def on_text(self, text: str) -> None:
        self.out.print(text, end="", markup=False, highlight=False)

    def on_script_code(self, code: str) -> None:
        self.out.print("\n[cyan]>>> script[/cyan]")
        self.out.print(code, markup=False, highlight=False)

    def on_script_output(self, output: str) -> None:
        self.out.print("[cyan]<<< output[/cyan]")
        self.out.print(output or "(no output)", markup=False, highlight=False, style="dim")

    def on_error(self, error: str) -> None:
        self.out.print(f"[red]error:[/red] {error}", highlight=False)

    def on_result(self, num_turns: int, cost: float | None) -> None:
        summary = f"{num_turns} turn{'s' if num_turns != 1 else ''}"
        if cost:
            summary += f", ~${cost:.4f}"
        self.out.print(f"\n[dim]({summary})[/dim]")


def _setup(config: str, model: str, transport: str, verbose: bool) -> Config:
    """Load configuration, apply overrides and configure logging."""
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except (OSError, ValueError) as e:
            console.print(f"[red]Failed to load config {config}: {e}[/red]")
            raise typer.Exit(2)
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if transport:
        if transport not in ("auto", "direct", "subprocess"):
            console.print(f"[red]Unknown transport: {transport}[/red]")
            raise typer.Exit(2)
        cfg.transport.mode = transport  # type: ignore[assignment]
    if verbose:
        cfg.logging.level = "DEBUG"

    set_config(cfg)
    configure_logging()
    return cfg


def _credentials(cfg: Config) -> AuthCredentials:
    creds = AuthCredentials(type=AuthType.SYSTEM, api_key=cfg.model.api_key)
    if creds.api_key:
        creds.type = AuthType.API_KEY
    return creds


def _owner(owner: str) -> str:
    return owner or str(Path.cwd().resolve())


def _history(cfg: Config, owner: str) -> HistoryLog:
    return HistoryLog(_owner(owner), cfg.resolved_history_dir())


def _build_worker(cfg: Config, owner: str, verbose: bool) -> AgentWorker:
    history = _history(cfg, owner) if cfg.history.enabled else None
    orchestrator = Orchestrator(
        callback=ConsoleCallback(console, verbose),
        script_executor=PythonSubprocessExecutor.from_config(cfg),
        history=history,
        config=cfg,
    )
    if cfg.agent.project_dir:
        orchestrator.load_system_prompt(cfg.agent.project_dir, cfg.agent.inside_host)
    return AgentWorker(orchestrator)


async def _send(worker: AgentWorker, text: str) -> ProcessResult:
    """Send one message; Ctrl-C cancels the running loop instead of exiting."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, worker.request_cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        return await worker.send(text)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _report(result: ProcessResult) -> None:
    if result.cancelled:
        console.print("\n[yellow]cancelled[/yellow]")
    elif not result.success and result.error:
        console.print(f"\n[red]failed:[/red] {result.error}", highlight=False)


async def _run_chat(cfg: Config, owner: str, verbose: bool, prompt: str = "") -> int:
    worker = _build_worker(cfg, owner, verbose)
    worker.start()
    try:
        if not await worker.connect(_credentials(cfg)):
            return 1
        await worker.new_session()

        if prompt:
            result = await _send(worker, prompt)
            _report(result)
            return 0 if result.success else 1

        console.print("[dim]Type /new for a new session, /quit to exit. Ctrl-C cancels a reply.[/dim]")
        while True:
            try:
                text = await asyncio.to_thread(Prompt.ask, "\n[bold]you[/bold]")
            except (EOFError, KeyboardInterrupt):
                return 0
            text = text.strip()
            if not text:
                continue
            if text in QUIT_COMMANDS:
                return 0
            if text == NEW_SESSION_COMMAND:
                session_id = await worker.new_session()
                console.print(f"[dim]new session {session_id or '(history disabled)'}[/dim]")
                continue
            _report(await _send(worker, text))
    finally:
        await worker.stop()


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    transport: str = typer.Option("", "-t", "--transport", help="auto, direct or subprocess"),
    owner: str = typer.Option("", "-o", "--owner", help="History owner (defaults to the cwd)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive chat."""
    cfg = _setup(config, model, transport, verbose)
    try:
        code = asyncio.run(_run_chat(cfg, owner, verbose))
    except ScriptAgentError as e:
        log.error("Fatal error", error=str(e))
        code = 1
    raise typer.Exit(code)


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Message to send"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    transport: str = typer.Option("", "-t", "--transport", help="auto, direct or subprocess"),
    owner: str = typer.Option("", "-o", "--owner", help="History owner (defaults to the cwd)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Send one message, run the agent loop to completion and exit."""
    cfg = _setup(config, model, transport, verbose)
    try:
        code = asyncio.run(_run_chat(cfg, owner, verbose, prompt=prompt))
    except ScriptAgentError as e:
        log.error("Fatal error", error=str(e))
        code = 1
    raise typer.Exit(code)


@app.command()
def sessions(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    owner: str = typer.Option("", "-o", "--owner", help="History owner (defaults to the cwd)"),
) -> None:
    """List recorded sessions, newest first."""
    cfg = _setup(config, "", "", False)
    infos = _history(cfg, owner).list_sessions()
    if not infos:
        console.print("(no sessions)")
        return

    table = Table(title=f"Sessions for {_owner(owner)}")
    table.add_column("Session ID", style="cyan", no_wrap=True)
    table.add_column("Started")
    table.add_column("First message")
    for info in infos:
        table.add_row(info.session_id, format_timestamp(info.timestamp), info.first_message)
    console.print(table)


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session to print"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    owner: str = typer.Option("", "-o", "--owner", help="History owner (defaults to the cwd)"),
) -> None:
    """Print the records of one session."""
    cfg = _setup(config, "", "", False)
    history = _history(cfg, owner)
    try:
        if not history.session_path(session_id).exists():
            console.print(f"[red]Session not found: {session_id}[/red]")
            raise typer.Exit(1)
    except ScriptAgentError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    for record in history.load_session(session_id):
        content = record.content
        if record.type == "tool_use":
            tool_input = record.message.get("toolInput")
            content = tool_input.get("code") if isinstance(tool_input, dict) else tool_input
        console.print(f"[bold]{record.type}[/bold] [dim]{format_timestamp(record.timestamp)}[/dim]")
        console.print(str(content or ""), markup=False, highlight=False)
        console.print()


@app.command()
def export(
    session_id: str = typer.Argument(..., help="Session to export"),
    mode: str = typer.Option("all", "--mode", help=f"One of: {', '.join(EXPORT_MODES)}"),
    output: str = typer.Option(".", "--output", help="Directory for exported files"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    owner: str = typer.Option("", "-o", "--owner", help="History owner (defaults to the cwd)"),
) -> None:
    """Export a session as Markdown and/or HTML."""
    cfg = _setup(config, "", "", False)
    try:
        written = export_session(_history(cfg, owner), session_id, Path(output), mode)
    except ScriptAgentError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    for path in written:
        console.print(str(path))


async def _check_connection(cfg: Config) -> tuple[str, bool, str]:
    credentials = _credentials(cfg)
    kind = select_transport_kind(cfg, credentials)
    if kind == SubprocessTransport.kind:
        ok, message = await check_cli_connection(
            cfg.transport.cli_path, timeout=cfg.transport.exchange_timeout
        )
        return kind, ok, message

    transport = DirectTransport.from_config(cfg, credentials=credentials)
    try:
        ok, message = await transport.test_connection()
    finally:
        await transport.disconnect()
    return kind, ok, message


@app.command()
def check(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    transport: str = typer.Option("", "-t", "--transport", help="auto, direct or subprocess"),
) -> None:
    """Send a one-shot test message through the selected transport."""
    cfg = _setup(config, "", transport, False)
    try:
        kind, ok, message = asyncio.run(_check_connection(cfg))
    except ScriptAgentError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if ok:
        console.print(f"[green]{kind}:[/green] {message}", highlight=False)
        return
    console.print(f"[red]{kind}:[/red] {message}", highlight=False)
    raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from script_agent import __version__

    console.print(f"Script Agent v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    sys.exit(main())
