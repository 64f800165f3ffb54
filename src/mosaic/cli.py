"""Interactive shell: ``mosaic [workspace]``."""

import argparse
import asyncio
import hashlib
import os
import sys
import uuid
from pathlib import Path
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.syntax import Syntax

from .approval import ApprovalDecision, ApprovalMiddleware, ApprovalRequest
from .config import SessionConfig
from .cost_tracker import CostTracker
from .errors import AIError
from .interrupt import CancelToken, KeyboardMonitor
from .logger import get_logger, init_logging
from .orchestrator import CAP_EXHAUSTED, CANCELLED, DONE, FAILED, Orchestrator, OrchestratorEvent, TurnResult
from .prompts import format_plan, load_persona
from .providers import create_backend
from .retry import RetryPolicy
from .snapshots import SnapshotStore
from .tools import SnapshotMiddleware, create_default_registry

_log = get_logger("cli")

HELP_TEXT = """[dim]Commands:
  /clear             - Clear conversation history and snapshots
  /undo              - Undo the last turn (files and messages)
  /redo              - Redo the last undo
  /snapshots         - List file snapshots
  /plan              - Toggle planning before each turn
  /cost              - Show token usage and cost
  /help              - Show this help
  /exit              - Exit

Keys:
  Esc / Ctrl+C       - Stop the current turn
  Ctrl+Enter         - Insert newline
  Up/Down            - Browse history[/dim]"""


def get_history_file(workspace: str) -> Path:
    """Prompt history lives under ~/.mosaic/history/<workspace hash>."""
    workspace_hash = hashlib.md5(workspace.encode()).hexdigest()[:12]
    path = Path.home() / ".mosaic" / "history" / workspace_hash
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def create_prompt_session(history_file: Path) -> PromptSession:
    """Enter submits; Ctrl+Enter (or Esc, Enter) inserts a newline."""
    bindings = KeyBindings()

    @bindings.add(Keys.Escape, Keys.Enter)
    def _(event):
        event.current_buffer.insert_text("\n")

    @bindings.add("c-j")  # Ctrl+J = Ctrl+Enter in most terminals
    def _(event):
        event.current_buffer.insert_text("\n")

    return PromptSession(
        history=FileHistory(str(history_file)),
        auto_suggest=AutoSuggestFromHistory(),
        key_bindings=bindings,
        multiline=False,
    )


class Shell:
    """Wires the Orchestrator to a terminal."""

    def __init__(self, config: SessionConfig, console: Console, stream: bool = True):
        self.config = config
        self.console = console
        self.stream = stream
        self.monitor = KeyboardMonitor()
        self._token: Optional[CancelToken] = None
        self._streamed = False

        self.cost_tracker = CostTracker()
        self.store = SnapshotStore()
        self.approval = ApprovalMiddleware(self.confirm)
        persona = load_persona(config)
        self.backend = create_backend(
            config.provider,
            persona=persona,
            retry=RetryPolicy(config.retry),
            max_context_tokens=config.max_context_tokens,
        )
        self.orchestrator = Orchestrator(
            self.backend,
            create_default_registry(),
            config,
            middlewares=[self.approval],
            snapshot_middleware=SnapshotMiddleware(self.store),
            cost_tracker=self.cost_tracker,
            on_event=self.on_event,
            stream=stream,
            on_delta=self.on_delta,
        )

    # ── Callbacks ────────────────────────────────────────────

    def on_delta(self, text: str) -> None:
        self._streamed = True
        sys.stdout.write(text)
        sys.stdout.flush()

    def on_event(self, event: OrchestratorEvent) -> None:
        if event.kind == "assistant_message" and self._streamed:
            sys.stdout.write("\n")
            self._streamed = False
        elif event.kind == "assistant_message" and event.message is not None and event.message.content:
            self.console.print(Markdown(event.message.content))
        elif event.kind == "tool_start" and event.tool_call is not None:
            self.console.print(f"[cyan]> {event.tool_call.tool_name}[/cyan]")
        elif event.kind == "tool_result" and event.tool_call is not None and event.result is not None:
            if event.result.success:
                self.console.print(f"[green]  ok[/green] [dim]{event.tool_call.tool_name}[/dim]")
            else:
                self.console.print(f"[red]  failed[/red] [dim]{event.tool_call.tool_name}: {event.result.error}[/dim]")
        elif event.kind == "tool_skipped" and event.tool_call is not None:
            self.console.print(f"[yellow]  skipped {event.tool_call.tool_name} (not allowed)[/yellow]")

    async def confirm(self, request: ApprovalRequest) -> ApprovalDecision:
        """Show the preview and ask; the keyboard monitor is paused meanwhile."""
        self.monitor.stop()
        try:
            body = request.preview
            renderable = Syntax(body, "diff", word_wrap=True) if body.startswith(("Overwrite", "Edit")) else body
            self.console.print(Panel(renderable, title=f"Approve {request.tool_name}?", border_style="yellow"))
            answer = await asyncio.to_thread(
                Prompt.ask,
                "[y] approve  [n] reject  [a] approve all this session",
                choices=["y", "n", "a"],
                default="y",
                console=self.console,
            )
            if answer == "a":
                return ApprovalDecision(approved=True, approve_all=True)
            if answer == "n":
                feedback = await asyncio.to_thread(
                    Prompt.ask, "Feedback for the agent (optional)", default="", console=self.console,
                )
                return ApprovalDecision.reject(feedback or None)
            return ApprovalDecision.approve()
        finally:
            if self._token is not None:
                self.monitor.start(self._token)

    # ── Turns ────────────────────────────────────────────────

    async def run_turn(self, text: str) -> TurnResult:
        self._token = CancelToken()
        self._streamed = False
        self.monitor.start(self._token)
        try:
            if self.config.use_planning:
                result = await self.orchestrator.execute_task_with_planning(text, self._token)
            else:
                result = await self.orchestrator.execute_task(text, self._token)
        finally:
            self.monitor.stop()
            self._token = None
        self.render_result(result)
        return result

    def render_result(self, result: TurnResult) -> None:
        if self._streamed:
            sys.stdout.write("\n")
            self._streamed = False
        if result.plan is not None:
            self.console.print(Panel(format_plan(result.plan), title="Plan", border_style="blue"))
        if result.status == DONE and self.stream and result.message:
            self.console.print(Panel(Markdown(result.message), title="Response", border_style="green"))
        elif result.status == CAP_EXHAUSTED:
            self.console.print(f"[yellow]{result.message}[/yellow]")
        elif result.status == CANCELLED:
            self.console.print("[yellow][STOP] Cancelled[/yellow]")
        elif result.status == FAILED:
            self.console.print(Panel(result.message, title="Error", border_style="red"))
        self.console.print(
            f"[dim]{result.iterations} iteration(s) | {len(result.tools_used)} tool call(s) | "
            f"{result.tokens:,} tokens | {result.duration_ms / 1000:.1f}s[/dim]"
        )

    # ── Slash commands ───────────────────────────────────────

    def handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False when the shell should exit."""
        cmd = line.split(maxsplit=1)[0].lower()

        if cmd in ("/exit", "/quit", "/q"):
            return False
        if cmd == "/clear":
            self.orchestrator.reset_context()
            self.approval.reset()
            self.console.print("[dim]History cleared.[/dim]")
        elif cmd == "/undo":
            result = self.orchestrator.undo_last_turn()
            if result is None:
                self.console.print("[dim]Nothing to undo.[/dim]")
            else:
                self._print_restore("Undo", result)
        elif cmd == "/redo":
            result = self.orchestrator.redo()
            if result is None:
                self.console.print("[dim]Nothing to redo.[/dim]")
            else:
                self._print_restore("Redo", result)
        elif cmd == "/snapshots":
            snapshots = self.store.get_snapshots()
            if not snapshots:
                self.console.print("[dim]No snapshots.[/dim]")
            for s in snapshots:
                self.console.print(f"[dim]  @{s.message_index:<4} {len(s.files)} file(s)  {s.message_preview}[/dim]")
        elif cmd == "/plan":
            self.config.use_planning = not self.config.use_planning
            self.console.print(f"[dim]Planning {'on' if self.config.use_planning else 'off'}.[/dim]")
        elif cmd == "/cost":
            summary = self.cost_tracker.user_summary()
            self.console.print(Panel(summary.format_human(), title="Cost", border_style="blue"))
        elif cmd in ("/help", "/?"):
            self.console.print(HELP_TEXT)
        else:
            self.console.print("[dim]Type /help for commands[/dim]")
        return True

    def _print_restore(self, label: str, result) -> None:
        self.console.print(
            f"[dim]{label}: {len(result.files_restored)} file(s) restored, "
            f"{result.message_count} message(s)[/dim]"
        )
        for error in result.errors:
            self.console.print(f"[red]{error}[/red]")

    async def aclose(self) -> None:
        await self.backend.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mosaic", description="Workspace coding agent")
    parser.add_argument("workspace", nargs="?", default=".", help="Workspace directory")
    parser.add_argument("--provider", help="Backend type (openai, anthropic, openrouter, ollama, xai, mistral, custom)")
    parser.add_argument("--model", help="Model name")
    parser.add_argument("--plan", action="store_true", help="Analyze intent and plan before each turn")
    parser.add_argument("--no-stream", action="store_true", help="Wait for whole replies instead of streaming")
    parser.add_argument("--max-iterations", type=int, help="Iteration cap per turn")
    parser.add_argument("--env", help="Path to a .env file")
    return parser


def load_config(args: argparse.Namespace) -> SessionConfig:
    workspace = Path(os.path.abspath(args.workspace))
    if args.provider:
        os.environ["MOSAIC_PROVIDER"] = args.provider
    if args.model:
        os.environ["MOSAIC_MODEL"] = args.model
    config = SessionConfig.from_env(Path(args.env) if args.env else None, workspace)
    if args.plan:
        config.use_planning = True
    if args.max_iterations:
        config.max_iterations = args.max_iterations
    config.validate()
    return config


def main():
    args = build_parser().parse_args()
    console = Console()
    try:
        config = load_config(args)
    except ValueError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(2)

    workspace = str(config.workspace_path)
    init_logging(workspace, session_id=uuid.uuid4().hex[:8])
    _log.info("Session start: provider=%s model=%s workspace=%s",
              config.provider.type, config.provider.model, workspace)

    # One event loop for the whole session so the HTTP client outlives each turn
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    shell = Shell(config, console, stream=not args.no_stream)

    try:
        if not sys.stdin.isatty():
            text = sys.stdin.read().strip()
            if not text:
                print("No input provided.", file=sys.stderr)
                sys.exit(1)
            result = loop.run_until_complete(shell.run_turn(text))
            sys.exit(0 if result.status in (DONE, CAP_EXHAUSTED) else 1)

        console.print("[bold blue]Mosaic[/bold blue] - [bold]Esc[/bold] interrupt | /help for commands")
        console.print(f"[dim]{config.provider.type}:{config.provider.model} | Workspace: {workspace}[/dim]\n")
        session = create_prompt_session(get_history_file(workspace))

        while True:
            try:
                text = session.prompt("> ").strip()
            except KeyboardInterrupt:
                continue
            except EOFError:
                break
            if not text:
                continue
            if text.startswith("/"):
                if not shell.handle_command(text):
                    break
                continue
            try:
                loop.run_until_complete(shell.run_turn(text))
            except KeyboardInterrupt:
                console.print("\n[yellow][STOP] Interrupted[/yellow]")
            except AIError as e:
                console.print(f"[red]Error: {e.message}[/red]")
            print()
    finally:
        loop.run_until_complete(shell.aclose())
        loop.close()
        _log.info("Session end")


if __name__ == "__main__":
    main()
