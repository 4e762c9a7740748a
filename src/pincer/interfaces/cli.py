"""
interfaces/cli.py — Pincer Terminal Interface

Thin terminal surface over the agent runtime. Uses rich for rendering and
aioconsole for async input.

Subcommands:
  chat     interactive REPL: every message becomes a run queued on the
           session's RunQueue and executed through the middleware stack
           (steering + memory); events render live as they are emitted
  plan     show the planner's decision and steps for a prompt
  route    show which model the router picks for a token budget
  models   list the router's model table (and what Ollama has pulled)

Ctrl+C during a run raises the steering interruption, which stops the run
at its next checkpoint. A second Ctrl+C cancels the run outright.

Usage:
    pincer chat
    pincer plan "refactor the parser, then add tests"
    pincer route --input 12000 --output 2000 --tools --priority cost
    pincer --config ./config/config.yaml --log-level DEBUG models
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import aioconsole
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from pincer.agent.approval import ApprovalRequest, TimedApprovalGate, gate_for_mode
from pincer.agent.events import (
    AgentEndEvent,
    AgentEvent,
    CompactionEvent,
    ContextReplaceEvent,
    ErrorEvent,
    MemorySaveEvent,
    MemorySearchEvent,
    MessageEndEvent,
    MessageUpdateEvent,
    PlanCreatedEvent,
    PlanStepEvent,
    ThinkingStartEvent,
    ToolErrorEvent,
    ToolExecutionStartEvent,
    ToolResultEvent,
    WarningEvent,
    describe_event,
)
from pincer.agent.loop import AgentLoop, RunOptions
from pincer.agent.middleware import RunRequest, compose, core_runner, with_memory, with_steering
from pincer.agent.run_queue import RunQueue
from pincer.agent.steering import SteeringController
from pincer.agent.task_planner import TaskPlanner
from pincer.agent.tool_bridge import ToolBridge
from pincer.agent.types import AgentResult, RunStatus
from pincer.brain.ollama_provider import OllamaCompletionProvider, ProviderPool
from pincer.brain.types import Message, Role
from pincer.config.settings import ConfigError, Settings, load_settings
from pincer.context.context_manager import ContextManager
from pincer.context.model_router import ModelRouter
from pincer.context.types import RoutingPriority, TaskRequirements
from pincer.exceptions import CompletionProviderError, NoSuitableModelError, PincerError
from pincer.memory.recall import MemoryRecall
from pincer.memory.session_store import InMemorySessionStore, JsonDirectorySessionStore
from pincer.observability.logger import get_logger, setup_logging_from_settings
from pincer.tools.registry import ToolRegistry
from pincer.tools.workspace import register_workspace_tools

log = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1

# ── Constants ─────────────────────────────────────────────────────────────────

_HELP_TEXT = """
## Pincer Chat Commands

| Command | Description |
|---------|-------------|
| `<message>` | Send a message to the agent |
| `/status` | Show session, model and run statistics |
| `/tools` | List the tools the agent can call |
| `/model <id\\|auto>` | Switch the model for the next runs |
| `/memory <query>` | Search previous conversations |
| `/clear` | Clear conversation history |
| `/help` | Show this help message |
| `exit` / `quit` / Ctrl+D | Exit Pincer |

**During a run:** Ctrl+C asks the agent to stop at its next checkpoint;
press it again to cancel the run immediately.
"""

_SYSTEM_PROMPT = (
    "You are {name}, a careful assistant working inside a local workspace. "
    "Use the available tools when they help, and answer concisely."
)

_STATUS_COLOURS = {
    RunStatus.COMPLETED: "green",
    RunStatus.ABORTED: "yellow",
    RunStatus.TIMEOUT: "yellow",
    RunStatus.ERROR: "red",
}


def build_router(settings: Settings) -> ModelRouter:
    router = ModelRouter(safety_margin=settings.routing.context_safety_margin)
    for profile in settings.routing.extra_models:
        router.add_model(profile)
    return router


# ─────────────────────────────────────────────────────────────────────────────
# Chat REPL
# ─────────────────────────────────────────────────────────────────────────────


class ChatCLI:
    """
    Interactive chat session.

    Wires together: Settings → ProviderPool → ToolRegistry → ToolBridge →
    AgentLoop → middleware (steering, memory) → RunQueue, then runs a
    rich-rendered async input loop.
    """

    def __init__(self, settings: Settings, console: Optional[Console] = None):
        self.settings = settings
        self.console = console or Console()
        self.session_id = settings.agent.session_id
        self._history: list[Message] = []
        self._running_task: Optional[asyncio.Task] = None
        self._streaming = False

        self.steering = SteeringController(
            processed_grace_seconds=settings.steering.processed_grace_seconds,
        )
        self.queue = RunQueue()

        self.registry = register_workspace_tools(ToolRegistry())
        gate = gate_for_mode(settings.tools.approval_mode, settings.tools.approval_timeout_seconds)
        if isinstance(gate, TimedApprovalGate):
            gate.on_request = self._handle_approval
        self._gate = gate
        self.bridge = ToolBridge(
            self.registry,
            workspace_root=str(settings.workspace_root),
            approval_gate=gate,
            require_approval=settings.agent.require_approval,
            allow_dangerous_tools=settings.agent.allow_dangerous_tools,
            timeout_seconds=settings.tools.timeout_seconds,
            max_result_chars=settings.tools.max_result_chars,
        )

        config = settings.to_agent_config()
        self.loop = AgentLoop(
            provider=ProviderPool(
                ollama_base_url=settings.ollama_base_url_v1,
                deepseek_api_key=settings.deepseek_api_key,
                openai_api_key=settings.openai_api_key,
            ),
            tool_bridge=self.bridge,
            context_manager=ContextManager(settings.to_context_config()),
            planner=TaskPlanner(
                max_context_tokens=config.max_context_tokens,
                reserved_tokens=config.reserved_tokens,
                max_steps=settings.planner.max_steps,
                length_ratio=settings.planner.length_ratio,
                enabled=settings.planner.enabled,
            ),
            router=build_router(settings),
            config=config,
            session_id=self.session_id,
            routing_priority=settings.routing.priority,
        )

        store_dir = settings.memory.store_dir
        store = JsonDirectorySessionStore(Path(store_dir).expanduser()) if store_dir else InMemorySessionStore()
        self.recall = MemoryRecall(
            store,
            enabled=settings.memory.enabled,
            search_limit=settings.memory.search_limit,
            min_relevance=settings.memory.min_relevance,
        )
        self.runner = compose(
            core_runner(self.loop),
            with_steering(self.steering),
            with_memory(self.recall),
        )
        self.system_prompt = _SYSTEM_PROMPT.format(name=settings.agent.name)

    # ── Startup ───────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self.settings.workspace_root.mkdir(parents=True, exist_ok=True)
        self._print_banner()
        await self._repl_loop()
        log.info("cli.shutdown", session_id=self.session_id)

    def _print_banner(self) -> None:
        self.console.print(
            Panel(
                f"[bold cyan]{self.settings.agent.name}[/]  ·  "
                f"Model: [cyan]{self.loop.config.model}[/]  ·  "
                f"Approval: [yellow]{self.settings.tools.approval_mode}[/]  ·  "
                f"Session: [dim]{self.session_id}[/]\n"
                f"Workspace: [dim]{self.settings.workspace_root}[/]\n\n"
                f"Type your message or [bold]/help[/] for commands. "
                f"[bold]exit[/] or Ctrl+D to quit.",
                border_style="cyan",
                padding=(0, 2),
            )
        )

    # ── REPL Loop ─────────────────────────────────────────────────────────────

    async def _repl_loop(self) -> None:
        while True:
            try:
                user_input = await aioconsole.ainput(f"{self.settings.agent.name}> ")
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/]")
                break

            user_input = user_input.strip()
            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit"):
                self.console.print("[dim]Goodbye.[/]")
                break

            await self.dispatch(user_input)

    async def dispatch(self, raw: str) -> None:
        """Route input to a slash command or send it to the agent."""
        if not raw.startswith("/"):
            await self.ask(raw)
            return

        parts = raw.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        handlers = {
            "/help":   lambda _: self.console.print(Markdown(_HELP_TEXT)),
            "/status": lambda _: self._cmd_status(),
            "/tools":  lambda _: self._cmd_tools(),
            "/model":  self._cmd_model,
            "/memory": self._cmd_memory,
            "/clear":  lambda _: self._cmd_clear(),
        }
        handler = handlers.get(cmd)
        if handler is None:
            self.console.print(f"[yellow]Unknown command: {cmd}. Type /help for commands.[/]")
            return
        result = handler(arg)
        if asyncio.iscoroutine(result):
            await result

    # ── Running the agent ─────────────────────────────────────────────────────

    async def ask(self, message: str) -> Optional[AgentResult]:
        """Queue one run for the session and render its events as they arrive."""
        request = RunRequest(
            prompt=message,
            system_prompt=self.system_prompt,
            options=RunOptions(
                on_event=self.render_event,
                session_id=self.session_id,
                history=list(self._history),
            ),
        )

        async def run(meta) -> AgentResult:
            return await self.runner(replace(request, options=replace(request.options, run_id=meta.run_id)))

        self._running_task = asyncio.create_task(self.queue.enqueue(self.session_id, run))
        restore = self._install_interrupt_handler()
        try:
            outcome = await self._running_task
        except asyncio.CancelledError:
            self._end_stream()
            self.console.print("[yellow]🛑 Run cancelled.[/]")
            return None
        except CompletionProviderError as e:
            self._end_stream()
            self._print_error(str(e))
            if e.result is not None:
                self._history = e.result.messages
            return e.result
        except PincerError as e:
            self._end_stream()
            self._print_error(str(e))
            return None
        finally:
            restore()
            self._running_task = None

        result: AgentResult = outcome.result
        self._history = result.messages
        return result

    def _install_interrupt_handler(self):
        """Route SIGINT to the steering controller while a run is active."""
        try:
            loop = asyncio.get_running_loop()
            loop.add_signal_handler(signal.SIGINT, self.interrupt)
        except (NotImplementedError, RuntimeError):
            return lambda: None
        return lambda: loop.remove_signal_handler(signal.SIGINT)

    def interrupt(self) -> None:
        if self._running_task is None or self._running_task.done():
            self.console.print("[dim]Nothing is currently running.[/]")
            return
        if self.steering.is_interrupted:
            self._running_task.cancel()
            return
        self.steering.interrupt(reason="user_interrupt")
        self.console.print("\n[yellow]🛑 Stopping at the next checkpoint (Ctrl+C again to cancel).[/]")

    # ── Event rendering ───────────────────────────────────────────────────────

    def render_event(self, event: AgentEvent) -> None:
        if isinstance(event, MessageUpdateEvent):
            if event.role == Role.ASSISTANT:
                self._streaming = True
                self.console.print(event.delta, end="", markup=False, highlight=False)
            return
        if isinstance(event, MessageEndEvent):
            if event.role == Role.ASSISTANT:
                self._end_stream()
            return

        self._end_stream()
        if isinstance(event, ThinkingStartEvent):
            self.console.print("[dim italic]thinking…[/]")
        elif isinstance(event, ToolExecutionStartEvent):
            self.console.print(f"  [dim cyan]{describe_event(event)}[/]")
        elif isinstance(event, ToolResultEvent):
            self.console.print(f"  [green]{describe_event(event)}[/]")
        elif isinstance(event, ToolErrorEvent):
            self.console.print(f"  [red]{describe_event(event)}[/]")
        elif isinstance(event, PlanCreatedEvent):
            steps = "\n".join(f"{i}. {s.title}" for i, s in enumerate(event.plan.steps, 1))
            self.console.print(
                Panel(
                    Markdown(steps),
                    title="[yellow]📋 Plan[/]",
                    border_style="yellow",
                    padding=(0, 2),
                )
            )
        elif isinstance(event, (PlanStepEvent, CompactionEvent, ContextReplaceEvent, MemorySaveEvent)):
            self.console.print(f"[dim]{describe_event(event)}[/]")
        elif isinstance(event, MemorySearchEvent):
            if event.sessions_found:
                self.console.print(f"[dim]{describe_event(event)}[/]")
        elif isinstance(event, WarningEvent):
            self.console.print(f"[yellow]⚠ {event.message}[/]")
        elif isinstance(event, ErrorEvent):
            self._print_error(event.error)
        elif isinstance(event, AgentEndEvent):
            if event.status != RunStatus.COMPLETED:
                colour = _STATUS_COLOURS.get(event.status, "white")
                self.console.print(f"[{colour}]{describe_event(event)}[/]")

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def _print_error(self, text: str) -> None:
        self.console.print(
            Panel(
                Markdown(text),
                title="[red]Error[/]",
                border_style="red",
                padding=(0, 1),
            )
        )

    def _handle_approval(self, request: ApprovalRequest) -> None:
        """Prompt inline and resolve the pending gate request immediately."""
        self._end_stream()
        self.console.print()
        self.console.print(
            Panel(
                Markdown(f"**{request.tool_name}**\n\n```json\n{json.dumps(request.args, indent=2)}\n```"),
                title="[bold yellow]⚠ Approval Required[/]",
                border_style="yellow",
                padding=(0, 2),
            )
        )
        approved = Confirm.ask("  Allow this tool call?", default=False, console=self.console)
        if isinstance(self._gate, TimedApprovalGate):
            self._gate.resolve(request.tool_call_id, approved)
        status = "[green]✓ Approved[/]" if approved else "[red]✗ Denied[/]"
        self.console.print(f"  {status}\n")

    # ── Commands ──────────────────────────────────────────────────────────────

    def _cmd_status(self) -> None:
        runs = self.queue.list_runs(self.session_id)
        steering = self.steering.get_stats()
        usage = self.loop.context_manager.calculate_context_usage(self._history)
        text = (
            f"**Session:** `{self.session_id}`\n\n"
            f"- Model: `{self.loop.config.model}`\n"
            f"- Messages in history: {len(self._history)}\n"
            f"- Context: {usage.used} / {usage.available} tokens ({usage.percentage:.0f}%)\n"
            f"- Runs: {len(runs)} ({sum(1 for r in runs if r.status == RunStatus.COMPLETED)} completed)\n"
            f"- Steering: {steering.pending} pending, {steering.processed} processed\n"
            f"- Memory: {'on' if self.recall.enabled else 'off'}\n"
        )
        self.console.print(Markdown(text))

    async def _cmd_tools(self) -> None:
        definitions = await self.bridge.get_tool_definitions(refresh=True)
        if not definitions:
            self.console.print("[dim]No tools registered.[/]")
            return
        table = Table(box=box.ROUNDED, border_style="dim")
        table.add_column("Name", style="cyan bold", no_wrap=True)
        table.add_column("Approval", no_wrap=True)
        table.add_column("Description")
        for d in definitions:
            approval = "[yellow]required[/]" if d.requires_approval else "[dim]-[/]"
            if d.dangerous:
                approval = "[red]dangerous[/]"
            table.add_row(d.name, approval, d.description)
        self.console.print(table)

    def _cmd_model(self, model: str) -> None:
        if not model:
            self.console.print(f"[dim]Current model: {self.loop.config.model}[/]")
            return
        self.loop.update_config(model=model)
        self.console.print(f"[dim]✓ Model set to {model}.[/]")

    async def _cmd_memory(self, query: str) -> None:
        if not query:
            self.console.print("[yellow]Usage: /memory <query>[/]")
            return
        with self.console.status("[dim]Searching memory...[/]"):
            found = await self.recall.search(query)
        if not found.sessions:
            self.console.print("[dim]No related conversations found.[/]")
            return
        for session in found.sessions:
            self.console.print(
                Panel(
                    session.summary,
                    title=f"[cyan]{session.session_id}[/] [dim]({session.relevance}/10)[/]",
                    border_style="dim",
                    padding=(0, 1),
                )
            )

    def _cmd_clear(self) -> None:
        self._history = []
        self.steering.clear_messages()
        self.console.print("[dim]✓ Conversation history cleared.[/]")


# ─────────────────────────────────────────────────────────────────────────────
# One-shot commands
# ─────────────────────────────────────────────────────────────────────────────


def cmd_chat(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    try:
        settings.validate_all()
    except ConfigError as e:
        console.print(f"[red]{e}[/]")
        return EXIT_ERROR

    log.info("cli.starting", model=settings.agent.model)
    try:
        asyncio.run(ChatCLI(settings, console=console).start())
    except KeyboardInterrupt:
        log.info("cli.interrupted")
    return EXIT_OK


def cmd_plan(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    planner = TaskPlanner(
        max_context_tokens=settings.context.max_context_tokens,
        reserved_tokens=settings.context.reserved_tokens,
        max_steps=settings.planner.max_steps,
        length_ratio=settings.planner.length_ratio,
        enabled=settings.planner.enabled,
    )
    decision = planner.should_plan(args.prompt)
    verdict = "[green]plan[/]" if decision.should_plan else "[dim]no plan[/]"
    console.print(
        f"Decision: {verdict} ([cyan]{decision.reason}[/])  ·  "
        f"{decision.total_tokens} tokens, threshold {decision.threshold}"
    )
    if not (decision.should_plan or args.force):
        return EXIT_OK

    plan = planner.create_plan(args.prompt)
    table = Table(title=f"  {plan.id}", box=box.ROUNDED, border_style="dim")
    table.add_column("#", no_wrap=True)
    table.add_column("Step", style="cyan")
    table.add_column("Status", no_wrap=True)
    for i, step in enumerate(plan.steps, 1):
        table.add_row(str(i), step.title, step.status.value)
    console.print(table)
    return EXIT_OK


def cmd_route(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    router = build_router(settings)
    task = TaskRequirements(
        estimated_input_tokens=args.input,
        estimated_output_tokens=args.output,
        needs_tools=args.tools,
        needs_vision=args.vision,
        priority=RoutingPriority(args.priority or settings.routing.priority),
    )
    try:
        choice = router.select_model(task)
    except NoSuitableModelError as e:
        console.print(f"[red]✗ {e}[/]")
        return EXIT_ERROR

    console.print(
        Panel(
            f"[bold cyan]{choice.model_id}[/]\n"
            f"Reason: {choice.reason}\n"
            f"Context window: {choice.context_window:,}  ·  "
            f"Estimated cost: ${choice.estimated_cost:.6f}\n"
            f"[dim]Candidates: {', '.join(choice.candidates)}[/]",
            title=f"[cyan]Route ({task.priority.value})[/]",
            border_style="cyan",
            padding=(0, 2),
        )
    )
    return EXIT_OK


def cmd_models(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    router = build_router(settings)
    pulled: set[str] = set()
    if not args.offline:
        ollama = OllamaCompletionProvider(base_url=settings.ollama_base_url_v1, timeout_seconds=10.0)
        with console.status("[dim]Asking Ollama for pulled models...[/]"):
            pulled = set(asyncio.run(ollama.list_models()))

    table = Table(box=box.ROUNDED, border_style="dim")
    table.add_column("Model", style="cyan bold", no_wrap=True)
    table.add_column("Context", justify="right")
    table.add_column("Max out", justify="right")
    table.add_column("Tools", no_wrap=True)
    table.add_column("Vision", no_wrap=True)
    table.add_column("Where", no_wrap=True)
    table.add_column("$/1k in", justify="right")
    for p in router.list_models():
        where = "local" if p.is_local else "cloud"
        if p.is_local and p.id.split("/", 1)[-1] in pulled:
            where = "[green]local ✓[/]"
        cost = f"{p.cost_per_input_token * 1000:.3f}" if p.cost_per_input_token else "-"
        table.add_row(
            p.id,
            f"{p.context_window:,}",
            f"{p.max_output_tokens:,}",
            "✓" if p.supports_tools else "✗",
            "✓" if p.supports_vision else "✗",
            where,
            cost,
        )
    console.print(table)
    return EXIT_OK


_DISPATCH = {
    "chat": cmd_chat,
    "plan": cmd_plan,
    "route": cmd_route,
    "models": cmd_models,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pincer",
        description="Pincer — local-first agent runtime.",
    )
    parser.add_argument("--config", default=None, help="Path to config.yaml (default: $PINCER_CONFIG or config/config.yaml)")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Override logging.level",
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    sub.add_parser("chat", help="Interactive chat with the agent")

    p = sub.add_parser("plan", help="Show the plan the agent would make for a prompt")
    p.add_argument("prompt", help="Task prompt")
    p.add_argument("--force", action="store_true", help="Build the plan even if planning is not needed")

    p = sub.add_parser("route", help="Show which model the router would pick")
    p.add_argument("--input", type=int, required=True, help="Estimated input tokens")
    p.add_argument("--output", type=int, default=1000, help="Estimated output tokens")
    p.add_argument("--tools", action="store_true", help="Task needs tool calling")
    p.add_argument("--vision", action="store_true", help="Task needs image input")
    p.add_argument("--priority", choices=[r.value for r in RoutingPriority], help="Routing priority")

    p = sub.add_parser("models", help="List known models")
    p.add_argument("--offline", action="store_true", help="Do not query Ollama for pulled models")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    console = Console()
    try:
        settings = load_settings(args.config)
    except (ValueError, OSError) as e:
        console.print(f"[red]Failed to load configuration: {e}[/]")
        return EXIT_ERROR
    if args.log_level:
        settings.logging.level = args.log_level
    setup_logging_from_settings(settings)

    try:
        return _DISPATCH[args.command](args, settings, console)
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
