"""
tests/unit/test_cli.py — Terminal Interface

Covers:
  - build_parser(): subcommands, flags, log level normalisation
  - plan / route / models one-shot commands rendered to a recording console
  - main(): no command, config errors, dispatch
  - ChatCLI: a full queued run, provider failure, slash commands,
    interrupt handling, event rendering
"""

from __future__ import annotations

import argparse

import pytest
from rich.console import Console

from pincer.agent.events import (
    AgentEndEvent,
    MessageEndEvent,
    MessageUpdateEvent,
    ToolErrorEvent,
    WarningEvent,
)
from pincer.agent.types import RunStatus
from pincer.brain.types import CompletionDelta, CompletionResult
from pincer.config.settings import Settings
from pincer.context.types import ModelProfile
from pincer.interfaces.cli import (
    EXIT_ERROR,
    EXIT_OK,
    ChatCLI,
    build_parser,
    build_router,
    cmd_models,
    cmd_plan,
    cmd_route,
    main,
)


def _console() -> Console:
    return Console(record=True, width=200, force_terminal=False, color_system=None)


class ReplyProvider:
    def __init__(self, reply: str = "Hello there", error: Exception | None = None):
        self.reply = reply
        self.error = error

    async def complete(self, history, system_prompt, tools, options, on_delta=None):
        if self.error is not None:
            raise self.error
        if on_delta is not None:
            on_delta(CompletionDelta(content=self.reply))
        return CompletionResult(content=self.reply)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        tools={"workspace_root": str(tmp_path / "workspace"), "approval_mode": "auto"},
        agent={"session_id": "cli-test"},
    )


@pytest.fixture
def cli(settings):
    chat = ChatCLI(settings, console=_console())
    chat.loop.provider = ReplyProvider()
    return chat


# ─────────────────────────────────────────────────────────────────────────────
# Parser
# ─────────────────────────────────────────────────────────────────────────────


class TestParser:
    def test_route_flags(self):
        args = build_parser().parse_args(["route", "--input", "12000", "--tools", "--priority", "cost"])
        assert args.command == "route"
        assert args.input == 12000
        assert args.output == 1000
        assert args.tools is True
        assert args.vision is False
        assert args.priority == "cost"

    def test_log_level_upper_cased(self):
        args = build_parser().parse_args(["--log-level", "debug", "chat"])
        assert args.log_level == "DEBUG"

    def test_plan_force(self):
        args = build_parser().parse_args(["plan", "do things", "--force"])
        assert args.prompt == "do things"
        assert args.force is True

    def test_route_requires_input(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["route"])


# ─────────────────────────────────────────────────────────────────────────────
# One-shot commands
# ─────────────────────────────────────────────────────────────────────────────


class TestOneShotCommands:
    def test_plan_needed(self):
        console = _console()
        args = argparse.Namespace(prompt="Refactor:\n- split the module\n- add tests", force=False)
        assert cmd_plan(args, Settings(), console) == EXIT_OK
        out = console.export_text()
        assert "complexity_keywords" in out
        assert "split the module" in out
        assert "add tests" in out

    def test_plan_not_needed(self):
        console = _console()
        args = argparse.Namespace(prompt="what time is it", force=False)
        assert cmd_plan(args, Settings(), console) == EXIT_OK
        out = console.export_text()
        assert "no plan" in out
        assert "Step" not in out

    def test_plan_forced(self):
        console = _console()
        args = argparse.Namespace(prompt="what time is it", force=True)
        cmd_plan(args, Settings(), console)
        assert "Understand the request and scope" in console.export_text()

    def test_route(self):
        console = _console()
        args = argparse.Namespace(input=1000, output=500, tools=True, vision=False, priority="local")
        assert cmd_route(args, Settings(), console) == EXIT_OK
        out = console.export_text()
        assert "Route (local)" in out
        assert "ollama/" in out

    def test_route_nothing_fits(self):
        console = _console()
        args = argparse.Namespace(input=10_000_000, output=500, tools=False, vision=False, priority=None)
        assert cmd_route(args, Settings(), console) == EXIT_ERROR
        assert "No suitable model" in console.export_text()

    def test_models_offline(self):
        console = _console()
        settings = Settings(routing={"extra_models": [
            {"id": "ollama/phi3:mini", "context_window": 4096, "max_output_tokens": 1024},
        ]})
        assert cmd_models(argparse.Namespace(offline=True), settings, console) == EXIT_OK
        out = console.export_text()
        assert "ollama/llama3.1:8b" in out
        assert "deepseek/deepseek-chat" in out
        assert "ollama/phi3:mini" in out

    def test_build_router_adds_extra_models(self):
        settings = Settings()
        settings.routing.extra_models.append(
            ModelProfile(id="ollama/tiny", context_window=2048, max_output_tokens=512)
        )
        assert build_router(settings).get_model("ollama/tiny") is not None


class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == EXIT_OK
        assert "usage: pincer" in capsys.readouterr().out

    def test_bad_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = tmp_path / "config.yaml"
        cfg.write_text("agent:\n  temperature: 9\n")
        assert main(["--config", str(cfg), "models", "--offline"]) == EXIT_ERROR

    def test_dispatches_command(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        assert main(["--config", str(tmp_path / "none.yaml"), "route", "--input", "100"]) == EXIT_OK
        assert "Route (local)" in capsys.readouterr().out


# ─────────────────────────────────────────────────────────────────────────────
# Chat REPL
# ─────────────────────────────────────────────────────────────────────────────


class TestChatCLI:
    @pytest.mark.asyncio
    async def test_ask_runs_through_queue(self, cli):
        result = await cli.ask("hello")

        assert result.status == RunStatus.COMPLETED
        assert result.response == "Hello there"
        assert result.session_id == "cli-test"
        assert "Hello there" in cli.console.export_text()
        assert [r.run_id for r in cli.queue.list_runs("cli-test")] == [result.run_id]

    @pytest.mark.asyncio
    async def test_history_carries_between_runs(self, cli):
        await cli.ask("first")
        second = await cli.ask("second")
        assert [m.content for m in second.messages] == ["first", "Hello there", "second", "Hello there"]

    @pytest.mark.asyncio
    async def test_provider_failure_rendered(self, cli):
        cli.loop.provider = ReplyProvider(error=RuntimeError("backend down"))
        result = await cli.ask("hello")

        assert result.status == RunStatus.ERROR
        out = cli.console.export_text()
        assert "Error" in out
        assert "backend down" in out

    @pytest.mark.asyncio
    async def test_model_command(self, cli):
        await cli.dispatch("/model auto")
        assert cli.loop.config.model == "auto"
        await cli.dispatch("/model")
        assert "Current model: auto" in cli.console.export_text()

    @pytest.mark.asyncio
    async def test_clear_command(self, cli):
        await cli.ask("hello")
        await cli.dispatch("/clear")
        assert cli._history == []

    @pytest.mark.asyncio
    async def test_tools_and_status_commands(self, cli):
        await cli.dispatch("/tools")
        await cli.dispatch("/status")
        out = cli.console.export_text()
        assert "read_file" in out
        assert "write_file" in out
        assert "cli-test" in out

    @pytest.mark.asyncio
    async def test_memory_command(self, cli):
        await cli.dispatch("/memory")
        assert "Usage: /memory <query>" in cli.console.export_text()

    @pytest.mark.asyncio
    async def test_unknown_command(self, cli):
        await cli.dispatch("/bogus")
        assert "Unknown command: /bogus" in cli.console.export_text()

    def test_interrupt_without_run(self, cli):
        cli.interrupt()
        assert "Nothing is currently running" in cli.console.export_text()
        assert not cli.steering.is_interrupted


class TestRenderEvent:
    def test_streamed_text_then_newline(self, cli):
        cli.render_event(MessageUpdateEvent(delta="Hel"))
        cli.render_event(MessageUpdateEvent(delta="lo"))
        cli.render_event(MessageEndEvent(content="Hello"))
        assert "Hello\n" in cli.console.export_text()

    def test_tool_error_and_warning(self, cli):
        cli.render_event(ToolErrorEvent(tool_call_id="c1", tool_name="read_file", error="missing"))
        cli.render_event(WarningEvent(message="careful"))
        out = cli.console.export_text()
        assert "read_file" in out
        assert "⚠ careful" in out

    def test_only_unsuccessful_runs_reported(self, cli):
        cli.render_event(AgentEndEvent(status=RunStatus.COMPLETED, turns=1))
        assert cli.console.export_text() == ""
        cli.render_event(AgentEndEvent(status=RunStatus.ABORTED, turns=1))
        assert "run aborted" in cli.console.export_text()
