"""
tests/unit/test_context.py — Token Estimation, Compression and Routing

Covers:
  - TokenEstimator: base chars/4, whitespace discount, code/markdown factors,
    explicit message.tokens, role prefix cost, per-model factories
  - ContextManager: under-budget identity, empty history, first/last pinning
    for every strategy, the ten-message overflow case, orphaned tool results,
    target_tokens override, usage helpers
  - ModelRouter: priority ranking, deterministic tie-break, fit filtering,
    allow-list, NoSuitableModelError
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from pincer.brain.types import Message, ToolCall
from pincer.context.context_manager import ContextManager
from pincer.context.model_router import ModelRouter
from pincer.context.token_estimator import TokenEstimator
from pincer.context.types import (
    CompressionStrategy,
    ContextConfig,
    ModelProfile,
    RoutingPriority,
    TaskRequirements,
)
from pincer.exceptions import NoSuitableModelError


# ── Helpers ───────────────────────────────────────────────────────────────────

def _manager(strategy=CompressionStrategy.HYBRID, **overrides) -> ContextManager:
    cfg = {"max_context_tokens": 120, "reserved_tokens": 20, "compression_strategy": strategy}
    cfg.update(overrides)
    return ContextManager(ContextConfig(**cfg))


def _five_messages() -> list[Message]:
    return [
        Message.user("First message"),
        Message.user("x" * 200),
        Message.user("y" * 200),
        Message.user("z" * 200),
        Message.user("Last message"),
    ]


# ─────────────────────────────────────────────────────────────────────────────
# TokenEstimator
# ─────────────────────────────────────────────────────────────────────────────


class TestTokenEstimator:
    def test_empty_text_is_zero(self):
        assert TokenEstimator().estimate("") == 0

    def test_plain_text_is_chars_over_four(self):
        assert TokenEstimator().estimate("a" * 20) == 5

    def test_whitespace_lowers_the_estimate(self):
        # 11 chars, 1 whitespace: 11 × (1 − 1/11 × 0.3) / 4 = 2.675 → 3
        assert TokenEstimator().estimate("hello world") == 3

    def test_backticks_apply_code_factor(self):
        assert TokenEstimator().estimate("`" + "a" * 18 + "`") == 6

    def test_markdown_applies_smaller_factor(self):
        assert TokenEstimator().estimate("#" + "a" * 19) == 6

    def test_explicit_tokens_win(self):
        msg = Message.user("a" * 400)
        msg.tokens = 7
        assert TokenEstimator().estimate_message(msg) == 7

    def test_role_prefix_is_counted(self):
        est = TokenEstimator()
        msg = Message.user("a" * 20)
        assert est.estimate_message_with_role(msg) == 5 + est.estimate("user: ")

    def test_estimate_messages_sums_role_aware_costs(self):
        est = TokenEstimator()
        msgs = [Message.user("a" * 20), Message.assistant("b" * 40)]
        assert est.estimate_messages(msgs) == sum(est.estimate_message_with_role(m) for m in msgs)

    def test_model_factory_uses_table(self):
        assert TokenEstimator.for_model("ollama/qwen2.5-coder:7b").chars_per_token == 3.5
        assert TokenEstimator.for_model("ollama/qwen3:latest").chars_per_token == 3.8

    def test_unknown_model_uses_default(self):
        assert TokenEstimator.for_model("ollama/mystery").chars_per_token == 4.0
        assert TokenEstimator.for_model(None).chars_per_token == 4.0

    def test_non_positive_ratio_rejected(self):
        with pytest.raises(ValueError):
            TokenEstimator(chars_per_token=0)


# ─────────────────────────────────────────────────────────────────────────────
# ContextManager
# ─────────────────────────────────────────────────────────────────────────────


class TestContextConfig:
    def test_reserved_must_be_below_max(self):
        with pytest.raises(ValidationError):
            ContextConfig(max_context_tokens=100, reserved_tokens=100)

    def test_history_budget(self):
        assert ContextConfig(max_context_tokens=500, reserved_tokens=100).history_budget == 400


class TestCompressHistory:
    def test_under_budget_is_identity(self):
        manager = ContextManager()
        msgs = [Message.user("hi"), Message.assistant("hello")]
        result = manager.compress_history(msgs)
        assert result.messages == msgs
        assert result.strategy_used == "none"
        assert not result.changed
        assert result.compression_ratio == 1.0
        assert result.removed_messages == 0

    def test_input_list_is_not_mutated(self):
        msgs = _five_messages()
        snapshot = list(msgs)
        _manager().compress_history(msgs)
        assert msgs == snapshot

    def test_empty_history(self):
        result = ContextManager().compress_history([])
        assert result.messages == []
        assert result.original_token_count == 0
        assert result.strategy_used == "none"

    def test_ten_messages_fit_after_compression(self):
        manager = ContextManager(ContextConfig(max_context_tokens=500, reserved_tokens=100))
        msgs = [Message.user(f"message {i} " + "w" * 190) for i in range(10)]
        result = manager.compress_history(msgs)
        assert len(result.messages) < 10
        assert result.compressed_token_count <= 400
        assert result.compression_ratio < 1
        assert result.changed

    @pytest.mark.parametrize("strategy", list(CompressionStrategy))
    def test_first_and_last_are_pinned(self, strategy):
        result = _manager(strategy).compress_history(_five_messages())
        assert result.messages[0].content == "First message"
        assert result.messages[-1].content == "Last message"
        assert result.strategy_used == strategy.value

    @pytest.mark.parametrize("strategy", list(CompressionStrategy))
    def test_output_fits_budget(self, strategy):
        result = _manager(strategy).compress_history(_five_messages())
        assert result.compressed_token_count <= 100

    def test_hybrid_folds_oldest_into_summary(self):
        result = _manager().compress_history(_five_messages())
        summary = result.messages[1]
        assert summary.is_synthetic
        assert summary.metadata["kind"] == "compaction_summary"
        assert summary.content.startswith("[Earlier conversation condensed:")
        # the newest middle message survives verbatim
        assert result.messages[-2].content == "z" * 200

    def test_synthetic_summary_not_counted_as_retained(self):
        result = _manager().compress_history(_five_messages())
        originals = [m for m in result.messages if not m.is_synthetic]
        assert result.removed_messages == 5 - len(originals)
        assert result.retained_fraction == pytest.approx(len(originals) / 5)

    def test_truncate_keeps_newest_that_fit(self):
        result = _manager(CompressionStrategy.TRUNCATE).compress_history(_five_messages())
        contents = [m.content for m in result.messages]
        assert contents == ["First message", "z" * 200, "Last message"]
        assert result.removed_messages == 2

    def test_truncate_respects_message_cap(self):
        manager = _manager(
            CompressionStrategy.TRUNCATE,
            max_context_tokens=2000,
            reserved_tokens=100,
            max_messages_to_keep=3,
        )
        msgs = [Message.user("m" * 400) for _ in range(30)]
        result = manager.compress_history(msgs)
        assert len(result.messages) == 3

    def test_without_pinning_oldest_message_can_go(self):
        manager = _manager(CompressionStrategy.TRUNCATE, keep_first_last=False)
        result = manager.compress_history(_five_messages())
        assert result.messages[0].content != "First message"
        assert result.messages[-1].content == "Last message"

    def test_selective_prefers_tool_involvement(self):
        msgs = [
            Message.user("First message"),
            Message.assistant("p" * 200),
            Message.assistant("q" * 160, tool_calls=[ToolCall(id="c1", name="read_file")]),
            Message.tool("c1", "read_file", "r" * 40),
            Message.user("Last message"),
        ]
        result = _manager(CompressionStrategy.SELECTIVE).compress_history(msgs)
        contents = [m.content for m in result.messages]
        assert "q" * 160 in contents
        assert "p" * 200 not in contents

    def test_orphaned_tool_result_is_dropped(self):
        msgs = [
            Message.user("First message"),
            Message.assistant("y" * 400, tool_calls=[ToolCall(id="c1", name="read_file")]),
            Message.tool("c1", "read_file", "ok"),
            Message.user("z" * 40),
            Message.user("Last message"),
        ]
        result = _manager(CompressionStrategy.TRUNCATE).compress_history(msgs)
        assert all(m.tool_call_id != "c1" for m in result.messages)
        assert [m.content for m in result.messages] == ["First message", "z" * 40, "Last message"]
        assert result.removed_messages == 2

    def test_target_tokens_tightens_budget(self):
        manager = ContextManager()
        msgs = _five_messages()
        assert not manager.compress_history(msgs).changed
        result = manager.compress_history(msgs, target_tokens=100)
        assert result.changed
        assert result.compressed_token_count <= 100


class TestUsageHelpers:
    def test_needs_compression(self):
        manager = _manager()
        assert manager.needs_compression(_five_messages())
        assert not manager.needs_compression([Message.user("hi")])

    def test_system_prompt_reduces_available(self):
        manager = _manager()
        assert manager.available_tokens("a" * 40) == 100 - 10

    def test_calculate_context_usage(self):
        manager = _manager()
        usage = manager.calculate_context_usage([Message.user("a" * 20)])
        assert usage.available == 100
        assert usage.used == TokenEstimator().estimate_message_with_role(Message.user("a" * 20))
        assert usage.percentage == round(usage.used / 100 * 100, 1)

    def test_update_config(self):
        manager = _manager()
        manager.update_config(compression_strategy=CompressionStrategy.TRUNCATE)
        assert manager.config.compression_strategy == CompressionStrategy.TRUNCATE
        assert manager.config.max_context_tokens == 120


# ─────────────────────────────────────────────────────────────────────────────
# ModelRouter
# ─────────────────────────────────────────────────────────────────────────────


class TestModelRouter:
    def test_local_priority_picks_small_local_model(self):
        choice = ModelRouter().select_model(TaskRequirements(estimated_input_tokens=1200))
        # llama3.1 and qwen3 tie on score; the id breaks the tie
        assert choice.model_id == "ollama/llama3.1:8b"
        assert choice.estimated_cost == 0.0
        assert "matches local priority" in choice.reason

    def test_selection_is_deterministic(self):
        router = ModelRouter()
        task = TaskRequirements(estimated_input_tokens=1200, needs_tools=True)
        assert {router.select_model(task).model_id for _ in range(5)} == {"ollama/llama3.1:8b"}

    def test_cost_priority_prefers_free_models(self):
        choice = ModelRouter().select_model(
            TaskRequirements(estimated_input_tokens=1200, priority=RoutingPriority.COST)
        )
        assert choice.model_id.startswith("ollama/")
        assert "free (local model)" in choice.reason

    def test_quality_priority_prefers_large_cloud_window(self):
        choice = ModelRouter().select_model(
            TaskRequirements(estimated_input_tokens=1200, priority=RoutingPriority.QUALITY)
        )
        assert choice.model_id == "deepseek/deepseek-chat"
        assert choice.context_window == 128_000
        assert choice.estimated_cost == pytest.approx(1200 * 0.00014 + 1000 * 0.00028)

    def test_speed_priority(self):
        choice = ModelRouter().select_model(
            TaskRequirements(estimated_input_tokens=500, priority=RoutingPriority.SPEED)
        )
        assert choice.model_id == "ollama/llama3.1:8b"

    def test_safety_margin_excludes_tight_windows(self):
        choice = ModelRouter().select_model(TaskRequirements(estimated_input_tokens=6000))
        assert choice.context_window == 32768
        assert choice.model_id == "ollama/deepseek-r1:8b"

    def test_output_limit_filters(self):
        choice = ModelRouter().select_model(
            TaskRequirements(estimated_input_tokens=1000, estimated_output_tokens=10_000)
        )
        assert choice.model_id == "openai-codex/gpt-5.2-codex"

    def test_huge_input_raises(self):
        with pytest.raises(NoSuitableModelError, match="No suitable model"):
            ModelRouter().select_model(TaskRequirements(estimated_input_tokens=1_000_000))

    def test_vision_requirement_raises_when_unsupported(self):
        with pytest.raises(NoSuitableModelError):
            ModelRouter().select_model(TaskRequirements(estimated_input_tokens=100, needs_vision=True))

    def test_available_models_allow_list(self):
        choice = ModelRouter().select_model(
            TaskRequirements(estimated_input_tokens=100),
            available_models=["ollama/qwen2.5-coder:7b", "not/in-table"],
        )
        assert choice.model_id == "ollama/qwen2.5-coder:7b"
        assert choice.candidates == ["ollama/qwen2.5-coder:7b"]

    def test_add_and_remove_models(self):
        router = ModelRouter(models=[])
        vision = ModelProfile(id="ollama/llava:7b", context_window=4096, max_output_tokens=1024, supports_vision=True)
        router.add_model(vision)
        assert router.select_model(
            TaskRequirements(estimated_input_tokens=100, estimated_output_tokens=100, needs_vision=True)
        ).model_id == "ollama/llava:7b"
        assert router.remove_model("ollama/llava:7b")
        assert router.list_models() == []

    def test_invalid_safety_margin(self):
        with pytest.raises(ValueError):
            ModelRouter(safety_margin=1.0)
