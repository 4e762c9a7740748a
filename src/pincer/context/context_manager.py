"""
context/context_manager.py — History Compression

Keeps system prompt + history inside the model's usable window:

    budget = max_context_tokens − reserved_tokens − tokens(system_prompt)

Histories at or under budget are returned unchanged. Over budget, one of
three strategies runs:

  truncate   first message (if pinned) + newest messages that fit,
             capped at max_messages_to_keep
  selective  pinned messages, then highest-scoring messages that fit
             (role, recency, length, tool involvement), original order kept
  hybrid     pinned first/last; the oldest middle messages are folded one
             at a time into a single synthetic summary message until the
             rest fits. The fold count k is the smallest that fits with the
             summary included. If even a full fold does not fit, the summary
             is dropped and only pinned messages remain.

In every strategy a kept tool-result message whose originating assistant
call was removed is removed as well, so providers never see orphans.
"""

from __future__ import annotations

from typing import Optional, Union

from pincer.brain.types import Message, Role
from pincer.context.token_estimator import TokenEstimator
from pincer.context.types import CompressionResult, CompressionStrategy, ContextConfig, ContextUsage
from pincer.observability.logger import get_logger

log = get_logger(__name__)

# Chars of each folded message quoted in the summary.
_SNIPPET_CHARS = 80

# Output slot: an original message index, or a synthetic message.
_Slot = Union[int, Message]


class ContextManager:
    """
    Compresses conversation history to fit a token budget.

    Usage:
        manager = ContextManager(ContextConfig(max_context_tokens=8192))
        result = manager.compress_history(history, system_prompt, model_id)
        history = result.messages
    """

    def __init__(
        self,
        config: Optional[ContextConfig] = None,
        estimator: Optional[TokenEstimator] = None,
    ):
        self._config = config or ContextConfig()
        self._estimator = estimator or TokenEstimator()

    # ── Config ────────────────────────────────────────────────────────────────

    @property
    def config(self) -> ContextConfig:
        return self._config

    def update_config(self, **changes) -> ContextConfig:
        self._config = ContextConfig(**{**self._config.model_dump(), **changes})
        return self._config

    # ── Public API ────────────────────────────────────────────────────────────

    def estimator_for(self, model_id: Optional[str]) -> TokenEstimator:
        return TokenEstimator.for_model(model_id) if model_id else self._estimator

    def available_tokens(self, system_prompt: str = "", model_id: Optional[str] = None) -> int:
        estimator = self.estimator_for(model_id)
        return self._config.history_budget - estimator.estimate(system_prompt)

    def needs_compression(
        self,
        messages: list[Message],
        system_prompt: str = "",
        model_id: Optional[str] = None,
    ) -> bool:
        estimator = self.estimator_for(model_id)
        return estimator.estimate_messages(messages) > self.available_tokens(system_prompt, model_id)

    def calculate_context_usage(
        self,
        messages: list[Message],
        system_prompt: str = "",
        model_id: Optional[str] = None,
    ) -> ContextUsage:
        estimator = self.estimator_for(model_id)
        used = estimator.estimate(system_prompt) + estimator.estimate_messages(messages)
        available = self._config.history_budget
        return ContextUsage(
            used=used,
            available=available,
            percentage=round(used / available * 100, 1) if available > 0 else 100.0,
        )

    def compress_history(
        self,
        messages: list[Message],
        system_prompt: str = "",
        model_id: Optional[str] = None,
        target_tokens: Optional[int] = None,
    ) -> CompressionResult:
        """
        Return a history that fits the budget. Never mutates `messages`.

        target_tokens, when given, tightens the budget further (used after a
        backend reports a context overflow our estimate did not predict).
        """
        estimator = self.estimator_for(model_id)
        budget = self.available_tokens(system_prompt, model_id)
        if target_tokens is not None:
            budget = min(budget, target_tokens)

        costs = [estimator.estimate_message_with_role(m) for m in messages]
        original_tokens = sum(costs)

        if not messages or original_tokens <= budget:
            return CompressionResult(
                messages=list(messages),
                original_token_count=original_tokens,
                compressed_token_count=original_tokens,
            )

        strategy = self._config.compression_strategy
        if strategy == CompressionStrategy.TRUNCATE:
            slots = self._truncate(messages, costs, budget)
        elif strategy == CompressionStrategy.SELECTIVE:
            slots = self._selective(messages, costs, budget)
        else:
            slots = self._hybrid(messages, costs, budget, estimator)

        head, tail = self._pinned(len(messages))
        slots = self._drop_orphan_tool_results(messages, slots, set(head + tail))
        compressed = [messages[s] if isinstance(s, int) else s for s in slots]
        retained = sum(1 for s in slots if isinstance(s, int))
        compressed_tokens = estimator.estimate_messages(compressed)

        result = CompressionResult(
            messages=compressed,
            original_token_count=original_tokens,
            compressed_token_count=compressed_tokens,
            compression_ratio=compressed_tokens / original_tokens if original_tokens else 1.0,
            removed_messages=len(messages) - retained,
            retained_fraction=retained / len(messages),
            strategy_used=strategy.value,
        )
        log.info(
            "context.compressed",
            strategy=strategy.value,
            budget=budget,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            original_messages=len(messages),
            compressed_messages=len(compressed),
        )
        return result

    # ── Strategies ────────────────────────────────────────────────────────────

    def _pinned(self, n: int) -> tuple[list[int], list[int]]:
        if not self._config.keep_first_last or n == 0:
            return [], []
        return [0], ([n - 1] if n > 1 else [])

    def _truncate(self, messages: list[Message], costs: list[int], budget: int) -> list[_Slot]:
        head, tail = self._pinned(len(messages))
        kept = set(head + tail)
        used = sum(costs[i] for i in kept)

        for i in range(len(messages) - 1, -1, -1):
            if i in kept:
                continue
            if used + costs[i] > budget:
                break
            kept.add(i)
            used += costs[i]

        order = sorted(kept)
        limit = max(self._config.max_messages_to_keep, len(head) + len(tail))
        while len(order) > limit:
            victim = next(i for i in order if i not in head and i not in tail)
            order.remove(victim)
        return list(order)

    def _selective(self, messages: list[Message], costs: list[int], budget: int) -> list[_Slot]:
        head, tail = self._pinned(len(messages))
        kept = set(head + tail)
        used = sum(costs[i] for i in kept)

        total = len(messages)
        ranked = sorted(
            (i for i in range(total) if i not in kept),
            key=lambda i: (-self._score(messages[i], i, total), -i),
        )
        for i in ranked:
            if used + costs[i] <= budget:
                kept.add(i)
                used += costs[i]
        return sorted(kept)

    def _hybrid(
        self,
        messages: list[Message],
        costs: list[int],
        budget: int,
        estimator: TokenEstimator,
    ) -> list[_Slot]:
        n = len(messages)
        head, tail = self._pinned(n)
        middle = [i for i in range(n) if i not in head and i not in tail]
        pinned_cost = sum(costs[i] for i in head + tail)
        summary_cap = min(self._config.summary_max_tokens, max(budget // 4, 0))

        # suffix[j] = cost of middle[j:]
        suffix = [0] * (len(middle) + 1)
        for j in range(len(middle) - 1, -1, -1):
            suffix[j] = suffix[j + 1] + costs[middle[j]]

        for k in range(1, len(middle) + 1):
            # Never start the kept span on a tool result.
            while k < len(middle) and messages[middle[k]].role == Role.TOOL:
                k += 1
            summary = self._summarize(messages, middle[:k], estimator, summary_cap)
            summary_cost = estimator.estimate_message_with_role(summary) if summary else 0
            if pinned_cost + suffix[k] + summary_cost <= budget:
                slots: list[_Slot] = list(head)
                if summary is not None:
                    slots.append(summary)
                slots.extend(middle[k:])
                slots.extend(tail)
                return slots

        log.warning(
            "context.pinned_only",
            budget=budget,
            pinned_tokens=pinned_cost,
            folded=len(middle),
        )
        return list(head + tail)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _summarize(
        self,
        messages: list[Message],
        span: list[int],
        estimator: TokenEstimator,
        max_tokens: int,
    ) -> Optional[Message]:
        """Fold `span` into one system message of at most max_tokens, newest lines first."""
        if not span or max_tokens <= 0:
            return None

        header = f"[Earlier conversation condensed: {len(span)} messages]"
        lines: list[str] = []
        for i in reversed(span):
            msg = messages[i]
            snippet = " ".join(msg.content.split())[:_SNIPPET_CHARS]
            if not snippet:
                continue
            line = f"- {msg.role.value}: {snippet}"
            candidate = Message.system("\n".join([header, line, *lines]))
            if estimator.estimate_message_with_role(candidate) > max_tokens:
                break
            lines.insert(0, line)

        summary = Message.system(
            "\n".join([header, *lines]),
            synthetic=True,
            kind="compaction_summary",
            folded=len(span),
        )
        if estimator.estimate_message_with_role(summary) > max_tokens:
            return None
        return summary

    @staticmethod
    def _drop_orphan_tool_results(
        messages: list[Message],
        slots: list[_Slot],
        protected: set[int],
    ) -> list[_Slot]:
        kept_call_ids = {
            tc.id
            for s in slots
            if isinstance(s, int)
            for tc in messages[s].tool_calls
        }
        result: list[_Slot] = []
        for s in slots:
            if isinstance(s, int):
                msg = messages[s]
                if (
                    s not in protected
                    and msg.role == Role.TOOL
                    and msg.tool_call_id
                    and msg.tool_call_id not in kept_call_ids
                ):
                    continue
            result.append(s)
        return result

    def _score(self, message: Message, index: int, total: int) -> float:
        score = (index + 1) / total * 40

        length = len(message.content)
        if length > 500:
            score += 20
        if length < 50:
            score += 10

        if message.role == Role.USER:
            score += 15
        elif message.role == Role.SYSTEM:
            score += 30

        if message.tool_calls or message.role == Role.TOOL:
            score += 50
        return score
