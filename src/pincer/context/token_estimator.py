"""
context/token_estimator.py — Heuristic Token Counting

Approximates token cost without loading a tokenizer. Every budget in the
runtime (compaction, planning thresholds, model routing) goes through here,
so the estimate only needs to be consistent, not exact.

    tokens = ceil(chars × (1 − whitespace_ratio × 0.3) / chars_per_token × factor)

factor is 1.2 when backticks are present (code), 1.1 for other markdown
markers, 1.0 otherwise.
"""

from __future__ import annotations

import math
import re
from typing import Iterable

from pincer.brain.types import Message

_WHITESPACE = re.compile(r"\s")
_MARKDOWN = re.compile(r"#+|\[|\]|\(|\)|\*+")

# Observed characters-per-token for the models we route to.
_MODEL_CHARS_PER_TOKEN: dict[str, float] = {
    "ollama/qwen3:latest": 3.8,
    "ollama/llama3.1:8b": 4.0,
    "ollama/qwen2.5-coder:7b": 3.5,
    "deepseek/deepseek-chat": 4.0,
    "openai/gpt-4": 4.0,
}

DEFAULT_CHARS_PER_TOKEN = 4.0


class TokenEstimator:
    def __init__(self, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        self.chars_per_token = chars_per_token

    @classmethod
    def for_model(cls, model_id: str | None) -> "TokenEstimator":
        return cls(_MODEL_CHARS_PER_TOKEN.get(model_id or "", DEFAULT_CHARS_PER_TOKEN))

    def estimate(self, text: str) -> int:
        if not text:
            return 0

        char_count = len(text)
        whitespace_ratio = len(_WHITESPACE.findall(text)) / char_count
        adjusted = char_count * (1 - whitespace_ratio * 0.3)

        if "`" in text:
            factor = 1.2
        elif _MARKDOWN.search(text):
            factor = 1.1
        else:
            factor = 1.0

        return math.ceil(adjusted / self.chars_per_token * factor)

    def estimate_message(self, message: Message) -> int:
        """Content tokens only; an explicit message.tokens wins."""
        if message.tokens is not None:
            return message.tokens
        return self.estimate(message.content)

    def estimate_message_with_role(self, message: Message) -> int:
        return self.estimate_message(message) + self.estimate(f"{message.role.value}: ")

    def estimate_messages(self, messages: Iterable[Message]) -> int:
        return sum(self.estimate_message_with_role(m) for m in messages)

    def __repr__(self) -> str:
        return f"<TokenEstimator chars_per_token={self.chars_per_token}>"
