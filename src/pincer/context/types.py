"""
context/types.py — Context Window Data Models

Configuration and result types for history compression and model routing.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from pincer.brain.types import Message


class CompressionStrategy(str, Enum):
    TRUNCATE = "truncate"       # keep first + newest that fit
    SELECTIVE = "selective"     # keep highest-scoring messages
    HYBRID = "hybrid"           # fold oldest middle span into a summary


class RoutingPriority(str, Enum):
    LOCAL = "local"
    COST = "cost"
    QUALITY = "quality"
    SPEED = "speed"


# ─────────────────────────────────────────────────────────────────────────────
# Compression
# ─────────────────────────────────────────────────────────────────────────────


class ContextConfig(BaseModel):
    max_context_tokens: int = 8192
    reserved_tokens: int = 1000
    compression_strategy: CompressionStrategy = CompressionStrategy.HYBRID
    keep_first_last: bool = True
    max_messages_to_keep: int = 20
    summary_max_tokens: int = 256

    @model_validator(mode="after")
    def _reserved_below_max(self) -> "ContextConfig":
        if self.reserved_tokens >= self.max_context_tokens:
            raise ValueError("reserved_tokens must be smaller than max_context_tokens")
        return self

    @property
    def history_budget(self) -> int:
        return self.max_context_tokens - self.reserved_tokens


class CompressionResult(BaseModel):
    """
    Outcome of ContextManager.compress_history().

    compression_ratio is compressed/original tokens; retained_fraction is
    the share of original messages present in the output. Synthetic
    summary messages count toward tokens but not toward retained messages.
    """
    messages: list[Message]
    original_token_count: int
    compressed_token_count: int
    compression_ratio: float = 1.0
    removed_messages: int = 0
    retained_fraction: float = 1.0
    strategy_used: str = "none"

    @property
    def changed(self) -> bool:
        return self.strategy_used != "none"


class ContextUsage(BaseModel):
    used: int
    available: int
    percentage: float


# ─────────────────────────────────────────────────────────────────────────────
# Model routing
# ─────────────────────────────────────────────────────────────────────────────


class ModelProfile(BaseModel):
    id: str
    context_window: int
    max_output_tokens: int
    supports_tools: bool = True
    supports_vision: bool = False
    is_local: bool = True
    cost_per_input_token: Optional[float] = None
    cost_per_output_token: Optional[float] = None

    @field_validator("context_window", "max_output_tokens")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("token limits must be >= 1")
        return v


class TaskRequirements(BaseModel):
    estimated_input_tokens: int
    estimated_output_tokens: int = 1000
    needs_tools: bool = False
    needs_vision: bool = False
    priority: RoutingPriority = RoutingPriority.LOCAL


class ModelSelection(BaseModel):
    model_id: str
    reason: str
    estimated_cost: float = 0.0
    context_window: int
    candidates: list[str] = Field(default_factory=list)
