"""
context/model_router.py — Backend Model Selection

Picks a model for a task from a table of known profiles.

Filtering (all must hold):
  - input + output tokens fit in context_window × (1 − safety_margin)
  - output tokens ≤ the model's max_output_tokens
  - tool / vision support when the task needs it

Ranking by priority:
  local    local models first
  cost     lowest estimated cost (local models are free)
  speed    local and small-window models first
  quality  largest window, cloud models favoured

Each score also gets a context-efficiency term that favours windows sized
close to the request. Ties break on model id so the choice is deterministic.
"""

from __future__ import annotations

from typing import Iterable, Optional

from pincer.context.types import ModelProfile, ModelSelection, RoutingPriority, TaskRequirements
from pincer.exceptions import NoSuitableModelError
from pincer.observability.logger import get_logger

log = get_logger(__name__)


DEFAULT_MODELS: tuple[ModelProfile, ...] = (
    ModelProfile(id="ollama/llama3.1:8b", context_window=8192, max_output_tokens=4096),
    ModelProfile(id="ollama/qwen3:latest", context_window=8192, max_output_tokens=4096),
    ModelProfile(id="ollama/qwen2.5-coder:7b", context_window=32768, max_output_tokens=8192),
    ModelProfile(id="ollama/deepseek-r1:8b", context_window=32768, max_output_tokens=8192),
    ModelProfile(
        id="deepseek/deepseek-chat",
        context_window=128_000,
        max_output_tokens=8192,
        is_local=False,
        cost_per_input_token=0.00014,
        cost_per_output_token=0.00028,
    ),
    ModelProfile(
        id="openai-codex/gpt-5.2-codex",
        context_window=128_000,
        max_output_tokens=16384,
        is_local=False,
        cost_per_input_token=0.0005,
        cost_per_output_token=0.0015,
    ),
)


class ModelRouter:
    """
    Usage:
        router = ModelRouter()
        choice = router.select_model(TaskRequirements(
            estimated_input_tokens=1200, needs_tools=True, priority="local",
        ))
        choice.model_id   # "ollama/llama3.1:8b"
    """

    def __init__(
        self,
        models: Optional[Iterable[ModelProfile]] = None,
        safety_margin: float = 0.2,
    ):
        if not 0.0 <= safety_margin < 1.0:
            raise ValueError("safety_margin must be in [0.0, 1.0)")
        self.safety_margin = safety_margin
        self._models: dict[str, ModelProfile] = {}
        for profile in (DEFAULT_MODELS if models is None else models):
            self._models[profile.id] = profile

    # ── Table management ──────────────────────────────────────────────────────

    def add_model(self, profile: ModelProfile) -> None:
        self._models[profile.id] = profile
        log.debug("router.model_added", model=profile.id, context_window=profile.context_window)

    def remove_model(self, model_id: str) -> bool:
        return self._models.pop(model_id, None) is not None

    def get_model(self, model_id: str) -> Optional[ModelProfile]:
        return self._models.get(model_id)

    def list_models(self) -> list[ModelProfile]:
        return list(self._models.values())

    # ── Selection ─────────────────────────────────────────────────────────────

    def select_model(
        self,
        task: TaskRequirements,
        available_models: Optional[Iterable[str]] = None,
    ) -> ModelSelection:
        """
        Return the best model for `task`.

        Raises:
            NoSuitableModelError: no candidate satisfies the requirements.
        """
        ids = list(available_models) if available_models is not None else list(self._models)
        candidates = [self._models[i] for i in ids if i in self._models]
        fitting = [p for p in candidates if self._fits(p, task)]

        if not fitting:
            log.warning(
                "router.no_candidate",
                input_tokens=task.estimated_input_tokens,
                output_tokens=task.estimated_output_tokens,
                needs_tools=task.needs_tools,
                needs_vision=task.needs_vision,
            )
            raise NoSuitableModelError(
                f"No suitable model found for task. Requirements: "
                f"{task.estimated_input_tokens} input tokens, "
                f"{task.estimated_output_tokens} output tokens, "
                f"tools: {task.needs_tools}, vision: {task.needs_vision}"
            )

        ranked = sorted(fitting, key=lambda p: (-self._score(p, task), p.id))
        selected = ranked[0]
        selection = ModelSelection(
            model_id=selected.id,
            reason=self._reason(selected, ranked, task),
            estimated_cost=self.estimate_cost(selected, task),
            context_window=selected.context_window,
            candidates=[p.id for p in ranked],
        )
        log.info(
            "router.selected",
            model=selection.model_id,
            priority=task.priority.value,
            candidates=len(ranked),
            estimated_cost=selection.estimated_cost,
        )
        return selection

    def estimate_cost(self, profile: ModelProfile, task: TaskRequirements) -> float:
        if profile.is_local or not profile.cost_per_input_token:
            return 0.0
        output_rate = profile.cost_per_output_token or profile.cost_per_input_token * 2
        return (
            task.estimated_input_tokens * profile.cost_per_input_token
            + task.estimated_output_tokens * output_rate
        )

    # ── Private helpers ───────────────────────────────────────────────────────

    def _fits(self, profile: ModelProfile, task: TaskRequirements) -> bool:
        if task.needs_tools and not profile.supports_tools:
            return False
        if task.needs_vision and not profile.supports_vision:
            return False
        if task.estimated_output_tokens > profile.max_output_tokens:
            return False
        usable = profile.context_window * (1 - self.safety_margin)
        return task.estimated_input_tokens + task.estimated_output_tokens <= usable

    def _score(self, profile: ModelProfile, task: TaskRequirements) -> float:
        score = 0.0
        priority = task.priority

        if priority == RoutingPriority.LOCAL:
            if profile.is_local:
                score += 1000
        elif priority == RoutingPriority.COST:
            score += 1000 - self.estimate_cost(profile, task) * 1_000_000
            if profile.is_local:
                score += 500
        elif priority == RoutingPriority.SPEED:
            if profile.is_local:
                score += 800
            if profile.context_window <= 8192:
                score += 200
        elif priority == RoutingPriority.QUALITY:
            score += profile.context_window * 0.1
            if not profile.is_local:
                score += 300

        efficiency = 1 - abs(task.estimated_input_tokens - profile.context_window * 0.6) / profile.context_window
        return score + efficiency * 100

    def _reason(
        self,
        selected: ModelProfile,
        ranked: list[ModelProfile],
        task: TaskRequirements,
    ) -> str:
        reasons: list[str] = []
        if task.priority == RoutingPriority.LOCAL and selected.is_local:
            reasons.append("matches local priority")
        if task.priority == RoutingPriority.COST:
            cost = self.estimate_cost(selected, task)
            reasons.append("free (local model)" if cost == 0 else f"lowest cost (${cost:.6f})")
        if task.priority == RoutingPriority.QUALITY:
            reasons.append("highest capability score")
        if selected.is_local:
            reasons.append("local model for speed/privacy")
        if selected.context_window == max(p.context_window for p in ranked):
            reasons.append("largest context window")
        return ", ".join(reasons) or "best score"
