"""
agent/task_planner.py — Task Planner

Decides whether a prompt deserves an explicit plan, extracts the plan's
steps from the prompt itself, and maintains the run's working summary.

No model calls: plans come from the bullet or numbered lines a user wrote,
falling back to a generic four-step outline. The loop uses the plan to
steer the model and the working summary to replace history when context
gets tight.
"""

from __future__ import annotations

import re
import time
import uuid
from typing import Optional

from pincer.agent.types import (
    PlanDecision,
    StepStatus,
    SummaryPatch,
    TaskPlan,
    TaskPlanStep,
    WorkingSummary,
)
from pincer.context.token_estimator import TokenEstimator
from pincer.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_MAX_STEPS = 6
DEFAULT_LENGTH_RATIO = 0.55
SUMMARY_LIST_LIMIT = 10

_COMPLEXITY_RE = re.compile(
    r"\b(multi|multiple|several|steps?|plan|break down|breakdown|roadmap|refactor|migrate|sweep)\b",
    re.IGNORECASE,
)
_STEP_LINE_RE = re.compile(r"^([-*]|\d+\.)\s+(.*)")

_FALLBACK_STEPS = (
    "Understand the request and scope",
    "Identify relevant files and constraints",
    "Make the required changes",
    "Validate results and summarize",
)


class TaskPlanner:
    def __init__(
        self,
        max_context_tokens: int = 8192,
        reserved_tokens: int = 1000,
        max_steps: int = DEFAULT_MAX_STEPS,
        length_ratio: float = DEFAULT_LENGTH_RATIO,
        enabled: bool = True,
        estimator: Optional[TokenEstimator] = None,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.max_context_tokens = max_context_tokens
        self.reserved_tokens = reserved_tokens
        self.max_steps = max_steps
        self.length_ratio = length_ratio
        self.enabled = enabled
        self._estimator = estimator or TokenEstimator()

    @property
    def budget_tokens(self) -> int:
        return max(0, self.max_context_tokens - self.reserved_tokens)

    # ── Decision ──────────────────────────────────────────────────────────────

    def should_plan(self, prompt: str, system_prompt: str = "") -> PlanDecision:
        prompt_tokens = self._estimator.estimate(prompt)
        system_tokens = self._estimator.estimate(system_prompt)
        total = prompt_tokens + system_tokens
        threshold = int(self.budget_tokens * self.length_ratio)

        if not self.enabled:
            reason = "disabled"
        elif total > threshold:
            reason = "prompt_length"
        elif _COMPLEXITY_RE.search(prompt):
            reason = "complexity_keywords"
        else:
            reason = "not_needed"

        return PlanDecision(
            should_plan=reason in ("prompt_length", "complexity_keywords"),
            reason=reason,
            prompt_tokens=prompt_tokens,
            system_tokens=system_tokens,
            total_tokens=total,
            threshold=threshold,
        )

    # ── Plans ─────────────────────────────────────────────────────────────────

    def create_plan(self, prompt: str) -> TaskPlan:
        titles = _extract_step_titles(prompt) or list(_FALLBACK_STEPS)
        steps = [
            TaskPlanStep(
                id=f"step_{i + 1}",
                title=title,
                status=StepStatus.IN_PROGRESS if i == 0 else StepStatus.PENDING,
            )
            for i, title in enumerate(titles[: self.max_steps])
        ]
        created_at = time.time()
        plan = TaskPlan(
            id=f"plan_{int(created_at * 1000)}_{uuid.uuid4().hex[:6]}",
            steps=steps,
            summary=" | ".join(s.title for s in steps),
            created_at=created_at,
        )
        log.debug("planner.plan_created", plan_id=plan.id, steps=len(steps))
        return plan

    def advance(self, plan: TaskPlan) -> tuple[TaskPlan, Optional[TaskPlanStep], Optional[TaskPlanStep]]:
        """
        Finish the in-progress step and start the next pending one.

        Returns (updated plan, finished step, newly started step). The plan is
        returned unchanged with (None, None) when nothing is in progress.
        """
        current = plan.current_step
        if current is None:
            return plan, None, None

        steps = [s.model_copy() for s in plan.steps]
        finished: Optional[TaskPlanStep] = None
        started: Optional[TaskPlanStep] = None
        for step in steps:
            if step.id == current.id:
                step.status = StepStatus.DONE
                finished = step
            elif finished is not None and step.status == StepStatus.PENDING:
                step.status = StepStatus.IN_PROGRESS
                started = step
                break
        return plan.model_copy(update={"steps": steps}), finished, started

    # ── Working summary ───────────────────────────────────────────────────────

    def create_working_summary(self, plan: Optional[TaskPlan] = None) -> WorkingSummary:
        next_step = plan.next_pending.title if plan and plan.next_pending else None
        return WorkingSummary(next_step=next_step, updated_at=time.time())

    def update_working_summary(self, summary: WorkingSummary, patch: SummaryPatch) -> WorkingSummary:
        return WorkingSummary(
            changes=_merge_unique(summary.changes, patch.changes)[-SUMMARY_LIST_LIMIT:],
            decisions=_merge_unique(summary.decisions, patch.decisions)[-SUMMARY_LIST_LIMIT:],
            open_questions=_merge_unique(summary.open_questions, patch.open_questions)[-SUMMARY_LIST_LIMIT:],
            next_step=patch.next_step if patch.next_step is not None else summary.next_step,
            updated_at=time.time(),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _extract_step_titles(prompt: str) -> list[str]:
    titles = []
    for line in prompt.splitlines():
        match = _STEP_LINE_RE.match(line.strip())
        if match and match.group(2).strip():
            titles.append(" ".join(match.group(2).split()))
    return titles


def _merge_unique(current: list[str], incoming: list[str]) -> list[str]:
    seen = {item.lower() for item in current}
    merged = list(current)
    for item in incoming:
        item = item.strip()
        if item and item.lower() not in seen:
            seen.add(item.lower())
            merged.append(item)
    return merged
