"""
context/ — Context window management

    TokenEstimator   heuristic token counts for budgets
    ContextManager   compress history to fit max_context − reserved
    ModelRouter      choose a backend model for a task
"""

from pincer.context.context_manager import ContextManager
from pincer.context.model_router import DEFAULT_MODELS, ModelRouter
from pincer.context.token_estimator import TokenEstimator
from pincer.context.types import (
    CompressionResult,
    CompressionStrategy,
    ContextConfig,
    ContextUsage,
    ModelProfile,
    ModelSelection,
    RoutingPriority,
    TaskRequirements,
)

__all__ = [
    "ContextManager",
    "ModelRouter",
    "DEFAULT_MODELS",
    "TokenEstimator",
    "CompressionResult",
    "CompressionStrategy",
    "ContextConfig",
    "ContextUsage",
    "ModelProfile",
    "ModelSelection",
    "RoutingPriority",
    "TaskRequirements",
]
