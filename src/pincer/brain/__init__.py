"""
brain/ — Pincer completion backends

Public API:
    from pincer.brain import CompletionProvider, Message, Role, ToolCall

Component overview:
    CompletionProvider          Protocol the agent loop calls for each turn
    OpenAICompatibleProvider    Streaming client for OpenAI-style endpoints
    OllamaCompletionProvider    Same client pointed at a local Ollama
    create_provider             Pick a provider from a model id prefix
    ProviderPool                Dispatch each request by its model prefix
"""

from pincer.brain.ollama_provider import (
    DeepSeekCompletionProvider,
    OllamaCompletionProvider,
    ProviderPool,
    create_provider,
)
from pincer.brain.openai_provider import OpenAICompatibleProvider
from pincer.brain.provider import CompletionProvider, DeltaCallback
from pincer.brain.types import (
    CompletionDelta,
    CompletionOptions,
    CompletionResult,
    Message,
    Role,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)

__all__ = [
    "CompletionProvider",
    "DeltaCallback",
    "OpenAICompatibleProvider",
    "OllamaCompletionProvider",
    "DeepSeekCompletionProvider",
    "create_provider",
    "ProviderPool",
    "CompletionDelta",
    "CompletionOptions",
    "CompletionResult",
    "Message",
    "Role",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
]
