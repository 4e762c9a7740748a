"""
brain/ollama_provider.py — Ollama Local Completion Provider

Runs any model served by Ollama (llama3.1, qwen3, qwen2.5-coder,
deepseek-r1, ...). Uses the OpenAI-compatible endpoint Ollama exposes at
/v1/ — so it reuses OpenAICompatibleProvider pointed at localhost.

Tool calling depends on the model; models without it return content only,
which the agent loop still scans for inline <tool_call> blocks.
"""

from __future__ import annotations

from typing import Optional

from pincer.brain.openai_provider import OpenAICompatibleProvider
from pincer.brain.provider import CompletionProvider, DeltaCallback
from pincer.brain.types import CompletionOptions, CompletionResult, Message, ToolDefinition
from pincer.exceptions import LLMConnectionError
from pincer.observability.logger import get_logger

log = get_logger(__name__)

_DEFAULT_BASE_URL = "http://localhost:11434/v1"
_DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"


class OllamaCompletionProvider(OpenAICompatibleProvider):
    """No API key required. Requires `ollama serve` to be running."""

    provider_name = "ollama"

    def __init__(self, base_url: str = _DEFAULT_BASE_URL, timeout_seconds: float = 300.0):
        super().__init__(api_key="ollama", base_url=base_url, timeout_seconds=timeout_seconds)

    async def list_models(self) -> list[str]:
        """Return names of all models pulled into Ollama, or [] when unreachable."""
        try:
            models = await self._client.models.list()
        except Exception as e:
            log.warning("ollama.list_models.failed", error=str(e))
            return []
        return [m.id for m in models.data]


class DeepSeekCompletionProvider(OpenAICompatibleProvider):
    provider_name = "deepseek"

    def __init__(self, api_key: str, base_url: str = _DEEPSEEK_BASE_URL):
        super().__init__(api_key=api_key, base_url=base_url)


def create_provider(
    model: str,
    ollama_base_url: str = _DEFAULT_BASE_URL,
    deepseek_api_key: Optional[str] = None,
    openai_api_key: Optional[str] = None,
) -> CompletionProvider:
    """
    Build the provider that serves `model`, chosen by its routing prefix.

    Unprefixed ids are assumed to be Ollama models.
    """
    prefix = model.split("/", 1)[0] if "/" in model else "ollama"
    if prefix == "ollama":
        return OllamaCompletionProvider(base_url=ollama_base_url)
    if prefix == "deepseek":
        if not deepseek_api_key:
            raise LLMConnectionError("DEEPSEEK_API_KEY is not set", provider="deepseek")
        return DeepSeekCompletionProvider(api_key=deepseek_api_key)
    if prefix == "openai-codex":
        if not openai_api_key:
            raise LLMConnectionError("OPENAI_API_KEY is not set", provider="openai")
        return OpenAICompatibleProvider(api_key=openai_api_key)
    raise ValueError(f"Unsupported model provider prefix: '{prefix}'")


class ProviderPool:
    """
    CompletionProvider that dispatches on the model id of each request.

    Lets one AgentLoop serve "ollama/…", "deepseek/…" and "openai-codex/…"
    models, which is what model="auto" routing needs. Providers are built
    lazily and cached per routing prefix.
    """

    def __init__(
        self,
        ollama_base_url: str = _DEFAULT_BASE_URL,
        deepseek_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
    ):
        self.ollama_base_url = ollama_base_url
        self._deepseek_api_key = deepseek_api_key
        self._openai_api_key = openai_api_key
        self._providers: dict[str, CompletionProvider] = {}

    def provider_for(self, model: str) -> CompletionProvider:
        prefix = model.split("/", 1)[0] if "/" in model else "ollama"
        provider = self._providers.get(prefix)
        if provider is None:
            provider = create_provider(
                model,
                ollama_base_url=self.ollama_base_url,
                deepseek_api_key=self._deepseek_api_key,
                openai_api_key=self._openai_api_key,
            )
            self._providers[prefix] = provider
            log.debug("provider_pool.created", prefix=prefix)
        return provider

    async def complete(
        self,
        history: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition],
        options: CompletionOptions,
        on_delta: Optional[DeltaCallback] = None,
    ) -> CompletionResult:
        provider = self.provider_for(options.model)
        return await provider.complete(history, system_prompt, tools, options, on_delta)
