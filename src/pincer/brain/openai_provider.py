"""
brain/openai_provider.py — OpenAI-Compatible Streaming Provider

Implements CompletionProvider against any endpoint speaking the OpenAI chat
completions protocol (Ollama's /v1, DeepSeek, OpenAI). Streams content and
reasoning deltas, reassembles tool-call fragments by index and normalises
SDK errors into the LLMError hierarchy.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import httpx
import openai
from openai import AsyncOpenAI

from pincer.brain.provider import DeltaCallback
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
from pincer.exceptions import (
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from pincer.observability.logger import get_logger

log = get_logger(__name__)

_CONTEXT_MARKERS = ("context", "too long", "maximum length", "token")


class OpenAICompatibleProvider:
    """
    Streaming completion provider for OpenAI-compatible endpoints.

    Model ids may carry a routing prefix ("deepseek/deepseek-chat"); the
    prefix is stripped before the request is sent.
    """

    provider_name = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout_seconds: float = 120.0,
    ):
        self.base_url = base_url
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        )

    # ── Public API ────────────────────────────────────────────────────────────

    async def complete(
        self,
        history: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition],
        options: CompletionOptions,
        on_delta: Optional[DeltaCallback] = None,
    ) -> CompletionResult:
        model = self._model_name(options.model)
        payload = self._to_provider_messages(history, system_prompt)

        log.debug(
            "provider.complete.start",
            provider=self.provider_name,
            model=model,
            message_count=len(payload),
            has_tools=bool(tools),
        )

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": payload,
            "temperature": options.temperature,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = [t.to_llm_schema() for t in tools]
            kwargs["tool_choice"] = "auto"
        if options.max_tokens:
            kwargs["max_tokens"] = options.max_tokens
        if options.timeout_seconds:
            kwargs["timeout"] = options.timeout_seconds

        content: list[str] = []
        thinking: list[str] = []
        fragments: dict[int, dict[str, str]] = {}
        usage = TokenUsage()
        response_model = model

        try:
            stream = await self._client.chat.completions.create(**kwargs)
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = TokenUsage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
                if chunk.model:
                    response_model = chunk.model
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta

                reasoning = getattr(delta, "reasoning", None) or getattr(delta, "reasoning_content", None)
                if reasoning:
                    thinking.append(reasoning)
                    if on_delta:
                        on_delta(CompletionDelta(thinking=reasoning))

                if delta.content:
                    content.append(delta.content)
                    if on_delta:
                        on_delta(CompletionDelta(content=delta.content))

                for tc in delta.tool_calls or []:
                    slot = fragments.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            slot["name"] += tc.function.name
                        if tc.function.arguments:
                            slot["arguments"] += tc.function.arguments
        except openai.AuthenticationError as e:
            raise LLMConnectionError(str(e), provider=self.provider_name, status_code=401) from e
        except openai.RateLimitError as e:
            raise LLMRateLimitError(str(e), provider=self.provider_name) from e
        except openai.BadRequestError as e:
            text = str(e).lower()
            if any(marker in text for marker in _CONTEXT_MARKERS):
                raise LLMContextError(str(e), provider=self.provider_name, status_code=400) from e
            raise LLMInvalidRequestError(str(e), provider=self.provider_name, status_code=400) from e
        except openai.APIConnectionError as e:
            raise LLMConnectionError(
                f"Cannot reach {self.provider_name} at {self.base_url}: {e}",
                provider=self.provider_name,
            ) from e
        except openai.APIError as e:
            raise LLMError(
                str(e),
                provider=self.provider_name,
                status_code=getattr(e, "status_code", None),
            ) from e

        result = CompletionResult(
            content="".join(content),
            thinking="".join(thinking),
            tool_calls=_assemble_tool_calls(fragments),
            model=response_model,
            usage=usage,
        )
        log.debug(
            "provider.complete.done",
            provider=self.provider_name,
            model=result.model,
            content_chars=len(result.content),
            tool_calls=len(result.tool_calls),
            output_tokens=usage.output_tokens,
        )
        return result

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
            return True
        except openai.APIError as e:
            log.warning("provider.health_check.failed", provider=self.provider_name, error=str(e))
            return False

    # ── Private helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _model_name(model: str) -> str:
        return model.split("/", 1)[1] if "/" in model else model

    def _to_provider_messages(self, history: list[Message], system_prompt: str) -> list[dict]:
        """Translate internal Message list → OpenAI chat message format."""
        result: list[dict] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})

        for msg in history:
            if msg.role == Role.ASSISTANT:
                entry: dict[str, Any] = {"role": "assistant", "content": msg.content or ""}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ]
                result.append(entry)
            elif msg.role == Role.TOOL:
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content,
                })
            else:
                result.append({"role": msg.role.value, "content": msg.content})

        return result


def _assemble_tool_calls(fragments: dict[int, dict[str, str]]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for index in sorted(fragments):
        frag = fragments[index]
        if not frag["name"]:
            continue
        raw = frag["arguments"] or "{}"
        try:
            args = json.loads(raw)
        except json.JSONDecodeError:
            args = {"_raw": raw}
        if not isinstance(args, dict):
            args = {"value": args}
        calls.append(ToolCall(id=frag["id"] or f"call_{index}", name=frag["name"], arguments=args))
    return calls
