from __future__ import annotations

"""Remote backends reached through OpenAI-compatible chat endpoints.

OpenAI, Groq, Gemini, OpenRouter and Anthropic all expose a
``/chat/completions`` compatible surface, so a single ``ChatOpenAI`` based
client covers them; subclasses only differ in provider id, streaming support
and extra request headers.
"""

from typing import Any, AsyncIterator, Dict, List, Optional

from langchain_openai import ChatOpenAI

from .base import AIResponse, Message, ProviderClient, TokenUsage
from .registry import ProviderSelection


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text") or ""))
        return "".join(parts)
    return str(content or "")


def _usage_of(result: Any) -> Optional[TokenUsage]:
    usage = getattr(result, "usage_metadata", None)
    if usage:
        prompt = int(usage.get("input_tokens") or 0)
        completion = int(usage.get("output_tokens") or 0)
        return TokenUsage(prompt, completion, int(usage.get("total_tokens") or prompt + completion))
    meta = getattr(result, "response_metadata", None) or {}
    token_usage = meta.get("token_usage") if isinstance(meta, dict) else None
    if token_usage:
        prompt = int(token_usage.get("prompt_tokens") or 0)
        completion = int(token_usage.get("completion_tokens") or 0)
        return TokenUsage(prompt, completion, int(token_usage.get("total_tokens") or prompt + completion))
    return None


class ChatOpenAIClient(ProviderClient):
    provider_id = "openai"
    supports_streaming = True
    default_headers: Dict[str, str] = {}

    def __init__(self, selection: ProviderSelection) -> None:
        super().__init__(selection.model)
        self.selection = selection
        self._llm = ChatOpenAI(
            api_key=selection.api_key,
            base_url=selection.base_url,
            model=selection.model,
            temperature=selection.temperature,
            max_tokens=selection.max_tokens,
            timeout=selection.timeout,
            max_retries=0,
            default_headers=dict(self.default_headers) or None,
        )

    def describe_request(self, messages: List[Message]) -> Dict[str, Any]:
        return {
            "endpoint": f"{(self.selection.base_url or '').rstrip('/')}/chat/completions",
            "model": self.model,
            "messages": len(messages),
            "max_tokens": self.selection.max_tokens,
            "temperature": self.selection.temperature,
        }

    async def _complete(self, messages: List[Message]) -> AIResponse:
        result = await self._llm.ainvoke(messages)
        return AIResponse(content=_text_of(getattr(result, "content", result)), usage=_usage_of(result))

    async def _stream(self, messages: List[Message]) -> AsyncIterator[str]:
        async for chunk in self._llm.astream(messages):
            token = _text_of(getattr(chunk, "content", chunk))
            if token:
                yield token


class OpenAIClient(ChatOpenAIClient):
    provider_id = "openai"


class GroqClient(ChatOpenAIClient):
    provider_id = "groq"


class GeminiClient(ChatOpenAIClient):
    provider_id = "gemini"


class ClaudeClient(ChatOpenAIClient):
    provider_id = "claude"


class OpenRouterClient(ChatOpenAIClient):
    provider_id = "openrouter"
    supports_streaming = False
    default_headers = {"HTTP-Referer": "https://report-ai.local", "X-Title": "Report AI"}
