from __future__ import annotations

"""Provider client contract shared by every text-generation backend.

A client answers ``generate_response`` with an :class:`AIResponse`. Clients
that declare ``supports_streaming`` also yield fragments from
``generate_stream_response``; the others inherit a default that performs one
non-streaming call and yields its cleaned content as a single fragment.

Clients never retry. Any transport or backend failure is re-raised as
:class:`ProviderError` carrying the provider id and the operation name.
"""

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..observability import ai_logger
from ..observability.metrics import observe_provider_call

Message = Dict[str, str]

_THINK_RE = re.compile(r"<think>[\s\S]*?</think>")
_MARKDOWN_FENCE_RE = re.compile(r"```markdown\s*\n([\s\S]*?)\n```")
_PLAIN_FENCE_RE = re.compile(r"```\s*\n([\s\S]*?)\n```")


class ProviderError(RuntimeError):
    """Transport or backend failure raised by a provider client."""

    def __init__(self, provider_id: str, operation: str, message: str) -> None:
        super().__init__(f"{provider_id} {operation} failed: {message}")
        self.provider_id = provider_id
        self.operation = operation
        self.message = message


class ProviderConfigError(RuntimeError):
    """Raised when a provider cannot be constructed from configuration."""


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class AIResponse:
    content: str
    usage: Optional[TokenUsage] = None
    request_id: Optional[str] = None
    provider: Optional[str] = None
    duration_ms: Optional[int] = None


@dataclass(frozen=True)
class ProviderCapability:
    """Immutable view of what a selected backend can do."""

    id: str
    supports_streaming: bool
    clean_response: Callable[[str], str]


def strip_reasoning(text: str) -> str:
    """Remove ``<think>...</think>`` reasoning traces."""
    return _THINK_RE.sub("", text or "").strip()


def clean_think_tags(text: str) -> str:
    """Strip reasoning traces and unwrap a response fenced as a code block."""
    cleaned = strip_reasoning(text)
    cleaned = _MARKDOWN_FENCE_RE.sub(r"\1", cleaned)
    cleaned = _PLAIN_FENCE_RE.sub(r"\1", cleaned)
    return cleaned.strip()


def normalize_messages(messages: List[Message]) -> List[Message]:
    out: List[Message] = []
    for msg in messages:
        role = (msg.get("role") or "user").strip().lower()
        if role not in ("system", "user", "assistant"):
            role = "user"
        out.append({"role": role, "content": msg.get("content") or ""})
    return out


class ProviderClient(ABC):
    provider_id: str = "unknown"
    supports_streaming: bool = False

    def __init__(self, model: str) -> None:
        self.model = model

    @property
    def capability(self) -> ProviderCapability:
        return ProviderCapability(
            id=self.provider_id,
            supports_streaming=self.supports_streaming,
            clean_response=self.clean_response,
        )

    @abstractmethod
    async def _complete(self, messages: List[Message]) -> AIResponse:
        """Issue one non-streaming request. Raise on any failure."""
        raise NotImplementedError

    async def _stream(self, messages: List[Message]) -> AsyncIterator[str]:
        response = await self._complete(messages)
        yield self.clean_response(response.content)

    def describe_request(self, messages: List[Message]) -> Dict[str, Any]:
        """Request summary for the request log (never includes credentials)."""
        return {"model": self.model, "messages": len(messages)}

    def clean_response(self, text: str) -> str:
        return clean_think_tags(text)

    async def generate_response(
        self,
        messages: List[Message],
        caller_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AIResponse:
        operation = "generate_response"
        request_id = ai_logger.generate_request_id()
        msgs = normalize_messages(messages)
        ai_logger.log_request(self.provider_id, operation, request_id, self.describe_request(msgs), caller_id, metadata)
        start = time.perf_counter()
        try:
            response = await self._complete(msgs)
            if not response.content:
                raise ProviderError(self.provider_id, operation, "empty response content")
        except ProviderError as exc:
            elapsed = time.perf_counter() - start
            observe_provider_call(self.provider_id, operation, "error", elapsed)
            ai_logger.log_error(self.provider_id, operation, request_id, exc, caller_id, metadata)
            raise
        except Exception as exc:
            elapsed = time.perf_counter() - start
            observe_provider_call(self.provider_id, operation, "error", elapsed)
            ai_logger.log_error(self.provider_id, operation, request_id, exc, caller_id, metadata)
            raise ProviderError(self.provider_id, operation, str(exc)) from exc
        elapsed = time.perf_counter() - start
        observe_provider_call(self.provider_id, operation, "ok", elapsed)
        response.request_id = request_id
        response.provider = self.provider_id
        response.duration_ms = int(elapsed * 1000)
        ai_logger.log_response(
            self.provider_id,
            operation,
            request_id,
            {
                "model": self.model,
                "content_length": len(response.content),
                "usage": response.usage.__dict__ if response.usage else None,
                "duration_ms": response.duration_ms,
            },
            caller_id,
            metadata,
        )
        return response

    async def generate_stream_response(
        self,
        messages: List[Message],
        caller_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[str]:
        operation = "generate_stream_response"
        request_id = ai_logger.generate_request_id()
        msgs = normalize_messages(messages)
        ai_logger.log_request(
            self.provider_id, operation, request_id, {**self.describe_request(msgs), "stream": True}, caller_id, metadata
        )
        start = time.perf_counter()
        fragments = 0
        try:
            async for fragment in self._stream(msgs):
                if fragment:
                    fragments += 1
                    yield fragment
        except ProviderError as exc:
            observe_provider_call(self.provider_id, operation, "error", time.perf_counter() - start)
            ai_logger.log_error(self.provider_id, operation, request_id, exc, caller_id, metadata)
            raise
        except Exception as exc:
            observe_provider_call(self.provider_id, operation, "error", time.perf_counter() - start)
            ai_logger.log_error(self.provider_id, operation, request_id, exc, caller_id, metadata)
            raise ProviderError(self.provider_id, operation, str(exc)) from exc
        elapsed = time.perf_counter() - start
        observe_provider_call(self.provider_id, operation, "ok", elapsed)
        ai_logger.log_debug(
            self.provider_id,
            operation,
            request_id,
            "llm_stream_completed",
            {"fragments": fragments, "duration_ms": int(elapsed * 1000), "model": self.model},
            caller_id,
        )
