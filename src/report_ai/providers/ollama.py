from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import AIResponse, Message, ProviderClient, TokenUsage
from .registry import ProviderSelection

LOG = logging.getLogger("report_ai.llm")

_ROLE_MARKERS = {
    "system": "<|system|>",
    "user": "<|user|>",
    "assistant": "<|assistant|>",
}


def _build_session() -> requests.Session:
    session = requests.Session()
    # Retry policy belongs to the caller; the adapter only pools connections.
    retry = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class OllamaClient(ProviderClient):
    """Local Ollama daemon over its native ``/api/generate`` endpoint.

    The daemon is reached with a blocking ``requests`` session, so each call
    runs in a worker thread. Cancelling the awaiting task stops waiting for the
    result but cannot interrupt the HTTP exchange already in progress.
    """

    provider_id = "ollama"
    supports_streaming = False

    def __init__(self, selection: ProviderSelection) -> None:
        super().__init__(selection.model)
        self.selection = selection
        self.base_url = (selection.base_url or "http://127.0.0.1:11434").rstrip("/")
        self._session = _build_session()

    @staticmethod
    def _messages_to_prompt(messages: List[Message]) -> str:
        parts: List[str] = []
        for msg in messages:
            marker = _ROLE_MARKERS.get((msg.get("role") or "user").strip().lower())
            content = msg.get("content") or ""
            parts.append(f"{marker}\n{content}\n" if marker else f"{content}\n")
        parts.append("<|assistant|>\n")
        return "".join(parts)

    def describe_request(self, messages: List[Message]) -> Dict[str, Any]:
        return {
            "endpoint": f"{self.base_url}/api/generate",
            "model": self.model,
            "messages": len(messages),
            "num_predict": self.selection.max_tokens,
            "temperature": self.selection.temperature,
        }

    def _post_generate(self, prompt: str) -> Dict[str, Any]:
        resp = self._session.post(
            f"{self.base_url}/api/generate",
            json={
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": self.selection.temperature,
                    "num_predict": self.selection.max_tokens,
                },
            },
            timeout=(2, self.selection.timeout),
        )
        resp.raise_for_status()
        return resp.json()

    async def _complete(self, messages: List[Message]) -> AIResponse:
        prompt = self._messages_to_prompt(messages)
        LOG.debug("ollama_generate", extra={"model": self.model, "base_url": self.base_url})
        data = await asyncio.to_thread(self._post_generate, prompt)
        prompt_tokens = int(data.get("prompt_eval_count") or 0)
        completion_tokens = int(data.get("eval_count") or 0)
        return AIResponse(
            content=self.clean_response(data.get("response") or ""),
            usage=TokenUsage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens),
        )
