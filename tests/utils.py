from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence

from src.report_ai.providers.base import AIResponse, Message, ProviderClient, TokenUsage
from src.report_ai.security.auth_gate import SessionExpiredError


class StubClient(ProviderClient):
    """In-memory provider: canned replies, optional per-call delays and failures."""

    provider_id = "stub"

    def __init__(
        self,
        replies: Optional[Sequence[str]] = None,
        *,
        streaming: bool = False,
        fragments: Optional[Sequence[str]] = None,
        delays: Optional[Sequence[float]] = None,
        fail: bool = False,
        model: str = "stub-model",
        fragment_delay: float = 0.0,
    ) -> None:
        super().__init__(model)
        self.supports_streaming = streaming
        self.replies: List[str] = list(replies or [])
        self.fragments: List[str] = list(fragments or [])
        self.delays: List[float] = list(delays or [])
        self.fail = fail
        self.fragment_delay = fragment_delay
        self.emitted = 0
        self.calls: List[List[Message]] = []

    async def _complete(self, messages: List[Message]) -> AIResponse:
        self.calls.append(messages)
        delay = self.delays.pop(0) if self.delays else 0.0
        if delay:
            await asyncio.sleep(delay)
        if self.fail:
            raise RuntimeError("backend unreachable")
        content = self.replies.pop(0) if self.replies else "ok"
        return AIResponse(content=content, usage=TokenUsage(3, 5, 8))

    async def _stream(self, messages: List[Message]):
        self.calls.append(messages)
        if self.fail:
            raise RuntimeError("stream broken")
        for fragment in self.fragments:
            await asyncio.sleep(self.fragment_delay)
            self.emitted += 1
            yield fragment


class ScriptedGate:
    """Auth gate that reports expiry until refreshed (when refresh is allowed)."""

    def __init__(self, expired: bool = False, can_refresh: bool = True) -> None:
        self.expired = expired
        self.can_refresh = can_refresh
        self.refresh_calls = 0

    async def ensure_authenticated(self) -> None:
        if self.expired:
            raise SessionExpiredError("session expired")

    async def refresh(self) -> bool:
        self.refresh_calls += 1
        if self.can_refresh:
            self.expired = False
        return self.can_refresh


def bearer(user_id: str = "user-1", roles: Optional[List[str]] = None, minutes: int = 60) -> Dict[str, str]:
    from src.report_ai.security.auth_gate import JwtConfig, User, create_access_token

    cfg = JwtConfig.from_env()
    cfg.expires_min = minutes
    token = create_access_token(User(id=user_id, name=user_id, roles=roles or ["member"], session_id=user_id), cfg)
    return {"Authorization": f"Bearer {token}"}
