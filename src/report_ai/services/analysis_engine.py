"""Facade wiring settings, provider resolution, auth and field sessions together."""

from __future__ import annotations

import logging
import os
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..providers.base import AIResponse, Message, ProviderClient
from ..security.auth_gate import AuthGate, ensure_authenticated
from . import analysis_pipeline
from .field_session import (
    DEFAULT_DEBOUNCE_SECONDS,
    DEFAULT_MIN_CONTENT_CHARS,
    FieldSessionStore,
    FieldSnapshot,
    Listener,
)
from .provider_resolver import ProviderResolver, get_provider_resolver
from .settings_provider import SettingsProvider, get_settings_provider

logger = logging.getLogger("report_ai.engine")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


class AnalysisEngine:
    def __init__(
        self,
        settings: Optional[SettingsProvider] = None,
        resolver: Optional[ProviderResolver] = None,
        auth_gate: Optional[AuthGate] = None,
        session_id: Optional[str] = None,
        debounce_seconds: Optional[float] = None,
        min_content_chars: Optional[int] = None,
    ) -> None:
        self.settings = settings or get_settings_provider()
        if resolver is None:
            resolver = ProviderResolver(self.settings) if settings is not None else get_provider_resolver()
        self.resolver = resolver
        self.session_id = session_id
        self.auth_gate = auth_gate
        self.fields = FieldSessionStore(
            client_provider=self._client,
            auth_gate=auth_gate,
            streaming_enabled=self.settings.streaming_enabled,
            debounce_seconds=(
                debounce_seconds
                if debounce_seconds is not None
                else _env_float("REPORT_AI_DEBOUNCE_SECONDS", DEFAULT_DEBOUNCE_SECONDS)
            ),
            min_content_chars=(
                min_content_chars
                if min_content_chars is not None
                else int(_env_float("REPORT_AI_MIN_CONTENT_CHARS", DEFAULT_MIN_CONTENT_CHARS))
            ),
            session_id=session_id,
        )

    def _client(self) -> ProviderClient:
        return self.resolver.resolve(self.session_id, "realtime")

    def bind_auth_gate(self, gate: Optional[AuthGate]) -> None:
        self.auth_gate = gate
        self.fields.auth_gate = gate

    # Field analysis ---------------------------------------------------
    async def analyze(
        self,
        field_name: str,
        content: str,
        original_content: Optional[str] = None,
        previous_report_content: Optional[str] = None,
        force: bool = False,
    ) -> Optional[str]:
        return await self.fields.analyze(field_name, content, original_content, previous_report_content, force)

    def analyze_streaming(
        self,
        field_name: str,
        content: str,
        original_content: Optional[str] = None,
        previous_report_content: Optional[str] = None,
        force: bool = False,
    ) -> AsyncIterator[str]:
        return self.fields.analyze_streaming(field_name, content, original_content, previous_report_content, force)

    async def regenerate(self, field_name: str, streaming: bool = False) -> Optional[str]:
        return await self.fields.regenerate(field_name, streaming)

    async def send_follow_up(self, field_name: str, message: str) -> Optional[str]:
        return await self.fields.send_follow_up(field_name, message)

    def get_state(self, field_name: str) -> Optional[FieldSnapshot]:
        return self.fields.get_state(field_name)

    def list_states(self) -> List[FieldSnapshot]:
        return self.fields.list_states()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.fields.subscribe(listener)

    def clear(self, field_name: str) -> bool:
        return self.fields.clear(field_name)

    def clear_conversation(self, field_name: str) -> None:
        self.fields.clear_conversation(field_name)

    def teardown(self) -> None:
        self.fields.teardown()

    # General purpose calls --------------------------------------------
    async def chat(self, messages: List[Message]) -> AIResponse:
        await ensure_authenticated(self.auth_gate)
        client = self.resolver.resolve(self.session_id, "basic")
        return await analysis_pipeline.chat(client, messages, caller_id=self.session_id)

    async def summarize(self, text: str) -> AIResponse:
        await ensure_authenticated(self.auth_gate)
        client = self.resolver.resolve(self.session_id, "basic")
        return await analysis_pipeline.summarize(client, text, caller_id=self.session_id)

    def status(self) -> Dict[str, Any]:
        live = self.resolver.read_settings(self.session_id)
        handle = self.resolver.cached_handle(self.session_id)
        return {
            "provider": live.provider_id,
            "model": live.model_id,
            "streaming_enabled": live.streaming_enabled,
            "source": live.source,
            "cache_key": handle.cache_key if handle else None,
            "isolated": self.resolver.isolate_by_session,
        }


class EngineRegistry:
    """One engine per session id, so field state never leaks between users."""

    def __init__(self, factory: Optional[Callable[[Optional[str]], AnalysisEngine]] = None) -> None:
        self._factory = factory or (lambda sid: AnalysisEngine(session_id=sid))
        self._engines: Dict[str, AnalysisEngine] = {}

    def get(self, session_id: Optional[str]) -> AnalysisEngine:
        key = session_id or "__anonymous__"
        engine = self._engines.get(key)
        if engine is None:
            engine = self._factory(session_id)
            self._engines[key] = engine
        return engine

    def discard(self, session_id: Optional[str]) -> None:
        engine = self._engines.pop(session_id or "__anonymous__", None)
        if engine is not None:
            engine.teardown()


_registry: Optional[EngineRegistry] = None


def get_engine_registry() -> EngineRegistry:
    global _registry
    if _registry is None:
        _registry = EngineRegistry()
    return _registry
