"""Memoizing resolver for the configured provider client.

By default the cache holds one process-wide entry per setting profile
(``basic`` and ``realtime``), keyed ``provider:model``. Every session resolves
against that same entry, so the most recently read configuration wins for
everyone until the key changes again. Passing ``isolate_by_session=True`` keys
entries by session id as well, which trades one client per session for
isolation between sessions with different trial settings.

There is no locking: two resolutions racing through a configuration change may
both rebuild the client and the last write wins. Callers must not rely on
client identity across a configuration change.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..providers.base import ProviderClient
from ..providers.registry import build_client
from .settings_provider import KEY_PREFIXES, ProviderSettings, SettingsProvider, SettingType, get_settings_provider

logger = logging.getLogger("report_ai.resolver")

ClientFactory = Callable[[str, str], ProviderClient]


@dataclass(frozen=True)
class ResolvedClientHandle:
    provider_id: str
    model_key: str
    instance: ProviderClient

    @property
    def cache_key(self) -> str:
        return f"{self.provider_id}:{self.model_key}"


def _default_factory(provider_id: str, model: str) -> ProviderClient:
    return build_client(provider_id, model)


class ProviderResolver:
    def __init__(
        self,
        settings: Optional[SettingsProvider] = None,
        factory: Optional[ClientFactory] = None,
        isolate_by_session: bool = False,
    ) -> None:
        self._settings = settings or get_settings_provider()
        self._factory = factory or _default_factory
        self.isolate_by_session = isolate_by_session
        self._handles: Dict[str, ResolvedClientHandle] = {}

    def _slot(self, session_id: Optional[str], setting_type: str = "realtime") -> str:
        if self.isolate_by_session:
            return f"{setting_type}:{session_id or '__global__'}"
        return f"{setting_type}:__global__"

    def read_settings(self, session_id: Optional[str] = None, setting_type: SettingType = "realtime") -> ProviderSettings:
        return self._settings.read(session_id, setting_type)

    def resolve(self, session_id: Optional[str] = None, setting_type: SettingType = "realtime") -> ProviderClient:
        live = self._settings.read(session_id, setting_type)
        slot = self._slot(session_id, setting_type)
        cached = self._handles.get(slot)
        key = f"{live.provider_id}:{live.model_id}"
        if cached is not None and cached.cache_key == key:
            return cached.instance

        instance = self._factory(live.provider_id, live.model_id)
        self._handles[slot] = ResolvedClientHandle(
            provider_id=live.provider_id,
            model_key=live.model_id,
            instance=instance,
        )
        logger.info(
            "Resolved AI provider=%s model=%s source=%s replaced=%s",
            live.provider_id,
            live.model_id,
            live.source,
            cached.cache_key if cached else None,
        )
        return instance

    def cached_handle(
        self, session_id: Optional[str] = None, setting_type: SettingType = "realtime"
    ) -> Optional[ResolvedClientHandle]:
        return self._handles.get(self._slot(session_id, setting_type))

    def invalidate(self, session_id: Optional[str] = None) -> None:
        if session_id is None and not self.isolate_by_session:
            self._handles.clear()
            return
        for setting_type in KEY_PREFIXES:
            self._handles.pop(self._slot(session_id, setting_type), None)


_resolver: Optional[ProviderResolver] = None


def get_provider_resolver() -> ProviderResolver:
    global _resolver
    if _resolver is None:
        isolate = (os.getenv("REPORT_AI_ISOLATE_PROVIDER_CACHE") or "").strip().lower() in ("1", "true", "yes")
        _resolver = ProviderResolver(isolate_by_session=isolate)
    return _resolver
