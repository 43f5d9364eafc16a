"""Live provider configuration: global system settings plus trial overrides.

Two setting profiles exist. ``basic`` (``AI_`` keys) drives general purpose
calls such as chat and summarization; ``realtime`` (``REALTIME_`` keys) drives
field analysis and falls back to the basic provider when unset. A session
override ("trial" settings) wins over both without being persisted.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Literal, Mapping, Optional, Tuple

from ..infrastructure.settings_store import (
    SessionOverride,
    SessionOverrideStore,
    SystemSettingsStore,
    get_session_override_store,
    get_system_settings_store,
)
from ..providers.registry import AI_PROVIDERS, default_model, is_valid_provider

logger = logging.getLogger("report_ai.settings")

SettingType = Literal["basic", "realtime"]

KEY_PREFIXES: Dict[str, str] = {"basic": "AI_", "realtime": "REALTIME_"}
DEFAULT_PROVIDER = "gemini"
STREAMING_KEY = "AI_STREAMING_ENABLED"

SETTING_DESCRIPTIONS: Dict[str, str] = {
    "basic": "Base AI service provider",
    "realtime": "AI provider for realtime field analysis",
}


@dataclass(frozen=True)
class ProviderSettings:
    provider_id: str
    model_id: str
    streaming_enabled: bool
    source: str = "default"


def model_key(setting_type: str, provider: str) -> str:
    return f"{KEY_PREFIXES[setting_type]}{provider.upper()}_MODEL"


def _truthy(value: Optional[str], default: bool = True) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def validate_provider_settings(provider: Optional[str], models: Optional[Mapping[str, Optional[str]]] = None) -> Tuple[bool, Optional[str]]:
    """Return ``(is_valid, error)`` for a provider choice and its model ids."""

    if not is_valid_provider(provider):
        return False, f"Invalid AI provider. Valid values: {', '.join(AI_PROVIDERS)}"
    for name, model in (models or {}).items():
        if model is not None and not str(model).strip():
            return False, f"Model id for '{name}' is empty; enter a valid model id."
    return True, None


class SettingsProvider:
    def __init__(
        self,
        system_store: Optional[SystemSettingsStore] = None,
        session_store: Optional[SessionOverrideStore] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._system = system_store or get_system_settings_store()
        self._sessions = session_store or get_session_override_store()
        self._env = os.environ if env is None else env

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _system_provider(self, setting_type: str) -> Optional[str]:
        value = self._system.get_value(f"{KEY_PREFIXES[setting_type]}PROVIDER")
        if not value and setting_type == "realtime":
            value = self._system.get_value("AI_PROVIDER")
        if value and not is_valid_provider(value):
            logger.warning("Ignoring unknown provider setting %r for %s", value, setting_type)
            return None
        return value

    def streaming_enabled(self) -> bool:
        return _truthy(self._system.get_value(STREAMING_KEY))

    def read(self, session_id: Optional[str] = None, setting_type: SettingType = "realtime") -> ProviderSettings:
        override = self._sessions.get(session_id)
        if override and is_valid_provider(override.provider):
            provider = override.provider
            model = override.model_for(provider) or self._system.get_value(model_key(setting_type, provider))
            return ProviderSettings(
                provider_id=provider,
                model_id=model or default_model(provider, self._env),
                streaming_enabled=self.streaming_enabled(),
                source="session",
            )

        provider = self._system_provider(setting_type)
        source = "system"
        if not provider:
            provider, source = DEFAULT_PROVIDER, "default"
        model = self._system.get_value(model_key(setting_type, provider))
        if not model and setting_type == "realtime":
            model = self._system.get_value(model_key("basic", provider))
        return ProviderSettings(
            provider_id=provider,
            model_id=model or default_model(provider, self._env),
            streaming_enabled=self.streaming_enabled(),
            source=source,
        )

    def session_override(self, session_id: Optional[str]) -> Optional[SessionOverride]:
        return self._sessions.get(session_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def update_system_settings(
        self,
        setting_type: SettingType,
        provider: str,
        models: Optional[Mapping[str, Optional[str]]] = None,
        streaming_enabled: Optional[bool] = None,
    ) -> ProviderSettings:
        ok, error = validate_provider_settings(provider, models)
        if not ok:
            raise ValueError(error)
        prefix = KEY_PREFIXES[setting_type]
        self._system.put(f"{prefix}PROVIDER", provider, SETTING_DESCRIPTIONS[setting_type])
        model = (models or {}).get(provider)
        if model:
            self._system.put(model_key(setting_type, provider), model.strip(), f"{provider} model ({setting_type})")
        if streaming_enabled is not None:
            self._system.put(STREAMING_KEY, "true" if streaming_enabled else "false", "Streaming analysis switch")
        return self.read(setting_type=setting_type)

    def update_session_settings(
        self,
        session_id: str,
        provider: str,
        models: Optional[Mapping[str, Optional[str]]] = None,
    ) -> ProviderSettings:
        ok, error = validate_provider_settings(provider, models)
        if not ok:
            raise ValueError(error)
        cleaned = {name: str(m).strip() for name, m in (models or {}).items() if m}
        self._sessions.put(session_id, SessionOverride(provider=provider, models=cleaned))
        return self.read(session_id)

    def clear_session_settings(self, session_id: str) -> bool:
        return self._sessions.clear(session_id)


_settings_provider: Optional[SettingsProvider] = None


def get_settings_provider() -> SettingsProvider:
    global _settings_provider
    if _settings_provider is None:
        _settings_provider = SettingsProvider()
    return _settings_provider
