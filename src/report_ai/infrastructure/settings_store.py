from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Mapping, Optional


@dataclass
class SystemSetting:
    key: str
    value: str
    description: Optional[str] = None
    updated_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat().replace("+00:00", "Z"))


# Keys copied from the environment when the store is created
_SEEDED_PREFIXES = ("AI_", "REALTIME_")


class SystemSettingsStore:
    """Thread-safe in-memory key/value store for global AI settings.

    Seeded from ``AI_*`` / ``REALTIME_*`` environment variables; values written
    later (admin screens, tests) take precedence over the seed.
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None) -> None:
        self._data: Dict[str, SystemSetting] = {}
        self._lock = RLock()
        source = os.environ if env is None else env
        for key, value in source.items():
            if key.startswith(_SEEDED_PREFIXES) and value.strip():
                self._data[key] = SystemSetting(key=key, value=value.strip(), description="environment")

    def get(self, key: str) -> Optional[SystemSetting]:
        with self._lock:
            return self._data.get(key)

    def get_value(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            setting = self._data.get(key)
            return setting.value if setting else default

    def put(self, key: str, value: str, description: Optional[str] = None) -> SystemSetting:
        with self._lock:
            setting = SystemSetting(key=key, value=value, description=description)
            self._data[key] = setting
            return setting

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def list(self) -> List[SystemSetting]:
        with self._lock:
            return sorted(self._data.values(), key=lambda s: s.key)


@dataclass(frozen=True)
class SessionOverride:
    """Trial provider choice scoped to one session; never persisted."""

    provider: str
    models: Dict[str, str] = field(default_factory=dict)

    def model_for(self, provider: str) -> Optional[str]:
        return self.models.get(provider)


class SessionOverrideStore:
    def __init__(self) -> None:
        self._data: Dict[str, SessionOverride] = {}
        self._lock = RLock()

    def get(self, session_id: Optional[str]) -> Optional[SessionOverride]:
        if not session_id:
            return None
        with self._lock:
            return self._data.get(session_id)

    def put(self, session_id: str, override: SessionOverride) -> SessionOverride:
        with self._lock:
            self._data[session_id] = override
            return override

    def clear(self, session_id: str) -> bool:
        with self._lock:
            return self._data.pop(session_id, None) is not None


_system_store: Optional[SystemSettingsStore] = None
_session_store = SessionOverrideStore()


def get_system_settings_store() -> SystemSettingsStore:
    global _system_store
    if _system_store is None:
        _system_store = SystemSettingsStore()
    return _system_store


def get_session_override_store() -> SessionOverrideStore:
    return _session_store
