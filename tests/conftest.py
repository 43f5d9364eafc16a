import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _reset_singletons(monkeypatch):
    """Isolate module-level stores, resolver cache and telemetry buffer per test."""
    from src.report_ai.infrastructure import settings_store
    from src.report_ai.observability import telemetry
    from src.report_ai.services import analysis_engine, provider_resolver, settings_provider

    for name in ("AI_PROVIDER", "REALTIME_PROVIDER", "AI_STREAMING_ENABLED"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(settings_store, "_system_store", None)
    monkeypatch.setattr(settings_store, "_session_store", settings_store.SessionOverrideStore())
    monkeypatch.setattr(settings_provider, "_settings_provider", None)
    monkeypatch.setattr(provider_resolver, "_resolver", None)
    monkeypatch.setattr(analysis_engine, "_registry", None)
    telemetry.clear_events()
    yield
