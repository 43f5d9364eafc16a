"""Resolver memoization: same instance while config is unchanged, rebuilt on change."""

from src.report_ai.infrastructure.settings_store import SessionOverrideStore, SystemSettingsStore
from src.report_ai.services.provider_resolver import ProviderResolver
from src.report_ai.services.settings_provider import SettingsProvider

from .utils import StubClient


def _resolver(isolate: bool = False):
    system = SystemSettingsStore(env={})
    settings = SettingsProvider(system, SessionOverrideStore(), env={})
    built = []

    def factory(provider_id, model):
        client = StubClient(model=model)
        client.provider_id = provider_id
        built.append((provider_id, model))
        return client

    return ProviderResolver(settings, factory=factory, isolate_by_session=isolate), settings, built


def test_resolve_is_memoized_while_config_unchanged():
    resolver, _, built = _resolver()
    first = resolver.resolve()
    second = resolver.resolve()
    assert first is second
    assert len(built) == 1
    assert resolver.cached_handle().cache_key == f"{first.provider_id}:{first.model}"


def test_config_change_rebuilds_client():
    resolver, settings, built = _resolver()
    first = resolver.resolve()
    settings.update_system_settings("realtime", "groq", {"groq": "qwen/qwen3-32b"})
    second = resolver.resolve()
    assert second is not first
    assert (second.provider_id, second.model) == ("groq", "qwen/qwen3-32b")
    assert resolver.resolve() is second
    assert len(built) == 2


def test_model_change_alone_rebuilds_client():
    resolver, settings, _ = _resolver()
    settings.update_system_settings("realtime", "openai", {"openai": "gpt-4o-mini"})
    first = resolver.resolve()
    settings.update_system_settings("realtime", "openai", {"openai": "gpt-4o"})
    assert resolver.resolve() is not first


def test_shared_cache_last_read_wins_across_sessions():
    resolver, settings, built = _resolver()
    settings.update_session_settings("alice", "groq", {"groq": "llama-3.3-70b-versatile"})
    alice = resolver.resolve("alice")
    bob = resolver.resolve("bob")
    assert alice.provider_id == "groq"
    assert bob.provider_id == "gemini"
    # a single entry is shared, so alice's next read rebuilds again
    assert resolver.resolve("alice") is not alice
    assert len(built) == 3


def test_isolated_cache_keeps_one_client_per_session():
    resolver, settings, built = _resolver(isolate=True)
    settings.update_session_settings("alice", "groq", {})
    alice = resolver.resolve("alice")
    bob = resolver.resolve("bob")
    assert resolver.resolve("alice") is alice
    assert resolver.resolve("bob") is bob
    assert len(built) == 2


def test_invalidate_forces_rebuild():
    resolver, _, built = _resolver()
    first = resolver.resolve()
    resolver.invalidate()
    assert resolver.cached_handle() is None
    assert resolver.resolve() is not first
    assert len(built) == 2


def test_profiles_keep_separate_entries():
    resolver, settings, built = _resolver()
    settings.update_system_settings("basic", "openai", {"openai": "gpt-4o"})
    settings.update_system_settings("realtime", "groq", {"groq": "qwen/qwen3-32b"})
    realtime = resolver.resolve(None, "realtime")
    basic = resolver.resolve(None, "basic")
    assert resolver.resolve(None, "realtime") is realtime
    assert resolver.resolve(None, "basic") is basic
    assert built == [("groq", "qwen/qwen3-32b"), ("openai", "gpt-4o")]
    assert resolver.cached_handle().cache_key == "groq:qwen/qwen3-32b"
    assert resolver.cached_handle(None, "basic").cache_key == "openai:gpt-4o"
