"""Static provider table and the provider-id -> constructor mapping.

The table does not import any SDK; it only describes where each backend reads
its credentials, endpoint and default model from. ``build_client`` looks the
constructor up and raises :class:`ProviderConfigError` for unknown ids or
missing credentials, so a misconfiguration surfaces before any request is
issued.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from .base import ProviderClient, ProviderConfigError


@dataclass(frozen=True)
class ProviderSelection:
    """Resolved connection details for one backend + model."""

    name: str
    model: str
    api_key: Optional[str]
    base_url: Optional[str]
    max_tokens: int
    temperature: float
    timeout: float
    supports_streaming: bool
    requires_api_key: bool = True


PROVIDER_CONFIG: Dict[str, Dict[str, object]] = {
    "openai": {
        "api_key_env": "OPENAI_API_KEY",
        "base_url_env": "OPENAI_BASE_URL",
        "model_env": "OPENAI_MODEL",
        "default_model": "gpt-4o-mini",
        "default_base_url": "https://api.openai.com/v1",
        "max_tokens_env": "OPENAI_MAX_TOKENS",
        "default_max_tokens": 1000,
        "temperature_env": "OPENAI_TEMPERATURE",
        "supports_streaming": True,
    },
    "groq": {
        "api_key_env": "GROQ_API_KEY",
        "api_keys_env": "GROQ_API_KEYS",
        "base_url_env": "GROQ_BASE_URL",
        "model_env": "GROQ_MODEL",
        "default_model": "llama-3.3-70b-versatile",
        "default_base_url": "https://api.groq.com/openai/v1",
        "max_tokens_env": "GROQ_MAX_TOKENS",
        "default_max_tokens": 1000,
        "temperature_env": "GROQ_TEMPERATURE",
        "supports_streaming": True,
    },
    "gemini": {
        "api_key_env": "GEMINI_API_KEY",
        "base_url_env": "GEMINI_BASE_URL",
        "model_env": "GEMINI_MODEL",
        "default_model": "gemini-2.5-flash",
        "default_base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
        "max_tokens_env": "GEMINI_MAX_TOKENS",
        "default_max_tokens": 1000,
        "temperature_env": "GEMINI_TEMPERATURE",
        "supports_streaming": True,
    },
    "openrouter": {
        "api_key_env": "OPENROUTER_API_KEY",
        "base_url_env": "OPENROUTER_BASE_URL",
        "model_env": "OPENROUTER_MODEL",
        "default_model": "anthropic/claude-3.5-sonnet",
        "default_base_url": "https://openrouter.ai/api/v1",
        "max_tokens_env": "OPENROUTER_MAX_TOKENS",
        "default_max_tokens": 4000,
        "temperature_env": "OPENROUTER_TEMPERATURE",
        "supports_streaming": False,
    },
    "claude": {
        "api_key_env": "CLAUDE_API_KEY",
        "base_url_env": "CLAUDE_BASE_URL",
        "model_env": "CLAUDE_MODEL",
        "default_model": "claude-sonnet-4-0",
        "default_base_url": "https://api.anthropic.com/v1/",
        "max_tokens_env": "CLAUDE_MAX_TOKENS",
        "default_max_tokens": 4000,
        "temperature_env": "CLAUDE_TEMPERATURE",
        "supports_streaming": True,
    },
    "ollama": {
        "api_key_env": None,
        "base_url_env": "OLLAMA_BASE_URL",
        "model_env": "OLLAMA_MODEL",
        "default_model": "llama3.2:latest",
        "default_base_url": "http://127.0.0.1:11434",
        "max_tokens_env": "OLLAMA_MAX_TOKENS",
        "default_max_tokens": 1000,
        "temperature_env": "OLLAMA_TEMPERATURE",
        "supports_streaming": False,
        "requires_api_key": False,
    },
}

AI_PROVIDERS: Tuple[str, ...] = tuple(PROVIDER_CONFIG)

# Model choices offered to administrators; any non-empty id is accepted.
KNOWN_MODELS: Dict[str, Tuple[str, ...]] = {
    "openai": ("gpt-4o-mini", "gpt-4o", "gpt-4.1-mini"),
    "groq": (
        "llama-3.3-70b-versatile",
        "deepseek-r1-distill-llama-70b",
        "meta-llama/llama-4-maverick-17b-128e-instruct",
        "meta-llama/llama-4-scout-17b-16e-instruct",
        "qwen/qwen3-32b",
        "moonshotai/kimi-k2-instruct",
    ),
    "gemini": ("gemini-2.5-flash", "gemini-2.5-pro"),
    "openrouter": (
        "anthropic/claude-3.5-sonnet",
        "anthropic/claude-sonnet-4",
        "google/gemini-2.0-flash-001",
        "google/gemini-2.5-flash",
        "google/gemini-2.5-pro",
    ),
    "claude": ("claude-sonnet-4-0", "claude-3-5-haiku-latest"),
    "ollama": ("llama3.2:latest",),
}

# Groq caps completion length per model
GROQ_MODEL_MAX_TOKENS: Dict[str, int] = {
    "meta-llama/llama-4-scout-17b-16e-instruct": 8192,
    "qwen/qwen3-32b": 32768,
}


def is_valid_provider(provider_id: Optional[str]) -> bool:
    return bool(provider_id) and provider_id in PROVIDER_CONFIG


def default_model(provider_id: str, env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env
    cfg = PROVIDER_CONFIG[provider_id]
    model_env = str(cfg.get("model_env") or "")
    return (env.get(model_env) or "").strip() or str(cfg["default_model"])


def _api_key(provider_id: str, env: Mapping[str, str]) -> Optional[str]:
    cfg = PROVIDER_CONFIG[provider_id]
    keys_env = cfg.get("api_keys_env")
    if keys_env:
        # first usable key of a comma separated pool
        for key in (env.get(str(keys_env)) or "").split(","):
            if key.strip():
                return key.strip()
    key_env = cfg.get("api_key_env")
    if not key_env:
        return None
    return (env.get(str(key_env)) or "").strip() or None


def _number(env: Mapping[str, str], name: Optional[object], default: float, cast: Callable[[str], float]) -> float:
    if not name:
        return default
    raw = env.get(str(name))
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


def resolve_selection(
    provider_id: str,
    model: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ProviderSelection:
    if not is_valid_provider(provider_id):
        raise ProviderConfigError(f"Unsupported AI provider: {provider_id}")
    env = os.environ if env is None else env
    cfg = PROVIDER_CONFIG[provider_id]
    chosen_model = (model or "").strip() or default_model(provider_id, env)
    base_url_env = str(cfg.get("base_url_env") or "")
    base_url = (env.get(base_url_env) or "").strip() or str(cfg.get("default_base_url") or "") or None
    max_tokens = int(_number(env, cfg.get("max_tokens_env"), float(cfg.get("default_max_tokens", 1000)), int))
    if provider_id == "groq":
        max_tokens = GROQ_MODEL_MAX_TOKENS.get(chosen_model, min(max_tokens, 8192))
    return ProviderSelection(
        name=provider_id,
        model=chosen_model,
        api_key=_api_key(provider_id, env),
        base_url=base_url,
        max_tokens=max_tokens,
        temperature=_number(env, cfg.get("temperature_env"), 0.7, float),
        timeout=_number(env, "REPORT_AI_PROVIDER_TIMEOUT", 90.0, float),
        supports_streaming=bool(cfg.get("supports_streaming", False)),
        requires_api_key=bool(cfg.get("requires_api_key", True)),
    )


def _factories() -> Dict[str, Callable[[ProviderSelection], ProviderClient]]:
    from .ollama import OllamaClient
    from .openai_compatible import ClaudeClient, GeminiClient, GroqClient, OpenAIClient, OpenRouterClient

    return {
        "openai": OpenAIClient,
        "groq": GroqClient,
        "gemini": GeminiClient,
        "openrouter": OpenRouterClient,
        "claude": ClaudeClient,
        "ollama": OllamaClient,
    }


def build_client(
    provider_id: str,
    model: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ProviderClient:
    selection = resolve_selection(provider_id, model, env)
    if selection.requires_api_key and not selection.api_key:
        raise ProviderConfigError(f"API key for provider '{provider_id}' is not configured")
    factory = _factories()[provider_id]
    return factory(selection)
