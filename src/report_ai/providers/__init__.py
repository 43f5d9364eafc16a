from .base import (
    AIResponse,
    ProviderCapability,
    ProviderClient,
    ProviderConfigError,
    ProviderError,
    TokenUsage,
    clean_think_tags,
    strip_reasoning,
)
from .registry import AI_PROVIDERS, PROVIDER_CONFIG, ProviderSelection, build_client, is_valid_provider

__all__ = [
    "AIResponse",
    "ProviderCapability",
    "ProviderClient",
    "ProviderConfigError",
    "ProviderError",
    "TokenUsage",
    "clean_think_tags",
    "strip_reasoning",
    "AI_PROVIDERS",
    "PROVIDER_CONFIG",
    "ProviderSelection",
    "build_client",
    "is_valid_provider",
]
