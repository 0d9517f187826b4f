"""Provider detection and registry for the planner LLMs."""

from __future__ import annotations

from typing import Type

from inference_stack.core.providers.base import BaseLLMProvider

PROVIDERS = ("anthropic", "openai", "google")


def split_model_ref(ref: str) -> tuple[str, str]:
    """Split an optional ``provider:model`` reference.

    Returns (provider, model); provider is "" when it has to be detected.
    """
    ref = ref.strip()
    prefix, sep, rest = ref.partition(":")
    if sep and prefix.lower() in PROVIDERS and rest.strip():
        return prefix.lower(), rest.strip()
    return "", ref


def detect_provider(model: str) -> str:
    """Detect the provider name from a model string.

    Returns "anthropic", "openai", or "google".
    """
    explicit, model = split_model_ref(model)
    if explicit:
        return explicit

    model_lower = model.lower()

    if any(model_lower.startswith(p) for p in ("gpt-", "o1-", "o3-", "o4-")):
        return "openai"

    if model_lower.startswith("gemini-"):
        return "google"

    # claude-* and anything unknown
    return "anthropic"


def get_provider_class(name: str) -> Type[BaseLLMProvider]:
    """Return the provider class for the given provider name.

    Optional SDKs (openai, google-genai) are imported only when selected.

    Raises:
        ImportError: If the required SDK is not installed.
        ValueError: If the provider name is unknown.
    """
    if name == "anthropic":
        from inference_stack.core.providers.anthropic import AnthropicProvider
        return AnthropicProvider

    if name == "openai":
        try:
            from inference_stack.core.providers.openai import OpenAIProvider
        except ImportError:
            raise ImportError(
                "OpenAI SDK not installed. Install it with: "
                "pip install inference-stack[openai]"
            )
        return OpenAIProvider

    if name == "google":
        try:
            from inference_stack.core.providers.google import GoogleProvider
        except ImportError:
            raise ImportError(
                "Google GenAI SDK not installed. Install it with: "
                "pip install inference-stack[google]"
            )
        return GoogleProvider

    raise ValueError(f"Unknown provider: {name!r}")
