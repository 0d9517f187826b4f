"""LLM client — provider-agnostic text generation for the planners."""

from __future__ import annotations

import logging
import os
from typing import Optional

from inference_stack.core.errors import ProviderError
from inference_stack.core.providers import (
    detect_provider,
    get_provider_class,
    split_model_ref,
)

logger = logging.getLogger(__name__)

_PROMPTS_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "prompts")


def load_prompt(name: str) -> str:
    path = os.path.join(_PROMPTS_DIR, name)
    with open(path) as f:
        return f.read()


def render_prompt(name: str, **fields: str) -> str:
    """Load a prompt template and fill its ``{UPPER_CASE}`` placeholders."""
    text = load_prompt(name)
    for key, value in fields.items():
        text = text.replace("{" + key.upper() + "}", value)
    return text


def _status_code(exc: Exception) -> Optional[int]:
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


class LLMClient:
    """Single-call text generation against the configured provider."""

    def __init__(self, model: str, timeout: float = 30):
        self.provider_name = detect_provider(model)
        _, self.model = split_model_ref(model)
        self.timeout = timeout
        provider_class = get_provider_class(self.provider_name)
        self.provider = provider_class(self.model)

    def generate(self, prompt: str) -> str:
        """Return the provider's reply text.

        SDK failures are re-raised as ProviderError with the HTTP status
        (when known) spelled out so the failure classifier can read it.
        """
        logger.debug(
            "Planner request to %s/%s (%d chars, timeout=%ss)",
            self.provider_name, self.model, len(prompt), self.timeout,
        )
        try:
            return self.provider.generate(prompt, self.timeout)
        except ProviderError:
            raise
        except Exception as e:
            status = _status_code(e)
            kind = type(e).__name__
            if status is not None:
                message = f"{self.provider_name} request failed with status {status}: {e}"
            elif "Timeout" in kind:
                message = f"{self.provider_name} request timed out: {e}"
            elif "Connect" in kind:
                message = f"{self.provider_name} request failed, network is unreachable: {e}"
            else:
                message = f"{self.provider_name} request failed: {e}"
            raise ProviderError(message, status_code=status) from e


class UnavailableClient:
    """Stand-in used when no planner model or API key is configured."""

    provider_name = ""
    model = ""

    def __init__(self, reason: str):
        self.reason = reason

    def generate(self, prompt: str) -> str:
        raise ProviderError(self.reason)


def build_planner_client(model: str, timeout: float):
    """Return an LLMClient for ``model``, or an UnavailableClient explaining why not."""
    if not model.strip():
        return UnavailableClient("planner provider not configured")
    try:
        provider_class = get_provider_class(detect_provider(model))
    except ImportError as e:
        return UnavailableClient(str(e))
    has_key, key_name = provider_class.check_api_key()
    if not has_key:
        return UnavailableClient(f"planner provider not configured: {key_name} is not set")
    return LLMClient(model, timeout=timeout)
