"""Base class for LLM providers."""

from __future__ import annotations

from abc import ABC, abstractmethod


class BaseLLMProvider(ABC):
    """Abstract base for text-generation provider implementations."""

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    def generate(self, prompt: str, timeout: float) -> str:
        """Send a single prompt and return the reply text.

        Args:
            prompt: The fully rendered planner prompt.
            timeout: Request timeout in seconds, enforced by the SDK.

        Returns:
            The concatenated text of the reply.
        """

    @staticmethod
    @abstractmethod
    def check_api_key() -> tuple[bool, str]:
        """Check whether the required API key is set.

        Returns:
            (is_set, env_var_name), e.g. (True, "ANTHROPIC_API_KEY").
        """
