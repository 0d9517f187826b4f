"""Anthropic (Claude) LLM provider."""

from __future__ import annotations

import os

import anthropic

from inference_stack.core.providers.base import BaseLLMProvider


class AnthropicProvider(BaseLLMProvider):
    """Provider for Anthropic Claude models."""

    def __init__(self, model: str):
        super().__init__(model)
        self.client = anthropic.Anthropic()

    def generate(self, prompt: str, timeout: float) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=4096,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
        )

        parts = [block.text for block in response.content if block.type == "text"]
        if not parts:
            raise ValueError(
                "LLM response did not contain a text block. "
                "Response: " + str(response.content)
            )
        return "".join(parts)

    @staticmethod
    def check_api_key() -> tuple[bool, str]:
        return bool(os.environ.get("ANTHROPIC_API_KEY")), "ANTHROPIC_API_KEY"
