"""OpenAI LLM provider."""

from __future__ import annotations

import os

import openai

from inference_stack.core.providers.base import BaseLLMProvider


class OpenAIProvider(BaseLLMProvider):
    """Provider for OpenAI models (GPT-4o, o1, o3, etc.)."""

    def __init__(self, model: str):
        super().__init__(model)
        self.client = openai.OpenAI()

    def generate(self, prompt: str, timeout: float) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            max_tokens=4096,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
        )

        choice = response.choices[0].message
        if choice.content:
            return choice.content

        raise ValueError(
            "OpenAI response did not contain any text. "
            "Response: " + str(choice)
        )

    @staticmethod
    def check_api_key() -> tuple[bool, str]:
        return bool(os.environ.get("OPENAI_API_KEY")), "OPENAI_API_KEY"
