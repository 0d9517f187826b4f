"""Google Gemini LLM provider."""

from __future__ import annotations

import os

from google import genai
from google.genai import types

from inference_stack.core.providers.base import BaseLLMProvider


class GoogleProvider(BaseLLMProvider):
    """Provider for Google Gemini models."""

    def __init__(self, model: str):
        super().__init__(model)
        self.client = genai.Client()

    def generate(self, prompt: str, timeout: float) -> str:
        response = self.client.models.generate_content(
            model=self.model,
            contents=[
                types.Content(
                    role="user",
                    parts=[types.Part.from_text(text=prompt)],
                ),
            ],
            config=types.GenerateContentConfig(
                # HttpOptions.timeout is in milliseconds
                http_options=types.HttpOptions(timeout=int(timeout * 1000)),
            ),
        )

        if response.text:
            return response.text

        raise ValueError(
            "Gemini response did not contain any text. "
            "Response: " + str(response)
        )

    @staticmethod
    def check_api_key() -> tuple[bool, str]:
        return bool(os.environ.get("GOOGLE_API_KEY")), "GOOGLE_API_KEY"
