"""Google Gemini text generation client."""

import asyncio
import logging
from typing import Protocol

import google.generativeai as genai

from context_memory.config import settings
from context_memory.exceptions import TextGenerationFailure
from context_memory.utils.text import filter_think_blocks

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    """Best-effort text generation collaborator.

    Implementations raise TextGenerationFailure on any failure; every caller
    in this package has a deterministic fallback.
    """

    async def generate(
        self,
        prompt: str,
        temperature: float,
        max_tokens: int | None = None,
    ) -> str: ...


class GeminiTextGenerator:
    """Text generator using Google Gemini.

    Used for incremental-information extraction, context merging, duplicate
    adjudication, summary compression and query enhancement.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        timeout_seconds: float | None = None,
    ):
        """Initialize the generator.

        Args:
            api_key: Google API key (default from settings)
            model: Model name (default from settings)
            max_tokens: Default max output tokens (default from settings)
            timeout_seconds: Per-call timeout (default from settings)
        """
        self.api_key = api_key or settings.google_ai_api_key
        self.model_name = model or settings.gemini_model
        self.max_tokens = max_tokens or settings.gemini_max_tokens
        self.timeout_seconds = timeout_seconds or settings.text_generation_timeout_seconds

        # Configure the API
        genai.configure(api_key=self.api_key)
        self.model = genai.GenerativeModel(model_name=self.model_name)

        logger.info(f"Text generator initialized with model: {self.model_name}")

    async def generate(
        self,
        prompt: str,
        temperature: float,
        max_tokens: int | None = None,
    ) -> str:
        """Generate a completion for a single prompt.

        Args:
            prompt: Prompt text
            temperature: Sampling temperature
            max_tokens: Override max tokens

        Returns:
            Generated text with reasoning blocks removed

        Raises:
            TextGenerationFailure: If generation fails or times out
        """
        gen_config = genai.GenerationConfig(
            temperature=temperature,
            max_output_tokens=max_tokens or self.max_tokens,
        )

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    lambda: self.model.generate_content(
                        prompt,
                        generation_config=gen_config,
                    )
                ),
                timeout=self.timeout_seconds,
            )
            text = response.text
        except asyncio.TimeoutError as e:
            logger.error(f"Text generation timed out after {self.timeout_seconds}s")
            raise TextGenerationFailure("Text generation timed out") from e
        except Exception as e:
            logger.error(f"Text generation error: {e}")
            raise TextGenerationFailure(str(e)) from e

        return filter_think_blocks(text or "")


def get_text_generator() -> TextGenerator | None:
    """Get a text generator, or None when no API key is configured.

    Callers treat None as "generation unavailable" and use their fallbacks.
    """
    if not settings.google_ai_api_key:
        logger.warning("No Google AI API key configured, text generation disabled")
        return None

    return GeminiTextGenerator()
