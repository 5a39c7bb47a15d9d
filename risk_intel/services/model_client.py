from __future__ import annotations

import logging
from typing import Protocol

import anthropic

from risk_intel.config import DEFAULT_MODEL
from risk_intel.errors import (
    ANALYZER_001_TIMEOUT,
    ANALYZER_002_PROVIDER,
    ANALYZER_003_UNAVAILABLE,
    AnalyzerProviderError,
    AnalyzerTimeoutError,
)


logger = logging.getLogger("risk_intel.model")


class ModelClient(Protocol):
    """Anything that turns one prompt into raw response text."""

    def complete(self, prompt: str) -> str: ...


class AnthropicModelClient:
    """
    Synchronous Anthropic Messages client with a hard per-call timeout.

    SDK timeouts map to AnalyzerTimeoutError; every other API failure maps to
    AnalyzerProviderError. Both trigger the keyword fallback upstream.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = 20.0,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> None:
        if not api_key:
            raise AnalyzerProviderError(ANALYZER_003_UNAVAILABLE, "ANTHROPIC_API_KEY is not set")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout_seconds, max_retries=0)

    def complete(self, prompt: str) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APITimeoutError as e:
            raise AnalyzerTimeoutError(ANALYZER_001_TIMEOUT, str(e)) from e
        except anthropic.APIError as e:
            logger.error("model call failed model=%s err=%s", self.model, e)
            raise AnalyzerProviderError(ANALYZER_002_PROVIDER, f"{type(e).__name__}: {e}") from e
        parts = [getattr(block, "text", "") for block in (response.content or [])]
        text = "".join(p for p in parts if p)
        if not text.strip():
            raise AnalyzerProviderError(ANALYZER_002_PROVIDER, "empty response")
        return text


def build_model_client(settings) -> ModelClient | None:
    """Configured Anthropic client, or None when no API key is present."""
    if not settings.anthropic_api_key:
        return None
    return AnthropicModelClient(
        settings.anthropic_api_key,
        model=settings.model_name,
        timeout_seconds=settings.model_timeout_seconds,
        temperature=settings.model_temperature,
        max_tokens=settings.model_max_tokens,
    )
