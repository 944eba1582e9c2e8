"""
LLM Providers
=============

Text-generation contract used by the structured LLM executor, plus an
OpenRouter implementation over aiohttp.

Any object with ``async generate_content(prompt) -> str`` is a provider.
Providers with native batch support may also implement
``async generate_batch(prompts) -> List[str]``.

Example:
    provider = OpenRouterProvider(OpenRouterConfig(model="google/gemini-2.5-flash"))
    text = await provider.generate_content("Summarize: ...")
    await provider.close()
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import aiohttp
import structlog

from kgflow.exceptions import ConfigurationError, LLMProviderError

log = structlog.get_logger()


@runtime_checkable
class LLMProvider(Protocol):
    """Minimal text generation contract."""

    async def generate_content(self, prompt: str) -> str:
        ...


def supports_batch(provider: Any) -> bool:
    """True if the provider offers a native ``generate_batch``."""
    return callable(getattr(provider, "generate_batch", None))


@dataclass
class OpenRouterConfig:
    """
    OpenRouter settings.

    Attributes:
        api_key: API key (env OPENROUTER_API_KEY)
        model: Model id (env OPENROUTER_MODEL)
        temperature: Sampling temperature
        max_tokens: Max generated tokens per call
        timeout: Seconds per HTTP request (env OPENROUTER_TIMEOUT)
        base_url: API root
    """
    api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY") or None)
    model: str = field(default_factory=lambda: os.getenv("OPENROUTER_MODEL", "google/gemini-2.5-flash"))
    temperature: float = 0.0
    max_tokens: int = 8000
    timeout: float = field(default_factory=lambda: float(os.getenv("OPENROUTER_TIMEOUT", "120")))
    base_url: str = "https://openrouter.ai/api/v1"
    system_prompt: Optional[str] = None

    def __post_init__(self):
        if not 0 <= self.temperature <= 2:
            raise ValueError(f"temperature must be in [0, 2], got {self.temperature}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")


class OpenRouterProvider:
    """
    LLM provider backed by the OpenRouter chat completions API.

    The aiohttp session is created lazily and reused across calls;
    call ``close()`` (or use ``async with``) when done.
    """

    def __init__(self, config: Optional[OpenRouterConfig] = None):
        self.config = config or OpenRouterConfig()
        self.session: Optional[aiohttp.ClientSession] = None
        self._last_usage: Dict[str, int] = {}

    @property
    def model(self) -> str:
        return self.config.model

    def get_last_usage(self) -> Dict[str, int]:
        """Usage data from the last API call."""
        return self._last_usage.copy()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
        return self.session

    async def close(self):
        """Close the aiohttp session."""
        if self.session and not self.session.closed:
            await self.session.close()

    async def __aenter__(self) -> "OpenRouterProvider":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _build_payload(self, prompt: str) -> Dict[str, Any]:
        messages = []
        if self.config.system_prompt:
            messages.append({"role": "system", "content": self.config.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    async def generate_content(self, prompt: str) -> str:
        """
        Generate a completion for one prompt.

        Raises:
            ConfigurationError: If no API key is configured
            LLMProviderError: On HTTP errors or empty responses
        """
        if not self.config.api_key:
            raise ConfigurationError("OpenRouter API key not provided (set OPENROUTER_API_KEY)")

        session = await self._get_session()
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "X-Title": "kgflow",
        }

        log.debug(f"OpenRouter request: model={self.config.model}, prompt_chars={len(prompt)}")

        try:
            async with session.post(
                f"{self.config.base_url}/chat/completions",
                json=self._build_payload(prompt),
                headers=headers,
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    log.error(f"OpenRouter API error {response.status}: {error_text[:500]}")
                    raise LLMProviderError(
                        f"OpenRouter API error: {response.status} - {error_text[:500]}",
                        status=response.status,
                    )
                data = await response.json()
        except aiohttp.ClientError as e:
            log.error(f"OpenRouter request failed: {e}")
            raise LLMProviderError(f"OpenRouter request failed: {e}") from e

        if "choices" not in data or not data["choices"]:
            log.error(f"Invalid OpenRouter response: {str(data)[:500]}")
            raise LLMProviderError("Invalid response from OpenRouter API")

        self._last_usage = data.get("usage", {}) or {}
        content = data["choices"][0].get("message", {}).get("content")
        if not content:
            raise LLMProviderError("OpenRouter returned an empty completion")
        return content
