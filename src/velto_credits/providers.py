"""HTTP completion providers.

Both supported providers speak the OpenAI chat-completions wire format, so they
share one implementation and differ only in endpoint, key and headers.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from velto_credits.config import Settings, get_settings
from velto_credits.exceptions import CompletionProviderError, UnknownProviderError

logger = structlog.get_logger()


@dataclass
class CompletionResult:
    """Text returned by a provider plus its reported token usage, if any."""

    text: str
    model: str
    provider: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class CompletionProvider(ABC):
    """Abstract base class for completion providers."""

    name: str = "provider"

    @abstractmethod
    async def complete(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        temperature: float,
        max_tokens: int,
    ) -> CompletionResult:
        """Run one chat completion."""

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""


def _usage_count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"API error: {response.status_code} {response.reason_phrase}"


class OpenAICompatibleProvider(CompletionProvider):
    """Provider for any OpenAI-compatible chat completions endpoint."""

    name = "openai-compatible"

    def __init__(
        self,
        api_url: str,
        api_key: str | None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def complete(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        temperature: float,
        max_tokens: int,
    ) -> CompletionResult:
        if not self.api_key:
            raise CompletionProviderError(
                f"Missing {self.name} API key", provider=self.name, model=model
            )

        payload = {
            "model": model,
            "messages": [
                {"role": msg.get("role", "user"), "content": str(msg.get("content", "")).strip()}
                for msg in messages
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        try:
            response = await self.client.post(self.api_url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise CompletionProviderError(
                f"{self.name} request failed: {e}", provider=self.name, model=model
            ) from e

        if not response.is_success:
            message = _error_message(response)
            logger.warning(
                "Completion request rejected",
                provider=self.name,
                model=model,
                status_code=response.status_code,
                error=message,
            )
            raise CompletionProviderError(
                message, status_code=response.status_code, provider=self.name, model=model
            )

        try:
            data = response.json()
        except ValueError as e:
            raise CompletionProviderError(
                "Invalid JSON in completion response",
                status_code=response.status_code,
                provider=self.name,
                model=model,
            ) from e

        choices = data.get("choices") if isinstance(data, dict) else None
        first = choices[0] if isinstance(choices, list) and choices else {}
        if not isinstance(data, dict) or not isinstance(first, dict):
            raise CompletionProviderError(
                "Invalid completion response",
                status_code=response.status_code,
                provider=self.name,
                model=model,
            )

        message_body = first.get("message")
        if not isinstance(message_body, dict):
            message_body = {}
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        content = message_body.get("content")
        return CompletionResult(
            text=content if isinstance(content, str) else "",
            model=model,
            provider=self.name,
            prompt_tokens=_usage_count(usage.get("prompt_tokens")),
            completion_tokens=_usage_count(usage.get("completion_tokens")),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter, which also wants the calling app's referer and title."""

    name = "openrouter"

    def __init__(
        self,
        api_key: str | None,
        api_url: str = "https://openrouter.ai/api/v1/chat/completions",
        referer: str = "http://localhost:5173",
        title: str = "Founder Launch Pilot",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(api_url, api_key, timeout=timeout, client=client)
        self.referer = referer
        self.title = title

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = self.referer
        headers["X-Title"] = self.title
        return headers


class GroqProvider(OpenAICompatibleProvider):
    """Groq's OpenAI-compatible endpoint."""

    name = "groq"

    def __init__(
        self,
        api_key: str | None,
        api_url: str = "https://api.groq.com/openai/v1/chat/completions",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(api_url, api_key, timeout=timeout, client=client)


def build_provider(
    name: str,
    config: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> CompletionProvider:
    """Create the provider registered under ``name`` from settings.

    Raises:
        UnknownProviderError: If no provider has that name
    """
    cfg = config or get_settings()
    key = name.strip().lower()
    if key == OpenRouterProvider.name:
        return OpenRouterProvider(
            api_key=cfg.OPENROUTER_API_KEY,
            api_url=cfg.OPENROUTER_API_URL,
            referer=cfg.APP_REFERER,
            title=cfg.APP_TITLE,
            timeout=cfg.LLM_TIMEOUT_SECONDS,
            client=client,
        )
    if key == GroqProvider.name:
        return GroqProvider(
            api_key=cfg.GROQ_API_KEY,
            api_url=cfg.GROQ_API_URL,
            timeout=cfg.LLM_TIMEOUT_SECONDS,
            client=client,
        )
    raise UnknownProviderError(name)
