"""Completion gateway: turns a generation request into accounted token usage.

Flow for one request:

1. Resolve the tier (explicit on the request, else the ledger's)
2. Route to a model
3. Pre-flight: prompt estimate plus output budget against remaining credits
4. Call the provider, retrying once on the fallback model when a premium
   model is unavailable
5. Deduct the actual usage from the ledger exactly once
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from velto_credits.config import settings
from velto_credits.exceptions import (
    CompletionProviderError,
    QuotaExceededError,
    UnknownProviderError,
)
from velto_credits.ledger import CreditLedger
from velto_credits.providers import CompletionProvider, CompletionResult
from velto_credits.routing import (
    FALLBACK_STATUS_CODES,
    TaskCategory,
    coerce_task,
    fallback_for,
    max_output_tokens_for,
    select_model,
    temperature_for,
)
from velto_credits.tiers import Tier, coerce_tier, quota_for
from velto_credits.tokens import TokenCounter, get_token_counter

logger = structlog.get_logger()


@dataclass
class CompletionRequest:
    """Parameters for one gateway completion."""

    messages: list[dict[str, Any]]
    task: TaskCategory | str = TaskCategory.GENERAL_QA
    tier: Tier | str | None = None
    model_override: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    provider: str | None = None


@dataclass
class CompletionOutcome:
    """Result of a successful gateway completion."""

    text: str
    model: str
    provider: str
    input_tokens: int
    output_tokens: int
    used_fallback: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CompletionGateway:
    """Routes completions to providers and charges them to a credit ledger."""

    def __init__(
        self,
        ledger: CreditLedger,
        providers: Mapping[str, CompletionProvider],
        token_counter: TokenCounter | None = None,
        default_provider: str | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            ledger: Ledger charged for every successful completion
            providers: Providers by name (e.g. "openrouter", "groq")
            token_counter: Counter for pre-flight estimates and missing usage
            default_provider: Provider used when a request names none
        """
        self.ledger = ledger
        self.providers = {name.lower(): provider for name, provider in providers.items()}
        self.token_counter = token_counter or get_token_counter()
        self.default_provider = (default_provider or settings.LLM_PROVIDER).lower()

    def _provider_for(self, name: str | None) -> CompletionProvider:
        key = (name or self.default_provider).strip().lower()
        provider = self.providers.get(key)
        if provider is None:
            raise UnknownProviderError(key)
        return provider

    async def complete(self, request: CompletionRequest) -> str:
        """Run a completion and return its text.

        Raises:
            QuotaExceededError: If the request may not fit in the remaining credits
            CompletionProviderError: If the provider call fails
        """
        outcome = await self.complete_with_result(request)
        return outcome.text

    async def complete_with_result(self, request: CompletionRequest) -> CompletionOutcome:
        """Run a completion and return text, model and token split."""
        if not self.ledger.is_ready:
            await self.ledger.load()

        task = coerce_task(request.task)
        state = self.ledger.state
        tier = state.tier if request.tier is None else (coerce_tier(request.tier) or Tier.FREE)
        provider = self._provider_for(request.provider)
        model = select_model(task, tier, request.model_override)
        temperature = (
            request.temperature if request.temperature is not None else temperature_for(task)
        )
        max_tokens = (
            request.max_tokens if request.max_tokens is not None else max_output_tokens_for(task)
        )

        prompt_estimate = self.token_counter.count_message_set_tokens(request.messages)
        requested = prompt_estimate + max_tokens
        remaining = max(0, quota_for(tier) + state.granted_credits - state.quota_used_this_period)
        if requested > remaining:
            logger.info(
                "Completion blocked by quota",
                user_id=self.ledger.identity,
                tier=tier.value,
                remaining=remaining,
                requested=requested,
            )
            raise QuotaExceededError(remaining=remaining, requested=requested, tier=tier.value)

        logger.info(
            "Routing completion",
            user_id=self.ledger.identity,
            task=task.value,
            tier=tier.value,
            model=model,
            provider=provider.name,
        )

        used_fallback = False
        try:
            result = await provider.complete(model, request.messages, temperature, max_tokens)
        except CompletionProviderError as e:
            fallback = fallback_for(model)
            if fallback is None or e.status_code not in FALLBACK_STATUS_CODES:
                raise
            logger.warning(
                "Premium model unavailable, retrying with fallback",
                model=model,
                fallback=fallback,
                status_code=e.status_code,
            )
            model = fallback
            used_fallback = True
            result = await provider.complete(model, request.messages, temperature, max_tokens)

        input_tokens, output_tokens = self._usage(result, prompt_estimate)
        await self.ledger.deduct(input_tokens + output_tokens, input_tokens=input_tokens)

        logger.info(
            "Completion charged",
            user_id=self.ledger.identity,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            used_fallback=used_fallback,
        )
        return CompletionOutcome(
            text=result.text,
            model=model,
            provider=result.provider,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            used_fallback=used_fallback,
        )

    def _usage(self, result: CompletionResult, prompt_estimate: int) -> tuple[int, int]:
        # Provider-reported counts win; our own counts fill any gap
        input_tokens = result.prompt_tokens
        if input_tokens is None:
            input_tokens = prompt_estimate
        output_tokens = result.completion_tokens
        if output_tokens is None:
            output_tokens = self.token_counter.count_tokens(result.text)
        return input_tokens, output_tokens

    async def close(self) -> None:
        """Close every provider."""
        for provider in self.providers.values():
            await provider.close()
