"""Custom exception classes for credit metering and tier entitlements."""


class CreditsError(Exception):
    """Base exception for the credits subsystem."""


class QuotaExceededError(CreditsError):
    """Raised when a completion would use more tokens than the tier has left."""

    def __init__(self, remaining: int, requested: int, tier: str) -> None:
        self.remaining = remaining
        self.requested = requested
        self.tier = tier
        if tier == "free":
            hint = "Upgrade to Starter for 50,000 tokens/month!"
        else:
            hint = "Please upgrade your plan or wait for your monthly reset."
        super().__init__(
            f"You have {remaining} tokens left this month, but this request may use "
            f"up to {requested}. {hint}"
        )


class RemoteUnavailableError(CreditsError):
    """Raised when the document store cannot be reached."""

    def __init__(self, operation: str, original_error: str) -> None:
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Document store unavailable during {operation}: {original_error}")


class CompletionProviderError(CreditsError):
    """Raised when an LLM completion endpoint fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.provider = provider
        self.model = model
        super().__init__(message)


class UnknownProviderError(CompletionProviderError):
    """Raised when an unsupported completion provider is requested."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unknown provider: {provider}", provider=provider)


class MalformedCacheDataError(CreditsError):
    """Raised when cached credit state cannot be parsed."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Malformed cached credit state at {key}: {reason}")


class LedgerNotReadyError(CreditsError):
    """Raised when a ledger operation runs before the initial load finished."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"Credit ledger for {identity} is not loaded yet. Call load() first.")
