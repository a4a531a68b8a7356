"""
Error types for credit accounting, frame scoring and provider routing.

Routing errors are the terminal outcomes a caller sees. Ledger, scoring and
provider errors are narrower and are handled or wrapped by the router.
"""

from enum import Enum
from typing import Optional


class EnhanceGuardError(Exception):
    """Base class for all errors raised by this package."""


class ProviderErrorKind(Enum):
    """How a provider failed. Only affects logging, never control flow."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMITED = "rate_limited"


class ProviderError(EnhanceGuardError):
    """Raised by a provider adapter when an enhancement fails."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str = "",
        provider=None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message or kind.value)
        self.kind = kind
        self.provider = provider
        self.retry_after = retry_after

    @classmethod
    def transient(cls, message: str = "", provider=None) -> "ProviderError":
        return cls(ProviderErrorKind.TRANSIENT, message, provider)

    @classmethod
    def permanent(cls, message: str = "", provider=None) -> "ProviderError":
        return cls(ProviderErrorKind.PERMANENT, message, provider)

    @classmethod
    def rate_limited(
        cls, message: str = "", provider=None, retry_after: Optional[float] = None
    ) -> "ProviderError":
        return cls(ProviderErrorKind.RATE_LIMITED, message, provider, retry_after)


class CreditLimitExceeded(EnhanceGuardError):
    """Raised when a charge is attempted with no credit remaining.

    Never clamped: callers must gate before consuming.
    """

    def __init__(self, account_id: str, cost_class, capacity: int, consumed: int):
        super().__init__(
            f"Account {account_id} has no {cost_class.value} credit left "
            f"({consumed}/{capacity} used)"
        )
        self.account_id = account_id
        self.cost_class = cost_class
        self.capacity = capacity
        self.consumed = consumed


class ScoringError(EnhanceGuardError):
    """Raised when a single frame cannot be scored."""


class NoScorableFrames(ScoringError):
    """Raised when no frame of a burst could be scored."""


class RoutingError(EnhanceGuardError):
    """Terminal failure of an enhancement request."""

    # What the caller should surface: an upgrade prompt, a retry prompt or nothing
    user_action = "retry"


class InsufficientCredits(RoutingError):
    """Gate check failed; no provider was called."""

    user_action = "upgrade"

    def __init__(self, required: int, remaining: int, cost_class=None):
        label = f" {cost_class.value}" if cost_class is not None else ""
        super().__init__(
            f"This edit requires {required}{label} credit(s), "
            f"but only {remaining} remain this period"
        )
        self.required = required
        self.remaining = remaining
        self.cost_class = cost_class


class AllProvidersFailed(RoutingError):
    """Every provider in the chain failed; nothing was charged."""

    def __init__(self, last_error: Optional[ProviderError], attempts: int = 0):
        detail = str(last_error) if last_error is not None else "no provider attempted"
        super().__init__(f"All providers failed after {attempts} attempt(s). Last error: {detail}")
        self.last_error = last_error
        self.attempts = attempts


class NoProvidersAvailable(RoutingError):
    """No registered provider can serve a task. A configuration error."""

    user_action = "none"

    def __init__(self, task, detail: str = ""):
        name = getattr(task, "value", task)
        message = f"No provider is available for task '{name}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.task = task


class RequestCancelled(RoutingError):
    """The request was cancelled or superseded. Not a failure; never charged."""

    user_action = "none"

    def __init__(self, message: str = "Enhancement request was cancelled"):
        super().__init__(message)
