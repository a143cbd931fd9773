"""Error taxonomy shared by the selector, resilience primitives and services.

Validation and capability-absent errors are safe to show to callers. Provider
and persistence errors carry the operation and provider name for diagnosis but
never provider credentials.
"""

import asyncio


class PaymentError(Exception):
    """Base class for every error raised by payroute."""


class InvalidRequestError(PaymentError):
    """Caller-supplied data rejected before any network call."""


class NotFoundError(PaymentError):
    """Requested entity does not exist (or fan-out found nothing)."""


class NotSupportedError(PaymentError):
    """The selected provider does not implement the requested capability."""

    def __init__(self, provider: str, capability: str) -> None:
        super().__init__(f"feature {capability} not supported by provider {provider}")
        self.provider = provider
        self.capability = capability


class NoAvailableProviderError(PaymentError):
    """Every candidate provider failed its liveness probe."""

    def __init__(self, message: str = "no available payment provider") -> None:
        super().__init__(message)


class ProviderUnavailableError(PaymentError):
    """An entity is owned by a provider that is not part of the configured set."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"provider {provider} not available")
        self.provider = provider


class MappingNotFoundError(NotFoundError):
    """No durable entity-to-provider mapping exists."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"no provider mapping found for {entity_type}: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class DuplicateMappingError(PaymentError):
    """A mapping for `(entity_id, entity_type)` already exists."""


class ProviderError(PaymentError):
    """A provider call failed (possibly after retries)."""

    def __init__(self, provider: str, operation: str, message: str = "") -> None:
        detail = f": {message}" if message else ""
        super().__init__(f"{operation} failed with provider {provider}{detail}")
        self.provider = provider
        self.operation = operation


class ProviderDeclinedError(ProviderError):
    """The provider rejected the request; retrying cannot change the outcome."""


class RetryExhaustedError(PaymentError):
    """Every retry attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class CircuitOpenError(PaymentError):
    """The circuit breaker rejected the call without attempting it."""

    def __init__(self, name: str) -> None:
        super().__init__(f"circuit breaker {name} is open")
        self.name = name


class CircuitTimeoutError(PaymentError):
    """The guarded call did not finish before the caller's deadline.

    `call` is the abandoned task, still running; its outcome is unknown.
    """

    def __init__(self, name: str, call: asyncio.Future | None = None) -> None:
        super().__init__(f"circuit breaker {name} timeout")
        self.name = name
        self.call = call


class PersistenceError(PaymentError):
    """Local storage failed after the provider already moved money."""


class InvalidSignatureError(PaymentError):
    """Webhook signature missing or mismatched."""
