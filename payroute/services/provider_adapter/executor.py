"""Resilient provider invocation: retry engine around breaker-gated attempts.

One circuit breaker per `provider:operation` pair, created on first use. Each
attempt runs through the breaker (which applies the per-call timeout); the
retry loop sits outside so an open breaker ends the retries immediately.
"""

import threading
from dataclasses import replace
from typing import Awaitable, Callable, TypeVar

from payroute.common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerState, CircuitState
from payroute.common.logging import logger
from payroute.common.metrics import MetricsSink
from payroute.common.retry import RetryPolicy, RetryResult, provider_retryable, retry_async
from payroute.common.tracing import get_tracer, provider_span

T = TypeVar("T")


class ProviderExecutor:
    def __init__(
        self,
        breaker_config: CircuitBreakerConfig | None = None,
        call_timeout: float | None = None,
        metrics: MetricsSink | None = None,
        default_policy: RetryPolicy | None = None,
    ) -> None:
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self.default_policy = default_policy or RetryPolicy(retryable=provider_retryable)
        self.call_timeout = call_timeout
        self.metrics = metrics or MetricsSink()
        self.tracer = get_tracer("payroute.provider")
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, provider: str, operation: str) -> CircuitBreaker:
        key = f"{provider}:{operation}"
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                config = replace(self.breaker_config, name=key, on_state_change=self._on_state_change)
                breaker = CircuitBreaker(config)
                self._breakers[key] = breaker
                self.metrics.circuit_state(key, CircuitState.CLOSED.value)
            return breaker

    def breaker_states(self) -> dict[str, CircuitBreakerState]:
        with self._lock:
            breakers = dict(self._breakers)
        return {key: breaker.snapshot() for key, breaker in breakers.items()}

    def _on_state_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        self.metrics.circuit_state(name, new.value)
        if self.breaker_config.on_state_change is not None:
            self.breaker_config.on_state_change(name, old, new)

    async def call(
        self,
        provider: str,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        timeout: float | None = None,
        result: RetryResult | None = None,
    ) -> T:
        """Invoke `fn` against `provider` with retries and its breaker.

        Errors surface as the retry engine raises them: the original error when
        non-retryable, `RetryExhaustedError` otherwise.
        """

        breaker = self.breaker(provider, operation)
        policy = policy or self.default_policy
        timeout = timeout if timeout is not None else self.call_timeout

        attempts = 0

        async def attempt() -> T:
            nonlocal attempts
            attempts += 1
            with provider_span(self.tracer, provider, operation, attempts):
                try:
                    value = await breaker.execute(fn, timeout=timeout)
                except Exception as exc:
                    self.metrics.provider_call(provider, operation, type(exc).__name__)
                    raise
                self.metrics.provider_call(provider, operation, "success")
                return value

        def on_retry(attempt_no: int, exc: BaseException, delay: float) -> None:
            self.metrics.retry(f"{provider}:{operation}")

        logger.debug("provider_call provider=%s operation=%s", provider, operation)
        return await retry_async(
            attempt, policy, result=result, on_retry=on_retry, label=f"{provider}:{operation}"
        )
