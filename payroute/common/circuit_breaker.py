"""Per-dependency failure gate with closed/open/half-open states.

Transitions are evaluated lazily when a request arrives; there is no
background timer. State survives only for the life of the process.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from payroute.common.errors import CircuitOpenError, CircuitTimeoutError
from payroute.common.logging import logger

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]


@dataclass
class CircuitBreakerConfig:
    name: str = "default"
    max_failures: int = 5
    timeout: float = 30.0
    half_open_max: int = 3
    on_state_change: StateChangeCallback | None = None


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time view of one breaker."""

    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float | None


class CircuitBreaker:
    def __init__(self, config: CircuitBreakerConfig | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        config = config or CircuitBreakerConfig()
        self.name = config.name
        self.max_failures = config.max_failures if config.max_failures > 0 else 5
        self.timeout = config.timeout if config.timeout > 0 else 30.0
        self.half_open_max = config.half_open_max if config.half_open_max > 0 else 3
        self.on_state_change = config.on_state_change
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._in_flight = 0
        self._last_failure: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                state=self._state,
                failure_count=self._failures,
                success_count=self._successes,
                last_failure_time=self._last_failure,
            )

    def reset(self) -> None:
        with self._lock:
            change = self._transition(CircuitState.CLOSED)
            self._failures = 0
            self._successes = 0
            self._in_flight = 0
        self._notify(change)

    async def execute(self, fn: Callable[[], Awaitable[T]], timeout: float | None = None) -> T:
        """Run `fn` if the breaker admits it.

        The call runs as its own task. When `timeout` passes first, a failure is
        recorded and `CircuitTimeoutError` raised; the task is left running and
        its eventual outcome is only logged.
        """

        if not self.allow_request():
            raise CircuitOpenError(self.name)

        task = asyncio.ensure_future(fn())
        try:
            if timeout is None:
                result = await asyncio.shield(task)
            else:
                result = await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            self.record_failure()
            if task.done():
                # The guarded call raised TimeoutError itself.
                raise
            task.add_done_callback(self._log_abandoned)
            logger.warning("circuit_call_abandoned breaker=%s timeout_s=%s", self.name, timeout)
            raise CircuitTimeoutError(self.name, call=task) from None
        except asyncio.CancelledError:
            self.record_failure()
            task.add_done_callback(self._log_abandoned)
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def allow_request(self) -> bool:
        change = None
        with self._lock:
            if self._state == CircuitState.CLOSED:
                allowed = True
            elif self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure or 0.0)
                if elapsed >= self.timeout:
                    change = self._transition(CircuitState.HALF_OPEN)
                    self._in_flight = 1
                    allowed = True
                else:
                    allowed = False
            else:
                allowed = self._successes + self._in_flight < self.half_open_max
                if allowed:
                    self._in_flight += 1
        self._notify(change)
        return allowed

    def record_success(self) -> None:
        change = None
        with self._lock:
            if self._state == CircuitState.CLOSED:
                self._failures = 0
            elif self._state == CircuitState.HALF_OPEN:
                self._in_flight = max(0, self._in_flight - 1)
                self._successes += 1
                if self._successes >= self.half_open_max:
                    change = self._transition(CircuitState.CLOSED)
        self._notify(change)

    def record_failure(self) -> None:
        change = None
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            if self._state == CircuitState.CLOSED and self._failures >= self.max_failures:
                change = self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.HALF_OPEN:
                change = self._transition(CircuitState.OPEN)
        self._notify(change)

    def _transition(self, new_state: CircuitState) -> tuple[CircuitState, CircuitState] | None:
        # Caller holds the lock.
        if self._state == new_state:
            return None
        old_state = self._state
        self._state = new_state
        self._failures = 0
        self._successes = 0
        self._in_flight = 0
        return old_state, new_state

    def _notify(self, change: tuple[CircuitState, CircuitState] | None) -> None:
        if change is None:
            return
        old_state, new_state = change
        logger.warning("circuit_state_change breaker=%s from=%s to=%s", self.name, old_state.value, new_state.value)
        if self.on_state_change is None:
            return
        try:
            self.on_state_change(self.name, old_state, new_state)
        except Exception as exc:
            logger.exception("circuit_state_callback_failed breaker=%s error=%s", self.name, exc)

    def _log_abandoned(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("abandoned_call_failed breaker=%s error=%s", self.name, exc)
        else:
            logger.info("abandoned_call_completed breaker=%s", self.name)
