"""Retry, circuit breaker and timeout around provider calls.

Composition per call is ``breaker(timeout(retry(adapter call)))``: an open
breaker rejects the call before any retry budget is spent, and the deadline
covers every retry attempt of that call.
"""

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

from .errors import (
    CircuitOpenError,
    RateLimitError,
    RequestTimeoutError,
    UnsupportedOperationError,
    ValidationError,
    is_retryable,
)
from .schemas import ImageGenerationRequest, ImageGenerationResponse, UnifiedRequest, UnifiedResponse
from .streaming import ChunkStream

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================================
# Retry
# ============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings. Delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    def compute_delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry number ``attempt`` (0-based).

        ``min(max_delay, base_delay * multiplier ** attempt)``, scaled into
        ``[50%, 100%]`` when jitter is on.
        """
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** attempt))
        if self.jitter:
            delay *= 0.5 + rng() * 0.5
        return delay

    def with_max_retries(self, max_retries: int) -> "RetryPolicy":
        return replace(self, max_retries=max_retries)


class RetryHandler:
    """Runs a coroutine function under a ``RetryPolicy`` using tenacity.

    Only errors classified as retryable (rate limit, network, timeout, 5xx)
    are retried; a rate-limit ``retry_after`` hint replaces the computed
    backoff for that attempt.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return error.retry_after
        return self.policy.compute_delay(retry_state.attempt_number - 1, self._rng)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
            sleep=self._sleep,
        )

    async def execute(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Call ``fn`` until it succeeds, fails permanently or retries run out.

        Raises:
            The last error raised by ``fn``.
        """
        return await self._retrying()(fn, *args, **kwargs)


# ============================================================================
# Circuit breaker
# ============================================================================

class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# Failures that say nothing about the dependency's health
_NOT_COUNTED = (ValidationError, UnsupportedOperationError, CircuitOpenError)


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    ``closed`` counts consecutive failures and opens at ``failure_threshold``.
    ``open`` rejects calls with ``CircuitOpenError`` until
    ``next_attempt_time``, then moves to ``half_open`` and admits exactly one
    trial call. The trial's outcome closes or re-opens the circuit.
    State is guarded by a lock so one breaker can be shared by concurrent calls.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        provider: Optional[str] = None,
    ):
        """Initialize the breaker.

        Args:
            name: Identifier used in logs and errors.
            failure_threshold: Consecutive failures that open the circuit.
            recovery_timeout: Seconds to stay open before a trial call.
            clock: Monotonic time source, injectable for tests.
            provider: Provider name attached to ``CircuitOpenError``.
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.provider = provider
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[float] = None
        self._next_attempt_time: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    @property
    def next_attempt_time(self) -> Optional[float]:
        with self._lock:
            return self._next_attempt_time

    def before_call(self) -> None:
        """Admit a call or raise ``CircuitOpenError``."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                now = self._clock()
                if now < self._next_attempt_time:
                    raise CircuitOpenError(
                        f"Circuit '{self.name}' is open",
                        self.name,
                        retry_after=round(self._next_attempt_time - now, 3),
                        provider=self.provider,
                    )
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"Circuit {self.name} half-open, allowing a trial call")

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(
                        f"Circuit '{self.name}' is half-open with a trial call in flight",
                        self.name,
                        retry_after=0.0,
                        provider=self.provider,
                    )
                self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit {self.name} closed after successful call")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._next_attempt_time = None
            self._trial_in_flight = False

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        with self._lock:
            if isinstance(error, _NOT_COUNTED):
                self._trial_in_flight = False
                return
            now = self._clock()
            self._failures += 1
            self._last_failure_time = now
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        f"Circuit {self.name} opened after {self._failures} failures "
                        f"(retry in {self.recovery_timeout}s)"
                    )
                self._state = CircuitState.OPEN
                self._next_attempt_time = now + self.recovery_timeout

    def release_trial(self) -> None:
        """Forget an admitted call that ended without an outcome."""
        with self._lock:
            self._trial_in_flight = False

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` through the breaker.

        Raises:
            CircuitOpenError: Without calling ``fn`` while the circuit is open.
        """
        self.before_call()
        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            self.release_trial()
            raise
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure_time = None
            self._next_attempt_time = None
            self._trial_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        """Current state and counters."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "last_failure_time": self._last_failure_time,
                "next_attempt_time": self._next_attempt_time,
            }


# ============================================================================
# Timeout
# ============================================================================

async def with_timeout(awaitable: Awaitable[T], timeout: Optional[float], provider: Optional[str] = None) -> T:
    """Race ``awaitable`` against a deadline.

    On expiry the awaitable is cancelled and ``RequestTimeoutError`` raised.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise RequestTimeoutError(
            f"Call exceeded deadline of {timeout}s",
            provider,
            timeout=timeout,
        ) from None


# ============================================================================
# Composition
# ============================================================================

class ResilientProvider:
    """An adapter wrapped in its own breaker, retry handler and deadline.

    Exposes the same contract as the adapter so callers never talk to a bare
    adapter.
    """

    def __init__(
        self,
        adapter,
        retry_policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Wrap ``adapter``.

        Args:
            adapter: A ``BaseProvider`` instance.
            retry_policy: Backoff settings; defaults to the adapter config's ``max_retries``.
            breaker: Circuit breaker; one is created per wrapped adapter if omitted.
            timeout: Per-call deadline in seconds; defaults to the adapter config's ``timeout``.
            sleep: Sleep function used between retries.
        """
        self.adapter = adapter
        policy = retry_policy or RetryPolicy(max_retries=adapter.config.max_retries)
        self.retry_handler = RetryHandler(policy, sleep=sleep)
        self.breaker = breaker or CircuitBreaker(
            f"{adapter.provider_name}:{adapter.model}",
            provider=adapter.provider_name,
        )
        self.timeout = timeout if timeout is not None else adapter.config.timeout

    @property
    def provider_name(self) -> str:
        return self.adapter.provider_name

    @property
    def model(self) -> str:
        return self.adapter.model

    @property
    def supports_image_generation(self) -> bool:
        return self.adapter.SUPPORTS_IMAGE_GENERATION

    @property
    def config(self):
        return self.adapter.config

    @property
    def profile(self):
        return self.adapter.profile

    @property
    def circuit_state(self) -> CircuitState:
        return self.breaker.state

    def capabilities(self):
        return self.adapter.capabilities()

    def estimate_cost(self, request: UnifiedRequest) -> float:
        return self.adapter.estimate_cost(request)

    def supports_model(self, model: str) -> bool:
        return self.adapter.supports_model(model)

    async def _attempt(self, request: UnifiedRequest, retry: bool) -> UnifiedResponse:
        if retry:
            call = self.retry_handler.execute(self.adapter.complete, request)
        else:
            call = self.adapter.complete(request)
        return await with_timeout(call, self.timeout, self.provider_name)

    async def complete(self, request: UnifiedRequest, retry: bool = True) -> UnifiedResponse:
        """Resilient completion.

        Args:
            request: The unified request.
            retry: Set False to make a single attempt (still breaker-guarded).
        """
        return await self.breaker.call(self._attempt, request, retry)

    def stream(self, request: UnifiedRequest) -> ChunkStream:
        """Resilient stream: breaker-guarded and deadline-bound, never retried.

        Streams cannot be replayed once chunks have been delivered, so a
        failure surfaces to the caller and counts against the breaker.
        """
        self.breaker.before_call()
        try:
            inner = self.adapter.stream(request)
        except Exception as e:
            self.breaker.record_failure(e)
            raise
        return ChunkStream(
            inner,
            provider=self.provider_name,
            timeout=self.timeout,
            on_success=self.breaker.record_success,
            on_error=self.breaker.record_failure,
            on_abandon=self.breaker.release_trial,
        )

    async def generate_images(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        return await self.breaker.call(
            lambda: with_timeout(
                self.retry_handler.execute(self.adapter.generate_images, request),
                self.timeout,
                self.provider_name,
            )
        )

    async def health_check(self) -> Dict[str, Any]:
        result = await self.adapter.health_check()
        result["circuit_state"] = self.breaker.state.value
        return result

    async def aclose(self) -> None:
        await self.adapter.aclose()
