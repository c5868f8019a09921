"""Per-network request admission control.

Each network gets its own token bucket sized to its requests-per-second
budget. Acquisition waits up to a bounded timeout; a timeout is never an
error for the caller, it is retried after a fixed delay for as long as it
takes. Errors raised by the admitted operation itself propagate untouched.
"""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_never,
    wait_fixed,
)

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_RATE_LIMIT = 10  # requests per second
DEFAULT_ACQUIRE_TIMEOUT = 30.0  # seconds
DEFAULT_RETRY_DELAY = 1.0  # seconds

# Lower bound on a single wait so float rounding can't stall the loop
_MIN_WAIT = 0.001


class RateLimitTimeout(Exception):
    """Raised when a permit could not be acquired within the wait bound."""
    pass


class UnknownNetworkError(KeyError):
    """Raised when no limiter exists for the requested network."""
    pass


class TokenBucket:
    """Bucket of `capacity` permits, available immediately at creation.

    A consumed permit returns to the bucket exactly `interval` seconds after
    it was taken, so no window of `interval` seconds ever admits more than
    `capacity` operations.
    """

    def __init__(
        self,
        capacity: int,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity < 1:
            raise ValueError("Token bucket capacity must be at least 1")
        self.capacity = capacity
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._issued: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _release_expired(self, now: float) -> None:
        while self._issued and now - self._issued[0] >= self.interval:
            self._issued.popleft()

    async def acquire(self, timeout: float) -> None:
        """Take one permit, waiting at most `timeout` seconds.

        Raises:
            RateLimitTimeout: If no permit became available in time
        """
        deadline = self._clock() + timeout

        while True:
            async with self._lock:
                now = self._clock()
                self._release_expired(now)
                if len(self._issued) < self.capacity:
                    self._issued.append(now)
                    return
                wait = self._issued[0] + self.interval - now

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise RateLimitTimeout(f"No permit within {timeout}s")
            await self._sleep(max(min(wait, remaining), _MIN_WAIT))


class RateLimiter:
    """Manages one token bucket per network."""

    def __init__(
        self,
        rate_limits: Dict[int, int],
        acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize rate limiter.

        Args:
            rate_limits: Requests per second keyed by network id
            acquire_timeout: Bounded wait for one permit, in seconds
            retry_delay: Fixed pause before retrying a timed-out acquisition
            clock: Monotonic time source (injectable for tests)
            sleep: Async sleep function (injectable for tests)
        """
        self.acquire_timeout = acquire_timeout
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._buckets: Dict[int, TokenBucket] = {}

        self.logger = logger.bind(component="rate_limiter")

        for network_id, limit in rate_limits.items():
            self._buckets[network_id] = TokenBucket(
                capacity=limit or DEFAULT_RATE_LIMIT,
                clock=clock,
                sleep=sleep,
            )
            self.logger.debug(
                "rate_limiter_initialized",
                network_id=network_id,
                requests_per_second=self._buckets[network_id].capacity,
            )

    @classmethod
    def from_config(cls, config, **kwargs) -> "RateLimiter":
        """Build limiters for every configured network."""
        kwargs.setdefault("acquire_timeout", config.tuning.rate_limit_acquire_timeout)
        kwargs.setdefault("retry_delay", config.tuning.rate_limit_retry_delay)
        return cls({n.id: n.rate_limit for n in config.networks}, **kwargs)

    def get_rate_limit(self, network_id: int) -> int:
        return self._bucket(network_id).capacity

    def _bucket(self, network_id: int) -> TokenBucket:
        bucket = self._buckets.get(network_id)
        if bucket is None:
            raise UnknownNetworkError(f"No rate limiter found for network {network_id}")
        return bucket

    async def execute(
        self,
        network_id: int,
        operation: Callable[[], Awaitable[T]],
        operation_name: Optional[str] = None,
    ) -> T:
        """Run `operation` once a permit for `network_id` is available.

        Args:
            network_id: Network whose budget the call consumes
            operation: Zero-argument coroutine function performing the call
            operation_name: Label for logs

        Returns:
            Whatever `operation` returns

        Raises:
            UnknownNetworkError: If the network has no limiter
            Exception: Anything raised by `operation`, unchanged
        """
        bucket = self._bucket(network_id)
        name = operation_name or getattr(operation, "__name__", "request")

        def _log_timeout(retry_state):
            self.logger.debug(
                "rate_limit_timeout",
                network_id=network_id,
                operation_name=name,
                attempt=retry_state.attempt_number,
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RateLimitTimeout),
            wait=wait_fixed(self.retry_delay),
            stop=stop_never,
            sleep=self._sleep,
            before_sleep=_log_timeout,
            reraise=True,
        ):
            with attempt:
                await bucket.acquire(self.acquire_timeout)

        return await operation()
