"""
Retry and circuit breaking for ledger calls.

Only retryable errors (ConnectivityError, ReconstructionNotReady, ProofError)
are retried. Ledger rejections propagate on the first occurrence.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from utils.errors import ConnectivityError, ElectionError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class CircuitBreaker:
    """Circuit breaker for ledger connectivity failures"""

    def __init__(self, failure_threshold=5, recovery_timeout=60, clock=time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self.failure_count = 0
        self.last_failure_time = None
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def record_failure(self):
        """Record a failure and update state"""
        self.failure_count += 1
        self.last_failure_time = self.clock()

        if self.state == "HALF_OPEN" or self.failure_count >= self.failure_threshold:
            self.state = "OPEN"
            logger.warning(
                f"Circuit breaker opened after {self.failure_count} failures")

    def record_success(self):
        """Record a success and reset if appropriate"""
        if self.state == "HALF_OPEN":
            self.state = "CLOSED"
            self.failure_count = 0
            logger.info("Circuit breaker closed after successful operation")
        elif self.state == "CLOSED":
            self.failure_count = max(0, self.failure_count - 1)

    def can_attempt(self) -> bool:
        """Check if operation can be attempted"""
        if self.state == "CLOSED":
            return True
        elif self.state == "OPEN":
            if self.clock() - self.last_failure_time > self.recovery_timeout:
                self.state = "HALF_OPEN"
                return True
            return False
        elif self.state == "HALF_OPEN":
            return True
        return False

    async def call(self, operation: Callable[[], Awaitable[T]], name: str = "ledger call") -> T:
        """Run operation, counting ConnectivityError as a failure"""
        if not self.can_attempt():
            raise ConnectivityError("circuit breaker is open", operation=name)
        try:
            result = await operation()
        except ConnectivityError:
            self.record_failure()
            raise
        self.record_success()
        return result


async def with_retry(operation: Callable[[], Awaitable[T]], *, attempts: int = 3,
                     backoff: float = 0.5, name: str = "operation",
                     retry_on: Tuple[Type[ElectionError], ...] = (ConnectivityError,),
                     sleep: Optional[Callable[[float], Awaitable[None]]] = None) -> T:
    """
    Await operation() up to `attempts` times with exponential backoff.

    Errors outside retry_on propagate immediately. The last retryable error
    is re-raised once the attempts are exhausted.
    """
    sleep = sleep or asyncio.sleep
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt == attempts - 1:
                logger.error(f"{name} failed after {attempts} attempts: {e}")
                raise
            delay = backoff * (2 ** attempt)
            logger.warning(f"{name} attempt {attempt + 1}/{attempts} failed: {e}; "
                           f"retrying in {delay:.2f}s")
            await sleep(delay)
