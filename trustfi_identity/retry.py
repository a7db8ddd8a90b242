import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from trustfi_identity.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised by `RetryPolicy.run` when every attempt failed. Chained from the last error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: attempt ``n`` (1-based) waits ``base_delay * 2**(n-1)`` before the next, capped at ``max_delay``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> T:
        sleep = sleep or asyncio.sleep
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                logger.debug(f"{description}: attempt {attempt}/{self.max_attempts}")
                return await operation()
            except self.retry_on as e:
                last_error = e
                logger.warning(f"{description}: attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    delay = self.delay_for(attempt)
                    logger.info(f"{description}: retrying in {delay:.2f}s")
                    await sleep(delay)
        raise RetryExhausted(self.max_attempts, last_error) from last_error
