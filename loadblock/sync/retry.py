import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from loadblock.config import settings
from loadblock.errors import StorageFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Timeout + retry for ledger and document-store calls.

    Each attempt is bounded by ``timeout_seconds``; a timeout becomes a
    retriable ``StorageFailure``. Only retriable ``StorageFailure`` errors are
    retried, with exponential backoff plus jitter. Domain errors pass
    straight through.

    Retrying a timed-out call is safe because every store call it wraps is
    idempotent (content hash for documents, (record, sequence) for the ledger).
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        base_delay_seconds: Optional[float] = None,
        max_delay_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        jitter_factor: float = 0.5,
    ):
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.STORAGE_RETRY_ATTEMPTS)
        self.base_delay_seconds = (
            base_delay_seconds if base_delay_seconds is not None else settings.STORAGE_RETRY_BASE_DELAY_SECONDS
        )
        self.max_delay_seconds = (
            max_delay_seconds if max_delay_seconds is not None else settings.STORAGE_RETRY_MAX_DELAY_SECONDS
        )
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.STORAGE_TIMEOUT_SECONDS
        self.jitter_factor = jitter_factor

    def _delay(self, attempt: int) -> float:
        exp_delay = self.base_delay_seconds * (2 ** (attempt - 1))
        jitter = random.uniform(0, self.jitter_factor * exp_delay)
        return min(exp_delay + jitter, self.max_delay_seconds)

    async def call(self, store: str, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        last_error: Optional[StorageFailure] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(func(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                last_error = StorageFailure(store, operation, f"timed out after {self.timeout_seconds}s")
            except StorageFailure as e:
                if not e.retriable:
                    raise
                last_error = e

            if attempt < self.max_attempts:
                delay = self._delay(attempt)
                logger.warning(
                    f"{store} {operation} attempt {attempt}/{self.max_attempts} failed "
                    f"({last_error}); retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        logger.error(f"{store} {operation} failed after {self.max_attempts} attempts: {last_error}")
        raise last_error
