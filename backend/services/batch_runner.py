"""Bounded-concurrency batch runner for rate-limited provider calls."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from config import BRIEF_BATCH_SIZE, BRIEF_BATCH_DELAY_SECONDS
from models.errors import ProviderClientError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchOutcome(Generic[T, R]):
    """Results of the items that succeeded (input order) and the items that failed."""
    succeeded: List[R] = field(default_factory=list)
    failed: List[Tuple[T, Exception]] = field(default_factory=list)
    cancelled: bool = False


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, ProviderClientError):
        return error.retryable
    return isinstance(error, asyncio.TimeoutError)


async def _run_one(
    item: T,
    worker: Callable[[T], Awaitable[R]],
    item_timeout: Optional[float],
    max_retries: int,
    retry_base_delay: float
) -> R:
    attempt = 0
    while True:
        try:
            if item_timeout is None:
                return await worker(item)
            return await asyncio.wait_for(worker(item), timeout=item_timeout)
        except Exception as e:
            if attempt >= max_retries or not _is_retryable(e):
                raise
            delay = retry_base_delay * (2 ** attempt)
            attempt += 1
            logger.warning(f"Retryable failure ({e}), retry {attempt}/{max_retries} in {delay:.1f}s")
            await asyncio.sleep(delay)


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int = BRIEF_BATCH_SIZE,
    delay_seconds: float = BRIEF_BATCH_DELAY_SECONDS,
    item_timeout: Optional[float] = None,
    max_retries: int = 0,
    retry_base_delay: float = 1.0,
    cancel_event: Optional[asyncio.Event] = None
) -> BatchOutcome[T, R]:
    """
    Run worker over items, batch_size at a time.

    Items within a batch run concurrently; the whole batch is awaited, then
    the runner sleeps delay_seconds before starting the next batch (no sleep
    after the last). A failing item is logged and dropped and never fails
    the batch. Retryable provider errors and item timeouts are retried up to
    max_retries times with exponential backoff.

    Args:
        items: Inputs, processed in order
        worker: Coroutine function called once per item
        batch_size: Max concurrent items
        delay_seconds: Pause between batches
        item_timeout: Per-attempt deadline in seconds (None for no deadline)
        max_retries: Extra attempts for retryable failures
        retry_base_delay: First backoff delay in seconds
        cancel_event: When set, no further batch is started

    Returns:
        BatchOutcome with successful results in input order and the failures
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    outcome: BatchOutcome[T, R] = BatchOutcome()
    total_batches = (len(items) + batch_size - 1) // batch_size

    for batch_number, start in enumerate(range(0, len(items), batch_size), start=1):
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Batch run cancelled before batch {batch_number}/{total_batches}")
            outcome.cancelled = True
            return outcome

        batch = items[start:start + batch_size]
        batch_start = time.time()
        results = await asyncio.gather(
            *(_run_one(item, worker, item_timeout, max_retries, retry_base_delay) for item in batch),
            return_exceptions=True
        )

        for item, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.warning(f"Batch item failed and was dropped: {item!r}: {result}")
                outcome.failed.append((item, result))
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome.succeeded.append(result)

        logger.debug(
            f"Batch {batch_number}/{total_batches} finished in {time.time() - batch_start:.2f}s "
            f"({len(batch)} items)"
        )

        if batch_number < total_batches and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

    return outcome
