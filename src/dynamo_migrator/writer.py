"""
Throttled, retrying batch writes.

Items are queued and written in batches of 25 (the BatchWriteItem limit),
one batch at a time with a fixed delay before each. Within a batch:

* unprocessed requests returned by DynamoDB are retried with exponential
  backoff, and each retry only resubmits what was left unprocessed
* a batch whose attempts are exhausted becomes a dead-letter entry and the
  writer moves on to the next batch

The writer returns all dead-letter entries for the call; it never raises
for a failed batch.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable

from .exceptions import TransportError, UnprocessedItemsSignal
from .models import DeadLetterEntry, Item, LogFn, WriteRequest, put_request
from .repository_protocol import TableClient
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy, async_retry
from .throttle import sleep_ms

logger = logging.getLogger(__name__)

# BatchWriteItem accepts at most 25 requests per call
BATCH_SIZE = 25


class BatchWriter:
    """Writes items to DynamoDB in throttled batches of 25."""

    def __init__(
        self,
        client: TableClient,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.retry_policy = retry_policy
        self._sleep = sleep

    async def write(
        self,
        destination: str,
        items: Iterable[Item],
        delay_ms: float = 0,
        quiet: bool = False,
    ) -> list[DeadLetterEntry]:
        """
        Put `items` into `destination`.

        Args:
            destination: Table to write to
            items: Items to put, written in order
            delay_ms: Delay before each batch
            quiet: Suppress per-batch logging

        Returns:
            Dead-letter entries for batches that failed permanently
        """
        requests = [put_request(item) for item in items]
        return await self.submit(destination, requests, delay_ms, quiet)

    async def submit(
        self,
        destination: str,
        requests: Iterable[WriteRequest],
        delay_ms: float = 0,
        quiet: bool = False,
    ) -> list[DeadLetterEntry]:
        """Like `write`, for requests that are already wrapped (Put or Delete)."""
        queue: deque[WriteRequest] = deque(requests)
        dead_letters: list[DeadLetterEntry] = []
        count = 0

        while queue:
            log = self._batch_log(count, quiet)
            log(f"... sleeping {delay_ms} ms")
            await sleep_ms(delay_ms)

            batch = [queue.popleft() for _ in range(min(BATCH_SIZE, len(queue)))]
            outstanding = await self._write_batch(destination, batch, log)
            if outstanding is not None:
                dead_letters.append(outstanding)
            count += 1

        return dead_letters

    async def _write_batch(
        self,
        destination: str,
        batch: list[WriteRequest],
        log: LogFn,
    ) -> DeadLetterEntry | None:
        """Write one batch; return a dead-letter entry if it fails for good."""
        requests = batch

        async def _attempt(attempt: int) -> None:
            nonlocal requests
            # attempt starts at 1, only log actual retries
            if attempt > 1:
                log(f"retry {attempt}")

            start = time.perf_counter()
            result = await self.client.batch_write(destination, requests)
            elapsed = time.perf_counter() - start
            log(f"consumed {result.consumed_capacity} WCU in {elapsed:.3f} seconds")

            unprocessed = result.unprocessed.get(destination)
            if unprocessed:
                requests = list(unprocessed)
                log(f"... retrying {len(requests)} unprocessed items")
                raise UnprocessedItemsSignal(destination, requests)

        try:
            await async_retry(_attempt, self.retry_policy, self._sleep)
        except UnprocessedItemsSignal as e:
            error: Exception = TransportError(
                f"{len(requests)} requests still unprocessed after "
                f"{self.retry_policy.max_attempts} attempts",
                e,
                table_name=destination,
                operation="BatchWriteItem",
            )
        except Exception as e:
            error = e
        else:
            return None

        log("DynamoDB error during write")
        log(str(error))
        logger.debug("Batch write to %s failed", destination, exc_info=error)
        return DeadLetterEntry(table_name=destination, requests=list(requests), error=error)

    def _batch_log(self, count: int, quiet: bool) -> LogFn:
        def log(message: str) -> None:
            if not quiet:
                logger.info("  w%d: %s", count, message)

        return log
