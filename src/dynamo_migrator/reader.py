"""Bounded page reads from a DynamoDB table."""

import logging
import time

from .models import Cursor, Page
from .repository_protocol import TableClient
from .retry import RetryPolicy, async_retry

logger = logging.getLogger(__name__)

# Scans are limited to 25 items to keep consumed read capacity per call low
# and to match the BatchWriteItem limit on the write side.
PAGE_SIZE = 25


class PageReader:
    """
    Reads one table page at a time.

    The reader does not retry unless given a retry policy. Whatever error
    the last attempt raised (normally a TransportError) is propagated and
    ends the migration.
    """

    def __init__(
        self,
        client: TableClient,
        table_name: str,
        page_size: int = PAGE_SIZE,
        retry_policy: RetryPolicy | None = None,
        quiet: bool = False,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.client = client
        self.table_name = table_name
        self.page_size = page_size
        self.retry_policy = retry_policy
        self.quiet = quiet

    async def read(self, cursor: Cursor | None = None) -> Page:
        """
        Read the page that starts after `cursor`.

        Args:
            cursor: The cursor returned with the previous page, verbatim
                (None: start of table)

        Returns:
            The page; ``page.cursor`` is None once the table is exhausted
        """

        async def _scan(attempt: int) -> Page:
            if attempt > 1 and not self.quiet:
                logger.info("  s: scan retry %d", attempt)
            start = time.perf_counter()
            result = await self.client.scan(self.table_name, cursor, self.page_size)
            elapsed = time.perf_counter() - start
            if not self.quiet:
                logger.info("  s: scan consumed %s RCU", result.consumed_capacity)
                logger.info("  s: scanned %d items in %.3f seconds", len(result.items), elapsed)
            return Page(
                items=result.items,
                cursor=result.cursor,
                consumed_capacity=result.consumed_capacity,
            )

        if self.retry_policy is None:
            return await _scan(1)
        return await async_retry(_scan, self.retry_policy)
