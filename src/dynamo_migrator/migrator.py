"""Main Migrator implementation."""

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .dead_letter import save_dead_letters
from .exceptions import ValidationError
from .models import (
    MIGRATED_ITEMS,
    PAGES,
    TOTAL_ITEMS,
    Counters,
    Cursor,
    DeadLetterEntry,
    Item,
    LogFn,
    MigrationConfig,
    MigrationResult,
    Mode,
    WriteFn,
)
from .preflight import ensure_allowed
from .reader import PageReader
from .repository import Repository
from .repository_protocol import TableClient
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy
from .throttle import sleep_ms
from .writer import BatchWriter

logger = logging.getLogger(__name__)


async def _resolve(value: Any) -> Any:
    """Await `value` if a callback returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


async def _cancel(futures: list["asyncio.Future[Any]"]) -> None:
    """Cancel `futures` and wait until none of them is still running."""
    for future in futures:
        future.cancel()
    await asyncio.gather(*futures, return_exceptions=True)


@dataclass
class _MigrationRun:
    """Mutable state of a single run."""

    config: MigrationConfig
    counters: Counters
    cursor: Cursor | None = None
    dead_letters: list[DeadLetterEntry] = field(default_factory=list)
    # writes started by the batch handler, drained before the next page
    pending_writes: list["asyncio.Future[list[DeadLetterEntry]]"] = field(default_factory=list)
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def page_log(self) -> LogFn:
        """Log function prefixed with the current page number."""
        page = self.counters[PAGES]
        quiet = self.config.quiet

        def log(message: str) -> None:
            if not quiet:
                logger.info("%d: %s", page, message)

        return log


class Migrator:
    """
    Async migration engine for DynamoDB tables.

    Scans a table 25 items at a time and, for every page:

    - filters items with ``config.filter_item``
    - in stream mode, transforms each selected item and writes the page
      back to the table
    - in batch mode, hands the selected items to ``config.batch_handler``
      along with a write function, and lets it do the writing

    Pages are processed strictly one after another. Batches that cannot be
    written are collected as dead letters instead of failing the run; any
    other error (failed scan, failing callback) aborts the run.

    Example:
        async with Migrator(region="us-east-1") as migrator:
            result = await migrator.run(
                MigrationConfig(
                    table_name="users",
                    filter_item=lambda item, counters, log: "email" in item,
                    transform=lambda item, counters, log: {**item, "verified": False},
                )
            )
    """

    def __init__(
        self,
        region: str | None = None,
        endpoint_url: str | None = None,
        *,
        client: TableClient | None = None,
        read_retry_policy: RetryPolicy | None = None,
        write_retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> None:
        self._client: TableClient = (
            client
            if client is not None
            else Repository(region=region, endpoint_url=endpoint_url)
        )
        self.read_retry_policy = read_retry_policy
        self.writer = BatchWriter(self._client, write_retry_policy)

    @property
    def client(self) -> TableClient:
        return self._client

    async def close(self) -> None:
        """Close the underlying connections."""
        await self._client.close()

    async def __aenter__(self) -> "Migrator":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self, config: MigrationConfig) -> MigrationResult:
        """
        Migrate every item of ``config.table_name``.

        Args:
            config: What to migrate and how

        Returns:
            MigrationResult with the run's counters and dead letters

        Raises:
            PreflightError: If the table is not PAY_PER_REQUEST and not forced
            TransportError: If a page read fails
            ValidationError: If a transform returns None
            Exception: Anything raised by the caller's callbacks, unchanged
        """
        run = _MigrationRun(
            config=config,
            counters=config.new_counters(),
            cursor=config.start_cursor,
        )

        if not config.quiet:
            logger.info("...preparing to run with these settings:")
            logger.info("%s", json.dumps(config.settings(), indent=2))

        await ensure_allowed(self._client, config.table_name, config.force)

        if config.start_delay_ms > 0:
            if not config.quiet:
                logger.info("...waiting %d ms, press Ctrl-C to quit", config.start_delay_ms)
            await sleep_ms(config.start_delay_ms)

        reader = PageReader(
            self._client,
            config.table_name,
            retry_policy=self.read_retry_policy,
            quiet=config.quiet,
        )

        start = time.perf_counter()
        # scan until the table is finished
        while True:
            is_last = await self._migrate_page(run, reader)
            if is_last:
                break
        elapsed = time.perf_counter() - start

        dead_letter_path = None
        if run.dead_letters and config.save_dead_letters:
            dead_letter_path = save_dead_letters(run.dead_letters, config.dead_letter_dir)

        result = MigrationResult(
            counters=run.counters,
            dead_letters=run.dead_letters,
            elapsed_seconds=elapsed,
            dead_letter_path=dead_letter_path,
            custom_counters=tuple(config.custom_counters),
        )
        if not config.quiet:
            for line in result.summary_lines():
                logger.info("%s", line)
        return result

    async def _migrate_page(self, run: _MigrationRun, reader: PageReader) -> bool:
        """Process one page; return True once the table is exhausted."""
        config = run.config
        log = run.page_log()
        log("starting batch!")

        # delay to keep throughput down
        log(f"...sleeping {config.scan_delay_ms} ms")
        await sleep_ms(config.scan_delay_ms)

        log("scanning from table")
        page = await reader.read(run.cursor)
        run.cursor = page.cursor
        run.counters[TOTAL_ITEMS] += len(page.items)

        log("...filtering")
        selected = await self._select(page.items, run, log)
        run.counters[MIGRATED_ITEMS] += len(selected)
        log(f"migrating {len(selected)} items")

        if config.mode is Mode.BATCH:
            assert config.batch_handler is not None
            log("handing control to batch mode callback")
            try:
                await _resolve(
                    config.batch_handler(selected, run.counters, log, self._write_fn(run))
                )
                # a sync handler cannot await its writes, finish them here
                await asyncio.gather(*run.pending_writes)
            except BaseException:
                await _cancel(run.pending_writes)
                raise
            finally:
                run.pending_writes.clear()
        else:
            items = await self._transform(selected, run, log)
            log(f"writing {len(items)} items")
            dead_letters = await self.writer.write(
                config.table_name, items, config.write_delay_ms, config.quiet
            )
            run.dead_letters.extend(dead_letters)
            log("finished writing items")

        log("finished batch!")
        run.counters[PAGES] += 1
        return page.is_last

    async def _select(self, items: list[Item], run: _MigrationRun, log: LogFn) -> list[Item]:
        """Apply the filter to each item, keeping source order."""
        selected = []
        for item in items:
            if await _resolve(run.config.filter_item(item, run.counters, log)):
                selected.append(item)
        return selected

    async def _transform(self, items: list[Item], run: _MigrationRun, log: LogFn) -> list[Item]:
        """Transform each item; async transforms of a page run concurrently."""
        transform = run.config.transform
        assert transform is not None
        results: list[Any] = []
        pending: list[asyncio.Future[Any]] = []
        try:
            for item in items:
                result = transform(item, run.counters, log)
                if inspect.isawaitable(result):
                    result = asyncio.ensure_future(result)
                    pending.append(result)
                results.append(result)
            if pending:
                await asyncio.gather(*pending)
        except BaseException:
            await _cancel(pending)
            raise

        results = [r.result() if isinstance(r, asyncio.Future) else r for r in results]
        if any(r is None for r in results):
            raise ValidationError("transform returned None; it must return the item to write")
        return results

    def _write_fn(self, run: _MigrationRun) -> WriteFn:
        """
        Write function handed to batch handlers, bound to this run.

        Each call starts the write right away and returns an awaitable of its
        dead letters. Writes run one at a time in call order, so a sync
        handler can fire them without awaiting; the page does not finish
        until all of them have.
        """

        async def _write(
            destination: str,
            items: list[Item],
            delay_ms: float,
            quiet: bool,
        ) -> list[DeadLetterEntry]:
            async with run.write_lock:
                dead_letters = await self.writer.write(destination, items, delay_ms, quiet)
            run.dead_letters.extend(dead_letters)
            return dead_letters

        def write(
            destination: str,
            items: Iterable[Item],
            delay_ms: float | None = None,
            quiet: bool | None = None,
        ) -> "asyncio.Future[list[DeadLetterEntry]]":
            future = asyncio.ensure_future(
                _write(
                    destination,
                    list(items),
                    run.config.write_delay_ms if delay_ms is None else delay_ms,
                    run.config.quiet if quiet is None else quiet,
                )
            )
            run.pending_writes.append(future)
            return future

        return write


async def migrate(
    config: MigrationConfig,
    region: str | None = None,
    endpoint_url: str | None = None,
    **kwargs: Any,
) -> MigrationResult:
    """Run a single migration with a fresh Migrator."""
    async with Migrator(region=region, endpoint_url=endpoint_url, **kwargs) as migrator:
        return await migrator.run(config)


class SyncMigrator:
    """
    Synchronous migrator.

    Wraps Migrator, running async operations in an event loop. Callbacks
    may still return awaitables; they run on the wrapper's loop.
    """

    def __init__(
        self,
        region: str | None = None,
        endpoint_url: str | None = None,
        **kwargs: Any,
    ) -> None:
        self._migrator = Migrator(region=region, endpoint_url=endpoint_url, **kwargs)
        self._loop: asyncio.AbstractEventLoop | None = None

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        """Get or create an event loop."""
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.new_event_loop()
        return self._loop

    def _run(self, coro: Any) -> Any:
        """Run a coroutine in the event loop."""
        return self._get_loop().run_until_complete(coro)

    @property
    def client(self) -> TableClient:
        return self._migrator.client

    def run(self, config: MigrationConfig) -> MigrationResult:
        """Migrate every item of ``config.table_name``."""
        result: MigrationResult = self._run(self._migrator.run(config))
        return result

    def close(self) -> None:
        """Close the underlying connections and the event loop."""
        self._run(self._migrator.close())
        if self._loop is not None:
            self._loop.close()
            self._loop = None

    def __enter__(self) -> "SyncMigrator":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
