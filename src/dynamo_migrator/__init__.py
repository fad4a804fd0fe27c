"""
dynamo-migrator: online, throttled rewrites of DynamoDB tables.

This library migrates every item of a table in place with:
- Bounded page scans (25 items) with a configurable delay between pages
- Per-item transforms (stream mode) or per-page handlers (batch mode)
- Batched writes that retry unprocessed items with exponential backoff
- Dead-letter capture of batches that fail permanently
- A pre-flight guard against rewriting PROVISIONED tables

Example (stream mode):
    from dynamo_migrator import MigrationConfig, Migrator

    def transform(item, counters, log):
        if item["grade"] > 95:
            counters["overachievers"] += 1
            log("we found an overachiever!")
        return {**item, "grade": 100, "qualified": True}

    async with Migrator(region="us-east-1") as migrator:
        result = await migrator.run(
            MigrationConfig(
                table_name="students",
                filter_item=lambda item, counters, log: item["grade"] > 80,
                transform=transform,
                custom_counters=["overachievers"],
            )
        )

Example (batch mode, fan-out to a second table):
    async def handle_batch(items, counters, log, write):
        await write("students", items)
        lookups = [{**item, "key": f"lookup-{item['id']}"} for item in items]
        counters["lookups"] += len(lookups)
        await write("student-lookups", lookups)

    config = MigrationConfig(
        table_name="students",
        mode="batch",
        batch_handler=handle_batch,
        custom_counters=["lookups"],
    )
"""

from .exceptions import (
    DynamoMigratorError,
    MigrationError,
    PreflightError,
    TableNotFoundError,
    TransportError,
    UnprocessedItemsSignal,
    ValidationError,
)
from .migrator import Migrator, SyncMigrator, migrate
from .models import (
    MIGRATED_ITEMS,
    PAGES,
    TOTAL_ITEMS,
    DeadLetterEntry,
    MigrationConfig,
    MigrationResult,
    Mode,
    Page,
)
from .reader import PAGE_SIZE, PageReader
from .repository import Repository
from .repository_protocol import BatchWriteResult, ScanResult, TableClient
from .retry import RetryPolicy, async_retry
from .writer import BATCH_SIZE, BatchWriter

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Main classes
    "Migrator",
    "SyncMigrator",
    "migrate",
    "Repository",
    "TableClient",
    "PageReader",
    "BatchWriter",
    # Models
    "MigrationConfig",
    "MigrationResult",
    "Mode",
    "Page",
    "DeadLetterEntry",
    "ScanResult",
    "BatchWriteResult",
    "RetryPolicy",
    "async_retry",
    # Constants
    "PAGE_SIZE",
    "BATCH_SIZE",
    "PAGES",
    "TOTAL_ITEMS",
    "MIGRATED_ITEMS",
    # Exceptions - Base
    "DynamoMigratorError",
    # Exceptions - Categories
    "MigrationError",
    "ValidationError",
    # Exceptions - Migration
    "PreflightError",
    "TransportError",
    "TableNotFoundError",
    "UnprocessedItemsSignal",
]
