"""
Table client protocol for pluggable DynamoDB access.

The migration engine only needs three table operations: a bounded scan, a
batched write and a table description. Anything implementing
``TableClient`` can stand in for the aioboto3-backed ``Repository``, for
example an in-memory table in tests or a client with custom credentials.

Items, cursors and write requests crossing this boundary hold plain Python
values (numbers as ``Decimal``); conversion to the DynamoDB wire format is
the client's job.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .models import Cursor, Item, WriteRequest


@dataclass(frozen=True)
class ScanResult:
    """Raw result of one Scan call."""

    items: list[Item]
    cursor: Cursor | None
    consumed_capacity: float = 0.0


@dataclass(frozen=True)
class BatchWriteResult:
    """Raw result of one BatchWriteItem call."""

    unprocessed: dict[str, list[WriteRequest]] = field(default_factory=dict)
    consumed_capacity: float = 0.0


@runtime_checkable
class TableClient(Protocol):
    """Operations the migration engine performs against DynamoDB."""

    async def scan(
        self,
        table_name: str,
        cursor: Cursor | None = None,
        limit: int = 25,
    ) -> ScanResult:
        """
        Read up to `limit` items starting after `cursor`.

        Raises:
            TransportError: If the scan fails
        """
        ...

    async def batch_write(
        self,
        table_name: str,
        requests: list[WriteRequest],
    ) -> BatchWriteResult:
        """
        Submit up to 25 write requests to `table_name`.

        Raises:
            TransportError: If the call fails
        """
        ...

    async def describe_table(self, table_name: str) -> dict[str, Any]:
        """
        Return the ``Table`` section of DescribeTable.

        Raises:
            TableNotFoundError: If the table does not exist
            TransportError: If the call fails
        """
        ...

    async def close(self) -> None:
        """Release any underlying connections."""
        ...
