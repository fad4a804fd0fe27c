"""Exceptions for dynamo-migrator."""

from typing import Any

# ---------------------------------------------------------------------------
# Base Exception
# ---------------------------------------------------------------------------


class DynamoMigratorError(Exception):
    """
    Base exception for all dynamo-migrator errors.

    All exceptions raised by this library inherit from this class,
    allowing callers to catch all library-specific errors with a single
    except clause. Errors raised by caller-supplied filter, transform or
    batch handler callbacks are never wrapped and propagate as-is.
    """

    pass


# ---------------------------------------------------------------------------
# Category Exceptions
# ---------------------------------------------------------------------------


class ValidationError(DynamoMigratorError):
    """Raised when a migration is configured incorrectly."""

    pass


class MigrationError(DynamoMigratorError):
    """
    Base exception for failures while running a migration.

    This includes the pre-flight capacity check and errors talking to
    DynamoDB.
    """

    pass


# ---------------------------------------------------------------------------
# Migration Exceptions
# ---------------------------------------------------------------------------


class PreflightError(MigrationError):
    """
    Raised when a table fails the pre-flight capacity check.

    Rewriting every item of a PROVISIONED table can drive it into
    sustained throttling, so migrations refuse to start unless forced.

    Attributes:
        table_name: The table that was checked
        billing_mode: The billing mode reported for the table
    """

    def __init__(self, table_name: str, billing_mode: str) -> None:
        self.table_name = table_name
        self.billing_mode = billing_mode
        super().__init__(
            f"Table '{table_name}' uses {billing_mode} billing mode. "
            "Migrating a table with fixed capacity is not recommended; "
            "pass force=True (or --force) to migrate anyway."
        )


class TransportError(MigrationError):
    """
    Raised when a call to DynamoDB fails.

    Failed reads abort the migration. Failed batch writes are recorded as
    dead-letter entries instead of being raised to the caller.

    Attributes:
        cause: The underlying exception, if any
        table_name: The DynamoDB table that was being accessed
        operation: The DynamoDB operation that failed (e.g. "Scan")
    """

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        *,
        table_name: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.cause = cause
        self.table_name = table_name
        self.operation = operation
        super().__init__(self._format_message(message))

    def _format_message(self, message: str) -> str:
        parts = [message]
        context = []
        if self.table_name:
            context.append(f"table={self.table_name}")
        if self.operation:
            context.append(f"operation={self.operation}")
        if context:
            parts.append(f"[{', '.join(context)}]")
        return " ".join(parts)

    @property
    def error_code(self) -> str | None:
        """AWS error code of the underlying ClientError, if there was one."""
        response: Any = getattr(self.cause, "response", None)
        if isinstance(response, dict):
            return response.get("Error", {}).get("Code")
        return None


class TableNotFoundError(TransportError):
    """Raised when the table being migrated or written to does not exist."""

    def __init__(
        self,
        table_name: str,
        cause: Exception | None = None,
        *,
        operation: str | None = None,
    ) -> None:
        super().__init__(
            f"Table not found: {table_name}",
            cause,
            table_name=table_name,
            operation=operation,
        )


class UnprocessedItemsSignal(MigrationError):  # noqa: N818
    """
    Raised inside a batch write attempt when DynamoDB returns unprocessed items.

    Used only to drive the retry loop of the batch writer, which narrows the
    next attempt to the unprocessed requests. It is never raised to callers.

    Attributes:
        table_name: The destination table
        requests: The write requests DynamoDB declined to apply
    """

    def __init__(self, table_name: str, requests: list[dict[str, Any]]) -> None:
        self.table_name = table_name
        self.requests = requests
        super().__init__(f"{len(requests)} unprocessed items for {table_name}, retrying")
