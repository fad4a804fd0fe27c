"""Core models for dynamo-migrator."""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .exceptions import TransportError, ValidationError

Item = dict[str, Any]
Cursor = dict[str, Any]
WriteRequest = dict[str, Any]
Counters = dict[str, int]
LogFn = Callable[[str], None]

FilterCallback = Callable[[Item, Counters, LogFn], bool | Awaitable[bool]]
TransformCallback = Callable[[Item, Counters, LogFn], Item | Awaitable[Item]]
WriteFn = Callable[..., Awaitable[list["DeadLetterEntry"]]]
BatchCallback = Callable[[list[Item], Counters, LogFn, WriteFn], Awaitable[None] | None]

# Counters every run maintains
PAGES = "pages"
TOTAL_ITEMS = "total_items"
MIGRATED_ITEMS = "migrated_items"
BUILTIN_COUNTERS = (PAGES, TOTAL_ITEMS, MIGRATED_ITEMS)


class Mode(Enum):
    """How selected items are handed to the caller."""

    STREAM = "stream"  # transform each item, the engine writes the page
    BATCH = "batch"  # the batch handler gets the page and does its own writes


def select_all(item: Item, counters: Counters, log: LogFn) -> bool:  # noqa: ARG001
    """Default filter: migrate every item."""
    return True


def put_request(item: Item) -> WriteRequest:
    """Wrap an item as a BatchWriteItem PutRequest."""
    return {"PutRequest": {"Item": item}}


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for one migration run.

    Attributes:
        table_name: Table to scan (and, in stream mode, to write back to)
        filter_item: Predicate choosing which items to migrate
        transform: Per-item transform, required in stream mode
        batch_handler: Per-page handler, required in batch mode. It receives
            the selected items, the counters, a log function and a write
            function, and is responsible for all writes. Sync handlers may
            call write without awaiting it; every write finishes before the
            next page is read.
        mode: Mode.STREAM (default) or Mode.BATCH; strings are accepted
        scan_delay_ms: Delay before every page read
        write_delay_ms: Delay before every batch write
        custom_counters: Extra counter names initialised to zero
        save_dead_letters: Write failed batches to a JSON file at the end
        quiet: Suppress progress and summary logging
        force: Migrate even if the table is not PAY_PER_REQUEST
        start_delay_ms: Grace period after printing settings, before scanning
        start_cursor: Resume scanning from a previously saved cursor
        dead_letter_dir: Directory for the dead-letter file (default: cwd)
    """

    table_name: str
    filter_item: FilterCallback = select_all
    transform: TransformCallback | None = None
    batch_handler: BatchCallback | None = None
    mode: Mode = Mode.STREAM
    scan_delay_ms: int = 0
    write_delay_ms: int = 0
    custom_counters: Sequence[str] = ()
    save_dead_letters: bool = True
    quiet: bool = False
    force: bool = False
    start_delay_ms: int = 0
    start_cursor: Cursor | None = None
    dead_letter_dir: Path | None = None

    def __post_init__(self) -> None:
        if not self.table_name:
            raise ValidationError("table_name is required")

        mode = self.mode
        if isinstance(mode, str):
            mode = mode.lower()
        try:
            mode = Mode(mode)
        except ValueError:
            raise ValidationError(
                f"Invalid mode {self.mode!r}, expected one of: "
                f"{', '.join(m.value for m in Mode)}"
            ) from None
        object.__setattr__(self, "mode", mode)
        object.__setattr__(self, "custom_counters", tuple(self.custom_counters))

        for name in ("scan_delay_ms", "write_delay_ms", "start_delay_ms"):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must be >= 0")

        if mode is Mode.STREAM and self.transform is None:
            raise ValidationError("transform is required in stream mode")
        if mode is Mode.BATCH and self.batch_handler is None:
            raise ValidationError("batch_handler is required in batch mode")

        for counter in self.custom_counters:
            if counter in BUILTIN_COUNTERS:
                raise ValidationError(f"Custom counter {counter!r} shadows a built-in counter")

    def new_counters(self) -> Counters:
        """Fresh counters for a run: built-ins plus custom counters, all zero."""
        counters = dict.fromkeys(BUILTIN_COUNTERS, 0)
        counters.update(dict.fromkeys(self.custom_counters, 0))
        return counters

    def settings(self) -> dict[str, Any]:
        """Printable run settings (callbacks omitted)."""
        return {
            "table_name": self.table_name,
            "mode": self.mode.value,
            "scan_delay_ms": self.scan_delay_ms,
            "write_delay_ms": self.write_delay_ms,
            "custom_counters": list(self.custom_counters),
            "save_dead_letters": self.save_dead_letters,
            "force": self.force,
            "resuming": self.start_cursor is not None,
        }


@dataclass(frozen=True)
class Page:
    """One bounded read of the table."""

    items: list[Item]
    cursor: Cursor | None  # None: no more pages
    consumed_capacity: float = 0.0

    @property
    def is_last(self) -> bool:
        return self.cursor is None


@dataclass
class DeadLetterEntry:
    """
    A batch of write requests that failed after all retry attempts.

    Attributes:
        table_name: Destination table of the batch
        requests: Write requests outstanding when the batch gave up
        error: The terminal error
    """

    table_name: str
    requests: list[WriteRequest]
    error: Exception

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict form of the entry; requests keep their Python values."""
        error: dict[str, Any] = {
            "type": type(self.error).__name__,
            "message": str(self.error),
        }
        code = getattr(self.error, "error_code", None)
        if code:
            error["code"] = code
        return {
            "table_name": self.table_name,
            "requests": self.requests,
            "error": error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeadLetterEntry":
        """Rebuild an entry from `to_dict` output.

        The original exception is not recoverable; it is represented by a
        TransportError carrying the recorded type and message.
        """
        error = data.get("error") or {}
        message = f"{error.get('type', 'Error')}: {error.get('message', '')}"
        return cls(
            table_name=data["table_name"],
            requests=list(data["requests"]),
            error=TransportError(message, table_name=data["table_name"]),
        )


@dataclass
class MigrationResult:
    """Outcome of a completed migration run."""

    counters: Counters
    dead_letters: list[DeadLetterEntry] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    dead_letter_path: Path | None = None
    custom_counters: tuple[str, ...] = ()

    @property
    def pages(self) -> int:
        return self.counters[PAGES]

    @property
    def total_items(self) -> int:
        return self.counters[TOTAL_ITEMS]

    @property
    def migrated_items(self) -> int:
        return self.counters[MIGRATED_ITEMS]

    @property
    def filtered_out(self) -> int:
        """Items read but not selected for migration."""
        return self.total_items - self.migrated_items

    @property
    def failed_batches(self) -> int:
        return len(self.dead_letters)

    def summary_lines(self) -> list[str]:
        """Human-readable run summary."""
        lines = [
            "* Finished migration *",
            f"Failed batches      : {self.failed_batches}",
            f"Total batches       : {self.pages}",
            f"Total items scanned : {self.total_items}",
            f"Total items migrated: {self.migrated_items}",
            f"Items filtered out  : {self.filtered_out}",
            f"Time spent          : {self.elapsed_seconds:.3f}s",
        ]
        if self.dead_letter_path is not None:
            lines.append(f"Dead letters        : {self.dead_letter_path}")
        if self.custom_counters:
            lines.append("* Custom Counts *")
            lines.extend(f'"{name}": {self.counters[name]}' for name in self.custom_counters)
        return lines
