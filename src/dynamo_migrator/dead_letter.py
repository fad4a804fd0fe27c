"""
Local JSON persistence for dead-lettered write batches.

Requests are stored in DynamoDB's attribute-value format (the same shape
BatchWriteItem takes), with binary values base64-encoded as in DynamoDB's
JSON protocol. Number precision, sets and binary types survive a save and
load unchanged, so a replay writes back exactly what failed.
"""

import base64
import json
import logging
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from ulid import ULID

from .models import DeadLetterEntry, WriteRequest
from .repository import deserialize_request, serialize_request

logger = logging.getLogger(__name__)

FILE_PREFIX = "migration.dlq."


def dead_letter_path(directory: Path | str | None = None) -> Path:
    """Unique file path for a new dead-letter file.

    ULIDs sort by creation time, so files from successive runs list in order.
    """
    return Path(directory or ".") / f"{FILE_PREFIX}{ULID()}.json"


def _encode_binary(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _decode_binary(value: str) -> bytes:
    return base64.b64decode(value)


def _convert_binary(attribute: dict[str, Any], convert: Callable[[Any], Any]) -> dict[str, Any]:
    """Apply `convert` to every B and BS value of one attribute value."""
    if "B" in attribute:
        return {"B": convert(attribute["B"])}
    if "BS" in attribute:
        return {"BS": [convert(v) for v in attribute["BS"]]}
    if "M" in attribute:
        return {"M": {k: _convert_binary(v, convert) for k, v in attribute["M"].items()}}
    if "L" in attribute:
        return {"L": [_convert_binary(v, convert) for v in attribute["L"]]}
    return attribute


def _convert_request(request: dict[str, Any], convert: Callable[[Any], Any]) -> dict[str, Any]:
    ((kind, body),) = request.items()
    ((field, attributes),) = body.items()
    return {
        kind: {field: {name: _convert_binary(v, convert) for name, v in attributes.items()}}
    }


def encode_request(request: WriteRequest) -> dict[str, Any]:
    """Write request to its JSON-safe wire form."""
    return _convert_request(serialize_request(request), _encode_binary)


def decode_request(data: dict[str, Any]) -> WriteRequest:
    """Inverse of `encode_request`."""
    return deserialize_request(_convert_request(data, _decode_binary))


def save_dead_letters(
    entries: Sequence[DeadLetterEntry],
    directory: Path | str | None = None,
) -> Path:
    """
    Write `entries` to a new JSON file.

    Args:
        entries: Dead-letter entries to persist
        directory: Target directory (default: current working directory)

    Returns:
        Path of the written file
    """
    path = dead_letter_path(directory)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = []
    for entry in entries:
        data = entry.to_dict()
        data["requests"] = [encode_request(r) for r in entry.requests]
        payload.append(data)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.warning("Wrote %d failed batches to '%s'", len(entries), path)
    return path


def load_dead_letters(path: Path | str) -> list[DeadLetterEntry]:
    """Read a dead-letter file written by `save_dead_letters`."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"Dead-letter file {path} does not contain a list of entries")
    return [
        DeadLetterEntry.from_dict(
            {**entry, "requests": [decode_request(r) for r in entry["requests"]]}
        )
        for entry in data
    ]
