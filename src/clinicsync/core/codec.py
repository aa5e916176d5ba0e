"""JSON encoding helpers shared by the local store and the wire protocol.

Two encodings coexist:

- Local: ``datetime`` values become ISO-8601 strings so that SQLite
  expression indexes compare them lexicographically. Tables declare which
  fields hold dates and the store revives them on read.
- Wire: ``datetime`` values travel as ``{"__timestamp__": "<iso>"}`` and are
  decoded into ``RemoteTimestamp`` objects, the provider-native timestamp type
  that the pull engine converts back to ``datetime``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

TIMESTAMP_TAG = "__timestamp__"


@dataclass(frozen=True)
class RemoteTimestamp:
    """Timestamp value as stored by the remote store."""

    iso: str

    @classmethod
    def from_datetime(cls, value: datetime) -> RemoteTimestamp:
        return cls(value.isoformat())

    def to_datetime(self) -> datetime:
        """Convert to a local ``datetime``."""
        return datetime.fromisoformat(self.iso.replace("Z", "+00:00"))


def _local_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, RemoteTimestamp):
        return value.iso
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps_local(document: dict[str, Any]) -> str:
    """Serialize a document for local storage."""
    return json.dumps(document, default=_local_default, separators=(",", ":"))


def loads_local(text: str, date_fields: tuple[str, ...] = ()) -> dict[str, Any]:
    """Deserialize a stored document, reviving the given date fields."""
    document: dict[str, Any] = json.loads(text)
    for name in date_fields:
        value = document.get(name)
        if isinstance(value, str):
            try:
                document[name] = datetime.fromisoformat(value)
            except ValueError:
                # Not a timestamp (free-text date such as "12/04/2024"), keep as is
                pass
    return document


def to_index_value(value: Any) -> Any:
    """Convert a query operand to the representation used in indexes."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def encode_wire(value: Any) -> Any:
    """Recursively encode a value for the wire protocol."""
    if isinstance(value, datetime):
        return {TIMESTAMP_TAG: value.isoformat()}
    if isinstance(value, RemoteTimestamp):
        return {TIMESTAMP_TAG: value.iso}
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: encode_wire(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [encode_wire(item) for item in value]
    return value


def decode_wire(value: Any) -> Any:
    """Recursively decode a wire value, producing ``RemoteTimestamp`` objects."""
    if isinstance(value, dict):
        if set(value) == {TIMESTAMP_TAG}:
            return RemoteTimestamp(str(value[TIMESTAMP_TAG]))
        return {key: decode_wire(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_wire(item) for item in value]
    return value


def timestamps_to_datetimes(value: Any) -> Any:
    """Replace every ``RemoteTimestamp`` in a decoded document by a ``datetime``."""
    if isinstance(value, RemoteTimestamp):
        return value.to_datetime()
    if isinstance(value, dict):
        return {key: timestamps_to_datetimes(item) for key, item in value.items()}
    if isinstance(value, list):
        return [timestamps_to_datetimes(item) for item in value]
    return value
