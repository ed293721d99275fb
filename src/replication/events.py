"""
Realtime change events.

A notification from the source is decoded into a ChangeEvent carrying one of
three change types and the row it applies to.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional, Union

from .registry import TableSpec

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class PayloadError(ValueError):
    """Raised when a notification payload cannot be turned into an event."""

    pass


@dataclass
class ChangeEvent:
    """
    A row-level change received on the realtime path.

    For DELETE, `row` is the old row; otherwise it is the new row.
    """

    table: TableSpec
    change_type: ChangeType
    row: Row
    source: str = "realtime"
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_delete(self) -> bool:
        return self.change_type is ChangeType.DELETE

    def primary_key(self) -> Row:
        """Primary-key fields of the row; raises MissingPrimaryKeyError."""
        return self.table.key_for(self.row)


def parse_notification(table: TableSpec, payload: Union[str, bytes, dict]) -> ChangeEvent:
    """
    Decode a `{eventType, new?, old?}` notification payload.

    Raises:
        PayloadError: If the payload is not JSON, has an unknown event type or
            lacks the row for its event type
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise PayloadError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise PayloadError(f"Payload must be an object, got {type(payload).__name__}")

    raw_type = payload.get("eventType") or payload.get("type")
    try:
        change_type = ChangeType(str(raw_type).upper())
    except ValueError:
        raise PayloadError(f"Unknown event type: {raw_type!r}")

    row: Optional[Row] = payload.get("old") if change_type is ChangeType.DELETE else payload.get("new")
    if not isinstance(row, dict) or not row:
        raise PayloadError(f"{change_type.value} payload missing row data")

    return ChangeEvent(table=table, change_type=change_type, row=row)
