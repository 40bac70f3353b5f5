"""In-memory ledger of pending field changes awaiting write-back."""

from __future__ import annotations

import copy
import uuid
from typing import Any, Dict, List

from event_bus import utc_now


FieldChange = Dict[str, Any]

PENDING = "pending"
SYNCED = "synced"
FAILED = "failed"
COALESCED = "coalesced"


def change_key(record_id: Any, field_id: Any) -> str:
    return f"{record_id}:{field_id}"


def make_change(
    record_id: str,
    field_id: str,
    table_id: str,
    old_value: Any,
    new_value: Any,
    field_name: str | None = None,
) -> FieldChange:
    return {
        "change_id": str(uuid.uuid4()),
        "record_id": record_id,
        "field_id": field_id,
        "table_id": table_id,
        "field_name": field_name,
        "old_value": copy.deepcopy(old_value),
        "new_value": copy.deepcopy(new_value),
        "timestamp": utc_now(),
        "sync_status": PENDING,
    }


class ChangeOutbox:
    """One pending change per record/field; newer commits replace older ones."""

    def __init__(self) -> None:
        self._pending: Dict[str, FieldChange] = {}
        self._in_flight: Dict[str, FieldChange] = {}
        self._failed: Dict[str, FieldChange] = {}

    def track(self, change: FieldChange) -> FieldChange | None:
        """Queue a change; returns the pending entry it superseded, if any."""
        key = change_key(change["record_id"], change["field_id"])
        entry = copy.deepcopy(change)
        entry["sync_status"] = PENDING
        previous = self._pending.get(key)
        if previous is not None:
            entry["old_value"] = copy.deepcopy(previous["old_value"])
            previous["sync_status"] = COALESCED
        self._pending[key] = entry
        self._failed.pop(key, None)
        return copy.deepcopy(previous) if previous is not None else None

    def take(self, key: str) -> FieldChange | None:
        entry = self._pending.pop(key, None)
        if entry is None:
            return None
        self._in_flight[entry["change_id"]] = entry
        return copy.deepcopy(entry)

    def mark_synced(self, change_id: str) -> bool:
        return self._in_flight.pop(change_id, None) is not None

    def mark_failed(self, change_id: str, error: str | None = None) -> bool:
        entry = self._in_flight.pop(change_id, None)
        if entry is None:
            return False
        entry["sync_status"] = FAILED
        entry["error"] = error
        self._failed[change_key(entry["record_id"], entry["field_id"])] = entry
        return True

    def discard(self, change_id: str) -> bool:
        """Drop a failed or still-pending change by id."""
        for bucket in (self._failed, self._pending):
            for key, entry in list(bucket.items()):
                if entry["change_id"] == change_id:
                    del bucket[key]
                    return True
        return False

    def requeue(self, change_id: str) -> FieldChange | None:
        """Move a failed change back to pending; None when unknown or superseded."""
        for key, entry in list(self._failed.items()):
            if entry["change_id"] != change_id:
                continue
            del self._failed[key]
            if key in self._pending:
                return None
            entry["sync_status"] = PENDING
            entry.pop("error", None)
            self._pending[key] = entry
            return copy.deepcopy(entry)
        return None

    def pending(self) -> list[FieldChange]:
        return [copy.deepcopy(c) for c in list(self._pending.values()) + list(self._in_flight.values())]

    def failed(self) -> list[FieldChange]:
        return [copy.deepcopy(c) for c in self._failed.values()]

    def has_pending(self, key: str) -> bool:
        return key in self._pending

    def clear(self) -> None:
        self._pending.clear()
        self._in_flight.clear()
        self._failed.clear()
