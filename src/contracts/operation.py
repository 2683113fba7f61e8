"""Store-boundary records: batch updates, audit operations, list filters."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class EventUpdate:
    """Field changes for one event inside an atomic batch.

    ``expect`` holds the field values the engine validated against; the
    store rejects the whole batch with ``ConflictError`` if any of them no
    longer holds at commit time.
    """

    id: str
    fields: dict[str, Any]
    expect: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EventOperation:
    """Audit record for a grouping / ungrouping action."""

    operation_type: str             # group | add_children | ungroup
    event_ids: list[str]
    performed_at: str
    mother_event_id: str | None = None
    performed_by: str = "system"
    description: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EventFilter:
    """Subset selector for ``EventStore.list_events``; empty = everything."""

    start_ts: str | None = None
    end_ts: str | None = None
    substation_ids: list[str] | None = None
    event_types: list[str] | None = None
    ungrouped_only: bool = False
    parent_event_id: str | None = None
