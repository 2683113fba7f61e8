"""PQ Event data-class — the unit of correlation and classification."""

from __future__ import annotations

import csv
import io
import json
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from src.contracts.enums import GroupingType

# CSV column order for event import/export
CSV_COLUMNS: list[str] = [
    "id",
    "timestamp",
    "substation_id",
    "circuit_id",
    "meter_id",
    "event_type",
    "severity",
    "duration_ms",
    "magnitude",
    "remaining_voltage_pct",
    "affected_phases",
    "voltage_level",
    "parent_event_id",
    "is_mother_event",
    "is_child_event",
    "grouping_type",
    "grouped_at",
    "false_event",
    "validated_externally",
]

_BOOL_FIELDS = {"is_mother_event", "is_child_event", "false_event", "validated_externally"}
_FLOAT_FIELDS = {"duration_ms", "magnitude", "remaining_voltage_pct"}
_NULLABLE_STR_FIELDS = {"parent_event_id", "grouped_at"}


def parse_ts(iso: str) -> datetime:
    """Parse ISO-8601 timestamp to an aware UTC datetime.

    ``Z`` and explicit offsets are honoured; a timestamp without an offset
    is taken to be UTC.
    """
    dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_ts(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "t"}


def _to_float(raw: Any) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


@dataclass(slots=True)
class PQEvent:
    """One power-quality event reported by a field meter."""

    # ── identity / descriptive ──
    id: str
    timestamp: str                  # ISO-8601 UTC  e.g. "2026-03-02T10:00:00Z"
    substation_id: str = ""
    circuit_id: str = ""
    meter_id: str = ""
    event_type: str = ""            # voltage_dip | voltage_swell | interruption | ...
    severity: str = "low"
    duration_ms: float | None = None
    magnitude: float | None = None
    remaining_voltage_pct: float | None = None
    affected_phases: list[str] = field(default_factory=list)
    voltage_level: str = ""

    # ── grouping ──
    parent_event_id: str | None = None
    is_mother_event: bool = False
    is_child_event: bool = False
    grouping_type: str = GroupingType.NONE.value
    grouped_at: str | None = None

    # ── classification ──
    false_event: bool = False
    validated_externally: bool = False

    @property
    def is_standalone(self) -> bool:
        return self.parent_event_id is None and not self.is_mother_event

    def dt(self) -> datetime:
        return parse_ts(self.timestamp)

    def copy(self, **changes: Any) -> PQEvent:
        """Return a detached copy (list fields are not shared)."""
        changes.setdefault("affected_phases", list(self.affected_phases))
        return replace(self, **changes)

    # ── serialisation ─────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_csv_row(self) -> str:
        """Return a single CSV line (no trailing newline)."""
        buf = io.StringIO()
        writer = csv.writer(buf)
        row = []
        for c in CSV_COLUMNS:
            val = getattr(self, c)
            if c == "affected_phases":
                val = ";".join(val)
            elif val is None:
                val = ""
            elif isinstance(val, bool):
                val = "true" if val else "false"
            row.append(val)
        writer.writerow(row)
        return buf.getvalue().rstrip("\r\n")

    def to_json(self) -> str:
        """Return compact JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @staticmethod
    def csv_header() -> str:
        return ",".join(CSV_COLUMNS)

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> PQEvent:
        """Build an event from a CSV DictReader row or a JSON object.

        Missing or empty numeric fields become ``None``; the child flag is
        derived from ``parent_event_id`` so the two can never disagree.
        """
        kwargs: dict[str, Any] = {}
        for name in CSV_COLUMNS:
            if name not in row:
                continue
            raw = row[name]
            if name in _BOOL_FIELDS:
                kwargs[name] = _to_bool(raw)
            elif name in _FLOAT_FIELDS:
                kwargs[name] = _to_float(raw)
            elif name == "affected_phases":
                if isinstance(raw, (list, tuple)):
                    kwargs[name] = [str(p) for p in raw if str(p)]
                else:
                    kwargs[name] = [p.strip() for p in str(raw or "").split(";") if p.strip()]
            elif name in _NULLABLE_STR_FIELDS:
                kwargs[name] = str(raw) if raw not in (None, "") else None
            else:
                kwargs[name] = "" if raw is None else str(raw)

        kwargs["id"] = str(row.get("id", ""))
        kwargs["timestamp"] = str(row.get("timestamp", ""))
        kwargs["is_child_event"] = kwargs.get("parent_event_id") is not None
        if not kwargs.get("grouping_type"):
            kwargs["grouping_type"] = GroupingType.NONE.value
        return cls(**kwargs)
