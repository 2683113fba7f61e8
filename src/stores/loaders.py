"""Event loaders: CSV and JSONL files following the PQ event contract."""

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path

from src.contracts.event import PQEvent

log = logging.getLogger(__name__)


def _usable(ev: PQEvent, where: str) -> bool:
    if not ev.id or not ev.timestamp:
        log.warning("Skipping event at %s: missing id or timestamp", where)
        return False
    return True


def load_events_csv(path: str | Path) -> list[PQEvent]:
    """Load events from a CSV file with a header row."""
    events: list[PQEvent] = []
    with open(path, encoding="utf-8", newline="") as fh:
        reader = csv.DictReader(fh)
        for row_no, row in enumerate(reader, 2):
            ev = PQEvent.from_dict(row)
            if _usable(ev, f"{path}:{row_no}"):
                events.append(ev)
    log.info("Loaded %d events from CSV: %s", len(events), path)
    return events


def load_events_jsonl(path: str | Path) -> list[PQEvent]:
    """Load events from a JSONL (one JSON object per line) file."""
    events: list[PQEvent] = []
    with open(path, encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, 1):
            line = line.strip()
            if not line:
                continue
            try:
                ev = PQEvent.from_dict(json.loads(line))
            except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
                log.warning("Skipping JSONL line %d: %s", line_no, exc)
                continue
            if _usable(ev, f"{path}:{line_no}"):
                events.append(ev)
    log.info("Loaded %d events from JSONL: %s", len(events), path)
    return events


def load_events(path: str | Path) -> list[PQEvent]:
    """Auto-detect format by file extension and load events."""
    p = Path(path)
    if p.suffix in (".jsonl", ".ndjson"):
        return load_events_jsonl(p)
    return load_events_csv(p)
