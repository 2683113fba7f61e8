"""Звітування: запис CSV, JSON, TXT."""

from __future__ import annotations

import csv
import io
import json
import logging
from pathlib import Path

from src.contracts.results import (
    ClassificationResult,
    DetectionResult,
    GroupingResult,
    GroupingStatistics,
)
from src.contracts.rule import Rule
from src.engine.analytics import AnalyticsSnapshot
from src.shared.atomic import atomic_write

log = logging.getLogger(__name__)

GROUPS_CSV_COLUMNS = [
    "mother_event_id",
    "child_event_ids",
    "child_count",
    "grouping_type",
    "grouped_at",
    "partition_key",
]

CLASSIFICATIONS_CSV_COLUMNS = [
    "event_id",
    "triggered_rule_ids",
    "would_mark_false",
    "would_hide",
    "requires_review",
    "notify_operator",
]

DETECTIONS_CSV_COLUMNS = [
    "event_id",
    "is_false_positive",
    "confidence",
    "recommended_action",
    "triggered_checks",
    "reasons",
]


def _csv(header: list[str], rows: list[list[object]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buf.getvalue()


# ═══════════════════════════════════════════════════════════════════════════
#  CSV writers
# ═══════════════════════════════════════════════════════════════════════════


def write_groups_csv(groups: list[GroupingResult], path: str | Path) -> None:
    rows = [
        [
            g.mother_event_id,
            ";".join(g.child_event_ids),
            len(g.child_event_ids),
            g.grouping_type,
            g.grouped_at,
            g.partition_key,
        ]
        for g in groups
    ]
    atomic_write(path, _csv(GROUPS_CSV_COLUMNS, rows))
    log.info("Wrote groups → %s (%d rows)", path, len(groups))


def write_classifications_csv(results: list[ClassificationResult], path: str | Path) -> None:
    rows = [
        [
            r.event_id,
            ";".join(r.triggered_rule_ids),
            str(r.would_mark_false).lower(),
            str(r.would_hide).lower(),
            str(r.requires_review).lower(),
            str(r.notify_operator).lower(),
        ]
        for r in results
    ]
    atomic_write(path, _csv(CLASSIFICATIONS_CSV_COLUMNS, rows))
    log.info("Wrote classifications → %s (%d rows)", path, len(results))


def write_detections_csv(detections: list[DetectionResult], path: str | Path) -> None:
    rows = [
        [
            d.event_id,
            str(d.is_false_positive).lower(),
            f"{d.confidence:.2f}",
            d.recommended_action,
            ";".join(d.triggered_checks),
            " | ".join(d.reasons),
        ]
        for d in detections
    ]
    atomic_write(path, _csv(DETECTIONS_CSV_COLUMNS, rows))
    log.info("Wrote detections → %s (%d rows)", path, len(detections))


# ═══════════════════════════════════════════════════════════════════════════
#  JSON / TXT
# ═══════════════════════════════════════════════════════════════════════════


def write_analytics_json(snapshot: AnalyticsSnapshot, path: str | Path) -> None:
    atomic_write(path, json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2) + "\n")
    log.info("Wrote analytics → %s", path)


def write_report_txt(
    snapshot: AnalyticsSnapshot,
    groups: list[GroupingResult],
    rules: list[Rule],
    path: str | Path,
    grouping: GroupingStatistics | None = None,
    detections: list[DetectionResult] | None = None,
) -> None:
    """Генерує текстовий звіт."""
    lines: list[str] = []
    sep = "═" * 72

    lines.append(sep)
    lines.append("  PQ EVENT ENGINE — CORRELATION & FALSE-EVENT REPORT")
    lines.append(sep)
    lines.append(f"  Range: {snapshot.start} .. {snapshot.end}")
    lines.append("")

    lines.append("── Grouping ──")
    manual = sum(1 for g in groups if g.grouping_type == "manual")
    lines.append(f"  Groups formed this run: {len(groups)} (manual={manual}, automatic={len(groups) - manual})")
    lines.append(f"  Events attached as children: {sum(len(g.child_event_ids) for g in groups)}")
    if grouping is not None:
        lines.append(
            f"  Groups in store:        {grouping.total_groups} "
            f"(manual={grouping.manual_groups}, automatic={grouping.automatic_groups})"
        )
        lines.append(f"  Events in groups:       {grouping.total_grouped_events}")
    lines.append("")

    if detections is not None:
        lines.append("── Pattern detector ──")
        fp = [d for d in detections if d.is_false_positive]
        lines.append(f"  Likely false positives: {len(fp)} of {len(detections)}")
        for d in sorted(fp, key=lambda d: (-d.confidence, d.event_id))[:10]:
            lines.append(f"  {d.event_id:<24} {d.confidence:6.2f}%  {d.recommended_action:<12} {','.join(d.triggered_checks)}")
        lines.append("")

    lines.append("── Classification ──")
    lines.append(f"  Events in range:        {snapshot.total_events}")
    lines.append(f"  Flagged as false:       {snapshot.flagged_events}")
    lines.append(f"  False-positive rate:    {snapshot.false_positive_rate:.2f}%")
    lines.append(f"  Accuracy (confirmed):   {snapshot.accuracy_rate:.2f}%")
    lines.append(f"  Distinct rules fired:   {snapshot.rules_triggered}")
    lines.append("")

    lines.append("── Top rules ──")
    if not snapshot.top_rules:
        lines.append("  (no rule triggered)")
    for rp in snapshot.top_rules:
        lines.append(
            f"  {rp.rule_id:<24} {rp.name:<36} {rp.triggered:>6}  "
            f"acc={rp.accuracy:6.2f}%  eff={rp.efficiency:6.2f}%"
        )
    lines.append("")

    lines.append("── By event type ──")
    for tb in snapshot.event_type_breakdown:
        lines.append(f"  {tb.event_type:<16} total={tb.total:<6} flagged={tb.false_positives:<6} {tb.rate:6.2f}%")
    lines.append("")

    lines.append("── Rule statistics ──")
    for r in rules:
        st = r.statistics
        state = "active" if r.is_active else "inactive"
        lines.append(
            f"  {r.id:<24} {state:<8} processed={st.total_processed:<6} "
            f"caught={st.false_positives_caught:<6} accuracy={st.accuracy_rate * 100:6.2f}%"
        )
    lines.append(sep)

    atomic_write(path, "\n".join(lines) + "\n")
    log.info("Wrote report → %s", path)
