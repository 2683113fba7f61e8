"""Analytics Aggregator — false-event detection metrics over a time range.

Metrics
───────
  total_events
      Events whose timestamp falls inside the range (inclusive bounds).

  flagged_events / false_positive_rate
      Events in range classified ``would_mark_false``; rate is a
      percentage of ``total_events``.

  accuracy_rate
      Percentage of flagged events that are confirmed false
      (``event.false_event``).

  top_rules
      Per rule: how many in-range events it triggered on, and the share of
      those where ``event.false_event == would_mark_false``.  ``efficiency``
      is the share of all confirmed-false events in range that the rule
      triggered on.  Ranked by trigger count (ties by rule id), first
      ``top_n`` kept.

  trend
      One point per UTC calendar day of the range, zero-filled, limited to
      the last ``max_trend_days`` days.

  event_type_breakdown
      Every known PQ event type plus any other type observed in range.

``summarize`` never mutates its inputs; it builds its own DataFrames.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import pandas as pd

from src.contracts.enums import PQEventType
from src.contracts.event import PQEvent
from src.contracts.results import ClassificationResult
from src.contracts.rule import Rule
from src.shared.errors import ValidationError

log = logging.getLogger(__name__)

_PRESETS: dict[str, timedelta] = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}


def _utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt.astimezone(UTC)


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


@dataclass(frozen=True, slots=True)
class TimeRange:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if _utc(self.start) > _utc(self.end):
            raise ValidationError("time range start is after its end")

    @classmethod
    def last(cls, preset: str, now: datetime | None = None) -> TimeRange:
        """Range ending at *now* covering one of ``7d``, ``30d``, ``90d``, ``1y``."""
        if preset not in _PRESETS:
            raise ValidationError(
                f"unknown time range '{preset}' (expected one of: {', '.join(_PRESETS)})"
            )
        end = _utc(now or datetime.now(UTC))
        return cls(start=end - _PRESETS[preset], end=end)


@dataclass(slots=True)
class RulePerformance:
    rule_id: str
    name: str
    triggered: int
    accuracy: float
    efficiency: float = 0.0


@dataclass(slots=True)
class TrendPoint:
    date: str
    total_events: int
    false_positives: int
    rate: float


@dataclass(slots=True)
class TypeBreakdown:
    event_type: str
    total: int
    false_positives: int
    rate: float


@dataclass(slots=True)
class AnalyticsSnapshot:
    """Aggregated rule-performance snapshot for one time range."""

    start: str
    end: str
    total_events: int = 0
    flagged_events: int = 0
    false_positive_rate: float = 0.0
    accuracy_rate: float = 0.0
    rules_triggered: int = 0
    top_rules: list[RulePerformance] = field(default_factory=list)
    trend: list[TrendPoint] = field(default_factory=list)
    event_type_breakdown: list[TypeBreakdown] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _events_frame(events: list[PQEvent], results: list[ClassificationResult]) -> pd.DataFrame:
    flagged = {r.event_id: r.would_mark_false for r in results}
    df = pd.DataFrame(
        [
            {
                "event_id": e.id,
                "ts": e.timestamp,
                "event_type": e.event_type,
                "false_event": bool(e.false_event),
            }
            for e in events
        ],
        columns=["event_id", "ts", "event_type", "false_event"],
    )
    df = df.drop_duplicates(subset="event_id", keep="last")
    df["ts"] = pd.to_datetime(df["ts"], utc=True, errors="coerce")
    df["flagged"] = df["event_id"].map(lambda i: bool(flagged.get(i, False))).astype(bool)
    return df


def _rule_frame(results: list[ClassificationResult], in_range: pd.DataFrame) -> pd.DataFrame:
    truth = dict(zip(in_range["event_id"], in_range["false_event"]))
    rows = [
        {
            "rule_id": rule_id,
            "accurate": truth[r.event_id] == r.would_mark_false,
            "confirmed": bool(truth[r.event_id]),
        }
        for r in results
        if r.event_id in truth
        for rule_id in r.triggered_rule_ids
    ]
    return pd.DataFrame(rows, columns=["rule_id", "accurate", "confirmed"])


def summarize(
    events: list[PQEvent],
    results: list[ClassificationResult],
    rules: list[Rule],
    time_range: TimeRange,
    top_n: int = 5,
    max_trend_days: int = 90,
) -> AnalyticsSnapshot:
    """Compute the analytics snapshot for *time_range*.  Pure function."""
    start = pd.Timestamp(_utc(time_range.start))
    end = pd.Timestamp(_utc(time_range.end))
    snap = AnalyticsSnapshot(start=start.isoformat(), end=end.isoformat())

    df = _events_frame(events, results)
    in_range = df[(df["ts"] >= start) & (df["ts"] <= end)]

    total = len(in_range)
    flagged = int(in_range["flagged"].sum())
    confirmed = int((in_range["flagged"] & in_range["false_event"]).sum())
    snap.total_events = total
    snap.flagged_events = flagged
    snap.false_positive_rate = _pct(flagged, total)
    snap.accuracy_rate = _pct(confirmed, flagged)

    # ── per-rule performance ──────────────────────────────────────────
    names = {r.id: r.name for r in rules}
    rule_df = _rule_frame(results, in_range)
    if not rule_df.empty:
        perf = (
            rule_df.groupby("rule_id")
            .agg(
                triggered=("accurate", "size"),
                accurate=("accurate", "sum"),
                confirmed=("confirmed", "sum"),
            )
            .reset_index()
            .sort_values(["triggered", "rule_id"], ascending=[False, True])
        )
        total_confirmed = int(in_range["false_event"].sum())
        snap.rules_triggered = len(perf)
        snap.top_rules = [
            RulePerformance(
                rule_id=row.rule_id,
                name=names.get(row.rule_id, "Unknown Rule"),
                triggered=int(row.triggered),
                accuracy=_pct(row.accurate, row.triggered),
                efficiency=_pct(row.confirmed, max(total_confirmed, 1)),
            )
            for row in perf.head(top_n).itertuples(index=False)
        ]

    # ── daily trend ───────────────────────────────────────────────────
    days = pd.date_range(start.floor("D"), end.floor("D"), freq="D")[-max_trend_days:]
    days = days.strftime("%Y-%m-%d")
    if total:
        daily = in_range.groupby(in_range["ts"].dt.strftime("%Y-%m-%d")).agg(
            total=("event_id", "size"), fp=("flagged", "sum")
        )
    else:
        daily = pd.DataFrame(columns=["total", "fp"])
    daily = daily.reindex(days, fill_value=0)
    snap.trend = [
        TrendPoint(
            date=day,
            total_events=int(row.total),
            false_positives=int(row.fp),
            rate=_pct(int(row.fp), int(row.total)),
        )
        for day, row in zip(daily.index, daily.itertuples(index=False))
    ]

    # ── per event type ────────────────────────────────────────────────
    known = [t.value for t in PQEventType]
    observed = sorted(set(in_range["event_type"]) - set(known) - {""})
    for etype in known + observed:
        sub = in_range[in_range["event_type"] == etype]
        fp = int(sub["flagged"].sum())
        snap.event_type_breakdown.append(
            TypeBreakdown(event_type=etype, total=len(sub), false_positives=fp, rate=_pct(fp, len(sub)))
        )

    log.info(
        "Analytics %s..%s: %d events, %d flagged (%.2f%%), accuracy %.2f%%",
        start.date(),
        end.date(),
        total,
        flagged,
        snap.false_positive_rate,
        snap.accuracy_rate,
    )
    return snap
