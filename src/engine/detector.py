"""Detector — pattern-based false-positive scoring for PQ events.

Independent of user rules: every event is compared with the typical
duration/magnitude envelope of its type and with the events around it,
and a weighted confidence (0..100) that it is a false detection is
computed.

Checks (weight)
───────────────
  duration   (0.20)  far shorter than typical, or over 10× the typical max
  magnitude  (0.15)  far below typical; dips < 5 % and harmonics < 2 %
  frequency  (0.20)  > 20 / > 50 events within ±1 h, or > 5 near-identical
  temporal   (0.10)  inside the maintenance window; isolated interruption
  system     (0.10)  dip / harmonic on a weekend
  physics    (0.10)  magnitude or remaining voltage that cannot be real

Confidence is the weighted mean of the check scores × 100.  An event is a
false positive above 70; the recommended action follows the thresholds
in ``_ACTION_THRESHOLDS``.  A check counts as *triggered* when its score
exceeds 0.5; only triggered checks contribute reasons.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.contracts.enums import DetectionAction, PQEventType
from src.contracts.event import PQEvent
from src.contracts.results import DetectionResult
from src.engine.rules import in_maintenance
from src.shared.config_loader import EngineSettings

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EventPattern:
    """Typical envelope of a PQ event type (duration in ms, magnitude in %)."""

    min_duration: float
    max_duration: float
    min_magnitude: float
    max_magnitude: float


EVENT_PATTERNS: dict[str, EventPattern] = {
    PQEventType.VOLTAGE_DIP.value: EventPattern(100, 5_000, 10, 50),
    PQEventType.VOLTAGE_SWELL.value: EventPattern(100, 3_000, 5, 30),
    PQEventType.INTERRUPTION.value: EventPattern(1_000, 300_000, 80, 100),
    PQEventType.HARMONIC.value: EventPattern(5_000, 3_600_000, 3, 20),
    PQEventType.TRANSIENT.value: EventPattern(1, 100, 100, 2_000),
    PQEventType.FLICKER.value: EventPattern(10_000, 600_000, 0.5, 10),
}

CHECK_WEIGHTS: dict[str, float] = {
    "duration": 0.20,
    "magnitude": 0.15,
    "frequency": 0.20,
    "temporal": 0.10,
    "system": 0.10,
    "physics": 0.10,
}

FALSE_POSITIVE_CONFIDENCE = 70.0
TRIGGER_SCORE = 0.5

_ACTION_THRESHOLDS: list[tuple[float, DetectionAction]] = [
    (90.0, DetectionAction.AUTO_REMOVE),
    (70.0, DetectionAction.FLAG),
    (50.0, DetectionAction.REVIEW),
]

_FREQUENCY_WINDOW = timedelta(hours=1)
_RELATED_WINDOW = timedelta(minutes=5)
_WEEKEND_TYPES = {PQEventType.HARMONIC.value, PQEventType.VOLTAGE_DIP.value}

Check = tuple[float, str | None]


def recommended_action(confidence: float) -> DetectionAction:
    for threshold, action in _ACTION_THRESHOLDS:
        if confidence > threshold:
            return action
    return DetectionAction.IGNORE


def _ratio(typical: float, value: float) -> float:
    return typical / value if value > 0 else float("inf")


# ═══════════════════════════════════════════════════════════════════════════
#  Single-event checks
# ═══════════════════════════════════════════════════════════════════════════


def check_duration(event: PQEvent) -> Check:
    pattern = EVENT_PATTERNS.get(event.event_type)
    dur = event.duration_ms
    if pattern is None or dur is None:
        return 0.0, None

    score, reason = 0.0, None
    if dur < pattern.min_duration:
        factor = _ratio(pattern.min_duration, dur)
        if factor > 10:
            score = 0.9
        elif factor > 2:
            score = 0.6
        if score:
            reason = f"duration {dur:g}ms is far below typical minimum {pattern.min_duration:g}ms"
    if dur > pattern.max_duration * 10:
        score = max(score, 0.7)
        reason = f"duration {dur:g}ms exceeds 10x typical maximum {pattern.max_duration:g}ms"
    return score, reason


def check_magnitude(event: PQEvent) -> Check:
    mag = event.magnitude
    if mag is None:
        return 0.0, None

    score, reason = 0.0, None
    pattern = EVENT_PATTERNS.get(event.event_type)
    if pattern is not None and mag < pattern.min_magnitude:
        factor = _ratio(pattern.min_magnitude, mag)
        if factor > 5:
            score = 0.8
        elif factor > 2:
            score = 0.5
        if score:
            reason = f"magnitude {mag:g}% is far below typical minimum {pattern.min_magnitude:g}%"

    if event.event_type == PQEventType.VOLTAGE_DIP.value and mag < 5:
        score, reason = 0.9, f"voltage dip of {mag:g}% is within normal voltage variation"
    elif event.event_type == PQEventType.HARMONIC.value and mag < 2:
        score, reason = 0.7, f"harmonic distortion of {mag:g}% is below reporting level"
    return score, reason


def check_system(event: PQEvent, ts: datetime) -> Check:
    if ts.weekday() >= 5 and event.event_type in _WEEKEND_TYPES:
        return 0.3, f"{event.event_type} reported on a weekend"
    return 0.0, None


def check_physics(event: PQEvent) -> Check:
    mag = event.magnitude
    if mag is None:
        return 0.0, None

    score, reason = 0.0, None
    if event.event_type == PQEventType.VOLTAGE_DIP.value and mag > 100:
        score, reason = 0.9, f"voltage dip magnitude {mag:g}% exceeds 100%"
    elif event.event_type == PQEventType.INTERRUPTION.value and mag < 50:
        score, reason = 0.7, f"interruption with only {mag:g}% voltage loss"

    remaining = event.remaining_voltage_pct
    if (
        event.event_type == PQEventType.VOLTAGE_DIP.value
        and remaining is not None
        and abs(remaining - (100 - mag)) > 10
    ):
        if score < 0.5:
            reason = f"remaining voltage {remaining:g}% inconsistent with {mag:g}% dip"
        score = max(score, 0.5)
    return score, reason


# ═══════════════════════════════════════════════════════════════════════════
#  Detector with event context
# ═══════════════════════════════════════════════════════════════════════════


class FalseEventDetector:
    """Scores events against their type pattern and the surrounding events.

    *context* is the population used by the frequency and temporal checks
    (typically every event of the batch); the assessed event itself is
    never counted.  Events with unparseable timestamps are left out of the
    context and skip the time-based checks.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        context: list[PQEvent] | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        timed: list[tuple[datetime, PQEvent]] = []
        for ev in context or []:
            try:
                timed.append((ev.dt(), ev))
            except ValueError:
                log.debug("Detector context: skipping %s (bad timestamp %r)", ev.id, ev.timestamp)
        timed.sort(key=lambda pair: (pair[0], pair[1].id))
        self._times = [t for t, _ in timed]
        self._events = [e for _, e in timed]

    def _around(self, ts: datetime, span: timedelta, exclude: str) -> list[PQEvent]:
        lo = bisect.bisect_left(self._times, ts - span)
        hi = bisect.bisect_right(self._times, ts + span)
        return [e for e in self._events[lo:hi] if e.id != exclude]

    def check_frequency(self, event: PQEvent, ts: datetime) -> Check:
        nearby = self._around(ts, _FREQUENCY_WINDOW, event.id)
        score, reason = 0.0, None
        if len(nearby) > 50:
            score = 0.9
        elif len(nearby) > 20:
            score = 0.6
        if score:
            reason = f"{len(nearby)} other events within one hour"

        if event.magnitude is not None and event.duration_ms is not None:
            identical = sum(
                1
                for e in nearby
                if e.event_type == event.event_type
                and e.magnitude is not None
                and e.duration_ms is not None
                and abs(e.magnitude - event.magnitude) < 0.1
                and abs(e.duration_ms - event.duration_ms) < 50
            )
            if identical > 5:
                if score < 0.8:
                    reason = f"{identical} near-identical {event.event_type} events within one hour"
                score = max(score, 0.8)
        return score, reason

    def check_temporal(self, event: PQEvent, ts: datetime) -> Check:
        score, reason = 0.0, None
        if in_maintenance(ts.hour, self.settings):
            score, reason = 0.6, f"occurred during maintenance hours ({ts.hour:02d}:00 UTC)"
        if event.event_type == PQEventType.INTERRUPTION.value:
            related = [
                e
                for e in self._around(ts, _RELATED_WINDOW, event.id)
                if e.substation_id == event.substation_id
            ]
            if not related:
                if score < 0.5:
                    reason = "interruption with no related event at the substation"
                score = max(score, 0.5)
        return score, reason

    def assess(self, event: PQEvent) -> DetectionResult:
        scores: dict[str, Check] = {
            "duration": check_duration(event),
            "magnitude": check_magnitude(event),
            "physics": check_physics(event),
        }
        try:
            ts = event.dt()
        except ValueError:
            log.warning("Detector: event %s has unparseable timestamp %r", event.id, event.timestamp)
        else:
            scores["frequency"] = self.check_frequency(event, ts)
            scores["temporal"] = self.check_temporal(event, ts)
            scores["system"] = check_system(event, ts)

        weighted = sum(scores.get(name, (0.0, None))[0] * w for name, w in CHECK_WEIGHTS.items())
        confidence = round(weighted / sum(CHECK_WEIGHTS.values()) * 100, 2)

        triggered = [name for name in CHECK_WEIGHTS if scores.get(name, (0.0, None))[0] > TRIGGER_SCORE]
        return DetectionResult(
            event_id=event.id,
            is_false_positive=confidence > FALSE_POSITIVE_CONFIDENCE,
            confidence=confidence,
            recommended_action=recommended_action(confidence).value,
            triggered_checks=triggered,
            reasons=[scores[name][1] for name in triggered if scores[name][1]],
        )


def detect_false_events(
    events: list[PQEvent],
    settings: EngineSettings | None = None,
) -> list[DetectionResult]:
    """Assess every event, using the whole list as context."""
    detector = FalseEventDetector(settings, events)
    results = [detector.assess(ev) for ev in events]
    flagged = sum(1 for r in results if r.is_false_positive)
    log.info("Detector: %d/%d events look like false positives", flagged, len(results))
    return results
