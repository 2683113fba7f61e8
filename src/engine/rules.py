"""Rule Engine — flag likely false PQ events with user-authored rules.

Semantics
─────────
  evaluate_rule  — a rule matches iff *every* specified condition holds;
                   a rule with no conditions matches everything.
  classify       — OR across all active, matching rules: an event would be
                   auto-marked if *any* triggered rule has ``auto_mark``.
                   Rule order and ``priority`` never change the booleans.

Malformed bounds are rejected by ``validate_rule`` when a rule is saved.
A rule that slipped through with impossible bounds (min > max) simply
never matches; evaluation itself never raises for well-formed events.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import UTC, datetime

from src.contracts.event import PQEvent, format_ts
from src.contracts.results import ClassificationResult
from src.contracts.rule import Rule, RuleConditions, StatisticsDelta
from src.shared.config_loader import EngineSettings
from src.shared.errors import ValidationError
from src.stores.base import RuleStore

log = logging.getLogger(__name__)

_DEFAULT_SETTINGS = EngineSettings()


# ═══════════════════════════════════════════════════════════════════════════
#  Save-time validation
# ═══════════════════════════════════════════════════════════════════════════


def _check_pair(errors: list[str], label: str, lo: float | None, hi: float | None) -> None:
    if lo is not None and hi is not None and lo > hi:
        errors.append(f"min_{label} ({lo:g}) is greater than max_{label} ({hi:g})")


def validate_rule(rule: Rule) -> None:
    """Reject malformed rules before they reach a store.

    Raises:
        ValidationError: with every problem found, joined by ``; ``.
    """
    errors: list[str] = []
    c = rule.conditions

    if not rule.id:
        errors.append("rule id is required")
    if not rule.name.strip():
        errors.append("rule name is required")

    _check_pair(errors, "duration", c.min_duration, c.max_duration)
    _check_pair(errors, "magnitude", c.min_magnitude, c.max_magnitude)
    for name in ("min_duration", "max_duration"):
        val = getattr(c, name)
        if val is not None and val < 0:
            errors.append(f"{name} must be >= 0")

    if c.allowed_event_types is not None and not c.allowed_event_types:
        errors.append("allowed_event_types is empty — the rule could never match")
    if c.allowed_event_types and c.excluded_event_types:
        overlap = sorted(set(c.allowed_event_types) & set(c.excluded_event_types))
        if overlap:
            errors.append(f"event type(s) both allowed and excluded: {', '.join(overlap)}")

    if errors:
        raise ValidationError(f"Rule '{rule.name or rule.id}' is invalid: " + "; ".join(errors))

    if c.is_empty():
        log.warning(
            "Rule %s (%s) has no conditions and will match every event",
            rule.id,
            rule.name,
        )


def has_impossible_bounds(conditions: RuleConditions) -> bool:
    c = conditions
    return (
        c.min_duration is not None and c.max_duration is not None and c.min_duration > c.max_duration
    ) or (
        c.min_magnitude is not None
        and c.max_magnitude is not None
        and c.min_magnitude > c.max_magnitude
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Evaluation
# ═══════════════════════════════════════════════════════════════════════════


def _within(value: float | None, lo: float | None, hi: float | None) -> bool:
    if lo is None and hi is None:
        return True
    if value is None:
        return False
    if lo is not None and value < lo:
        return False
    if hi is not None and value > hi:
        return False
    return True


def in_maintenance(hour: int, settings: EngineSettings) -> bool:
    start, end = settings.maintenance_start_hour, settings.maintenance_end_hour
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def evaluate_rule(
    rule: Rule,
    event: PQEvent,
    settings: EngineSettings | None = None,
) -> bool:
    """Return True only if every specified condition of *rule* holds for *event*.

    Missing event fields fail any condition that needs them.
    """
    s = settings or _DEFAULT_SETTINGS
    c = rule.conditions

    if not _within(event.duration_ms, c.min_duration, c.max_duration):
        return False
    if not _within(event.magnitude, c.min_magnitude, c.max_magnitude):
        return False

    if c.allowed_event_types is not None and event.event_type not in c.allowed_event_types:
        return False
    if c.excluded_event_types is not None and event.event_type in c.excluded_event_types:
        return False

    if c.requires_external_validation and not event.validated_externally:
        return False
    if c.requires_multiple_phases and len(event.affected_phases) < 2:
        return False

    if c.excluded_substations is not None and event.substation_id in c.excluded_substations:
        return False
    if c.excluded_voltage_levels is not None and event.voltage_level in c.excluded_voltage_levels:
        return False

    if c.exclude_weekends or c.exclude_maintenance_hours:
        try:
            dt = event.dt()
        except ValueError:
            return False
        if c.exclude_weekends and dt.weekday() >= 5:
            return False
        if c.exclude_maintenance_hours and in_maintenance(dt.hour, s):
            return False

    return True


def classify(
    event: PQEvent,
    rules: list[Rule],
    settings: EngineSettings | None = None,
) -> ClassificationResult:
    """OR-combine the actions of every active rule that matches *event*."""
    triggered = [r for r in rules if r.is_active and evaluate_rule(r, event, settings)]
    triggered.sort(key=lambda r: (r.priority, r.id))
    return ClassificationResult(
        event_id=event.id,
        triggered_rule_ids=[r.id for r in triggered],
        would_mark_false=any(r.actions.auto_mark for r in triggered),
        would_hide=any(r.actions.auto_hide for r in triggered),
        requires_review=any(r.actions.require_review for r in triggered),
        notify_operator=any(r.actions.notify_operator for r in triggered),
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Store-backed engine: test / apply / review
# ═══════════════════════════════════════════════════════════════════════════


class RuleEngine:
    """Runs the stored rule set over event collections.

    ``test_rules`` is a dry run.  ``apply_rules`` additionally credits
    every triggered rule through the store's atomic statistics update; it
    never writes to events — committing ``false_event`` is the caller's job.

    Each (event, rule) pair is credited by ``record_review`` at most once
    per engine instance.
    """

    def __init__(self, rule_store: RuleStore, settings: EngineSettings | None = None) -> None:
        self.rule_store = rule_store
        self.settings = settings or _DEFAULT_SETTINGS
        self._reviewed: set[tuple[str, str]] = set()

    def _snapshot(self) -> list[Rule]:
        rules = self.rule_store.list_rules()
        for r in rules:
            if r.is_active and has_impossible_bounds(r.conditions):
                log.warning("Active rule %s has impossible bounds and will never match", r.id)
        return rules

    def _run(self, events: list[PQEvent], rules: list[Rule]) -> list[ClassificationResult]:
        return [classify(ev, rules, self.settings) for ev in events]

    def test_rules(self, events: list[PQEvent]) -> list[ClassificationResult]:
        results = self._run(events, self._snapshot())
        flagged = sum(1 for r in results if r.would_mark_false)
        log.info("Rule test: %d/%d events would be marked false", flagged, len(results))
        return results

    def apply_rules(
        self,
        events: list[PQEvent],
        now: datetime | None = None,
    ) -> list[ClassificationResult]:
        results = self._run(events, self._snapshot())
        stamp = format_ts(now or datetime.now(UTC))

        hits: Counter[str] = Counter()
        for res in results:
            hits.update(res.triggered_rule_ids)

        for rule_id, count in sorted(hits.items()):
            self.rule_store.increment_rule_statistics(
                rule_id,
                StatisticsDelta(total_processed=count, last_triggered=stamp),
            )
        log.info(
            "Applied %d rule(s) to %d events: %d trigger(s) recorded",
            len(hits),
            len(events),
            sum(hits.values()),
        )
        return results

    def record_review(self, result: ClassificationResult, confirmed_false: bool) -> list[str]:
        """Feed a reviewer's verdict back into rule statistics.

        Returns the ids of the rules credited with a caught false positive.
        A repeated review of the same event credits nothing new.
        """
        if not confirmed_false:
            return []
        credited: list[str] = []
        for rule_id in dict.fromkeys(result.triggered_rule_ids):
            if (result.event_id, rule_id) in self._reviewed:
                log.debug("Event %s already credited to rule %s", result.event_id, rule_id)
                continue
            rule = self.rule_store.get_rule(rule_id)
            if rule is None:
                log.warning("Reviewed event %s cites deleted rule %s", result.event_id, rule_id)
                continue
            if not rule.actions.auto_mark:
                continue
            self.rule_store.increment_rule_statistics(
                rule_id, StatisticsDelta(false_positives_caught=1)
            )
            self._reviewed.add((result.event_id, rule_id))
            credited.append(rule_id)
        log.debug("Review of %s credited rules: %s", result.event_id, credited)
        return credited
