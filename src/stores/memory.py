"""Thread-safe in-memory stores.

Both stores hand out copies, so nothing a caller does to a returned object
reaches stored state except through the store's own mutation methods.
Every mutation runs under a single lock; batch writes are staged first and
swapped in only after all checks pass.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import fields
from datetime import UTC, datetime

from src.contracts.event import PQEvent, format_ts, parse_ts
from src.contracts.operation import EventFilter, EventOperation, EventUpdate
from src.contracts.rule import Rule, StatisticsDelta
from src.engine.rules import validate_rule
from src.shared.errors import ConflictError, NotFoundError, StoreError, ValidationError
from src.stores.base import EventStore, RuleStore

log = logging.getLogger(__name__)

_EVENT_FIELDS = {f.name for f in fields(PQEvent)}


def _now_iso() -> str:
    return format_ts(datetime.now(UTC))


def _matches(ev: PQEvent, flt: EventFilter) -> bool:
    if flt.start_ts and parse_ts(ev.timestamp) < parse_ts(flt.start_ts):
        return False
    if flt.end_ts and parse_ts(ev.timestamp) > parse_ts(flt.end_ts):
        return False
    if flt.substation_ids and ev.substation_id not in flt.substation_ids:
        return False
    if flt.event_types and ev.event_type not in flt.event_types:
        return False
    if flt.ungrouped_only and not ev.is_standalone:
        return False
    if flt.parent_event_id is not None and ev.parent_event_id != flt.parent_event_id:
        return False
    return True


# ═══════════════════════════════════════════════════════════════════════════
#  Events
# ═══════════════════════════════════════════════════════════════════════════


class InMemoryEventStore(EventStore):
    def __init__(self, events: list[PQEvent] | None = None) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, PQEvent] = {}
        self._operations: list[EventOperation] = []
        for ev in events or []:
            if ev.id in self._events:
                log.warning("Duplicate event id %s — later record wins", ev.id)
            self._events[ev.id] = ev.copy()

    def __len__(self) -> int:
        return len(self._events)

    def list_events(self, flt: EventFilter | None = None) -> list[PQEvent]:
        with self._lock:
            snapshot = [ev.copy() for ev in self._events.values()]
        if flt is None:
            return snapshot
        return [ev for ev in snapshot if _matches(ev, flt)]

    def get_event(self, event_id: str) -> PQEvent | None:
        with self._lock:
            ev = self._events.get(event_id)
            return ev.copy() if ev is not None else None

    def batch_update_events(
        self,
        updates: list[EventUpdate],
        operation: EventOperation | None = None,
    ) -> None:
        with self._lock:
            missing = [u.id for u in updates if u.id not in self._events]
            if missing:
                raise NotFoundError(f"Unknown event id(s): {', '.join(missing)}", missing)

            staged: dict[str, PQEvent] = {}
            for u in updates:
                unknown = set(u.fields) - _EVENT_FIELDS
                if unknown:
                    raise ValidationError(
                        f"Unknown event field(s) for {u.id}: {', '.join(sorted(unknown))}"
                    )
                current = staged.get(u.id, self._events[u.id])
                for name, expected in u.expect.items():
                    actual = getattr(current, name)
                    if actual != expected:
                        raise ConflictError(
                            f"Event {u.id} changed since validation: "
                            f"{name}={actual!r}, expected {expected!r}"
                        )
                staged[u.id] = current.copy(**u.fields)

            self._commit(staged, operation)
        log.debug("Committed batch of %d event update(s)", len(updates))

    def _commit(self, staged: dict[str, PQEvent], operation: EventOperation | None) -> None:
        """Swap staged records in.  Called with the lock held."""
        self._events.update(staged)
        if operation is not None:
            self._operations.append(operation)

    def operations(self) -> list[EventOperation]:
        with self._lock:
            return list(self._operations)


# ═══════════════════════════════════════════════════════════════════════════
#  Rules
# ═══════════════════════════════════════════════════════════════════════════


class InMemoryRuleStore(RuleStore):
    def __init__(self, rules: list[Rule] | None = None) -> None:
        self._lock = threading.Lock()
        self._rules: dict[str, Rule] = {}
        for r in rules or []:
            validate_rule(r)
            self._rules[r.id] = r.copy()

    def list_rules(self) -> list[Rule]:
        with self._lock:
            rules = [r.copy() for r in self._rules.values()]
        rules.sort(key=lambda r: (r.priority, r.id))
        return rules

    def get_rule(self, rule_id: str) -> Rule | None:
        with self._lock:
            r = self._rules.get(rule_id)
            return r.copy() if r is not None else None

    def save_rule(self, rule: Rule) -> Rule:
        """Validate and upsert *rule*.

        Statistics of an existing rule are preserved: authors cannot reset
        or forge counters by re-saving.
        """
        validate_rule(rule)
        now = _now_iso()
        with self._lock:
            existing = self._rules.get(rule.id)
            if existing is not None:
                saved = rule.copy(
                    statistics=existing.statistics,
                    created_at=existing.created_at or now,
                    created_by=existing.created_by or rule.created_by,
                    updated_at=now,
                )
            else:
                saved = rule.copy(created_at=rule.created_at or now, updated_at=now)
            self._mutate({saved.id: saved})
        log.info("Saved rule %s (%s)", saved.id, saved.name)
        return saved.copy()

    def delete_rule(self, rule_id: str) -> None:
        with self._lock:
            if rule_id not in self._rules:
                raise NotFoundError(f"Unknown rule id: {rule_id}", [rule_id])
            self._mutate({}, removed=rule_id)
        log.info("Deleted rule %s", rule_id)

    def toggle_rule(self, rule_id: str) -> Rule:
        with self._lock:
            r = self._rules.get(rule_id)
            if r is None:
                raise NotFoundError(f"Unknown rule id: {rule_id}", [rule_id])
            toggled = r.copy(is_active=not r.is_active, updated_at=_now_iso())
            self._mutate({rule_id: toggled})
        log.info("Rule %s is now %s", rule_id, "active" if toggled.is_active else "inactive")
        return toggled.copy()

    def increment_rule_statistics(self, rule_id: str, delta: StatisticsDelta) -> Rule:
        with self._lock:
            r = self._rules.get(rule_id)
            if r is None:
                raise NotFoundError(f"Unknown rule id: {rule_id}", [rule_id])
            updated = r.copy()
            st = updated.statistics
            st.total_processed += delta.total_processed
            st.false_positives_caught += delta.false_positives_caught
            if st.false_positives_caught > st.total_processed:
                raise ValidationError(
                    f"Rule {rule_id}: false_positives_caught ({st.false_positives_caught}) "
                    f"would exceed total_processed ({st.total_processed})"
                )
            st.accuracy_rate = (
                round(st.false_positives_caught / st.total_processed, 4)
                if st.total_processed > 0
                else 0.0
            )
            if delta.last_triggered and (
                st.last_triggered is None
                or parse_ts(delta.last_triggered) > parse_ts(st.last_triggered)
            ):
                st.last_triggered = delta.last_triggered
            self._mutate({rule_id: updated})
        return updated.copy()

    def _mutate(self, changed: dict[str, Rule], removed: str | None = None) -> None:
        """Apply changes, persist, and roll back if persisting fails.

        Called with the lock held.
        """
        previous = dict(self._rules)
        self._rules.update(changed)
        if removed is not None:
            self._rules.pop(removed, None)
        try:
            self._persist()
        except (OSError, StoreError) as exc:
            self._rules = previous
            if isinstance(exc, StoreError):
                raise
            raise StoreError(f"Failed to persist rules: {exc}") from exc

    def _persist(self) -> None:
        """Hook for durable subclasses; in-memory store has nothing to do."""
