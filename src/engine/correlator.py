"""Correlator — group related PQ events under a mother event.

Grouping model
──────────────
  * A group is one mother plus ≥ 1 children; children point at the mother
    through ``parent_event_id``.  The hierarchy is exactly one level deep:
    events that are already a child or a mother cannot be grouped again.
  * The mother is the event with the earliest timestamp; ties go to the
    lowest id so retries always elect the same event.
  * Mother and children carry the same ``grouping_type`` / ``grouped_at``
    stamp, so stored data alone tells manual groups from automatic ones.
    Ungrouping clears the stamp on every event it releases.

Automatic grouping strategy
───────────────────────────
  Candidates (standalone events only) are partitioned by substation — or
  substation + circuit, see ``correlation.key`` — and sorted by time.  A
  cluster starts at the earliest event and takes every following event
  whose timestamp is within ``correlation.window_ms`` of that *first*
  event; the first event outside the window opens the next cluster.
  Clusters with fewer than two members stay standalone.

Every multi-event mutation is sent to the store as one batch whose
``expect`` preconditions make a concurrent change surface as
``ConflictError`` instead of a half-applied grouping.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime

from src.contracts.enums import CorrelationKey, GroupingType
from src.contracts.event import PQEvent, format_ts
from src.contracts.operation import EventFilter, EventOperation, EventUpdate
from src.contracts.results import GroupCheck, GroupingResult, GroupingStatistics
from src.shared.config_loader import EngineSettings
from src.shared.errors import NotFoundError, ValidationError
from src.stores.base import EventStore

log = logging.getLogger(__name__)

REASON_TOO_FEW = "at least two events required"
REASON_ALREADY_GROUPED = "event already part of a group; ungroup first"

_STANDALONE = {"parent_event_id": None, "is_mother_event": False}
_CLEARED_CHILD = {
    "parent_event_id": None,
    "is_child_event": False,
    "grouping_type": GroupingType.NONE.value,
    "grouped_at": None,
}
_CLEARED_MOTHER = {
    "is_mother_event": False,
    "grouping_type": GroupingType.NONE.value,
    "grouped_at": None,
}


def can_group_events(events: list[PQEvent]) -> GroupCheck:
    """Check whether *events* may form a new group.  No side effects."""
    if len(events) < 2:
        return GroupCheck(can_group=False, reason=REASON_TOO_FEW)
    for ev in events:
        if ev.parent_event_id is not None or ev.is_mother_event:
            return GroupCheck(can_group=False, reason=REASON_ALREADY_GROUPED)
    return GroupCheck(can_group=True)


def _by_time(ev: PQEvent) -> tuple[datetime, str]:
    return ev.dt(), ev.id


def _unparseable(events: list[PQEvent]) -> list[str]:
    bad: list[str] = []
    for ev in events:
        try:
            ev.dt()
        except ValueError:
            bad.append(ev.id)
    return bad


def elect_mother(events: list[PQEvent]) -> PQEvent:
    """Earliest timestamp wins; lowest id breaks ties."""
    return min(events, key=_by_time)


def partition_key(event: PQEvent, key: CorrelationKey) -> str:
    if key is CorrelationKey.SUBSTATION_CIRCUIT:
        return f"{event.substation_id}|{event.circuit_id}"
    return event.substation_id


def cluster_by_window(events: list[PQEvent], window_ms: int) -> list[list[PQEvent]]:
    """Split time-sorted *events* into clusters anchored at each cluster's first event."""
    clusters: list[list[PQEvent]] = []
    current: list[PQEvent] = []
    anchor: datetime | None = None
    for ev in events:
        ts = ev.dt()
        if anchor is not None and (ts - anchor).total_seconds() * 1000 <= window_ms:
            current.append(ev)
            continue
        if current:
            clusters.append(current)
        current = [ev]
        anchor = ts
    if current:
        clusters.append(current)
    return clusters


class CorrelationEngine:
    """Create, validate and dissolve mother/child groupings in an EventStore."""

    def __init__(
        self,
        event_store: EventStore,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = event_store
        self.settings = settings or EngineSettings()
        self._clock = clock or (lambda: datetime.now(UTC))

    def _fetch(self, event_ids: list[str]) -> list[PQEvent]:
        """Load *event_ids* (deduplicated, order kept) or raise NotFoundError."""
        events: list[PQEvent] = []
        missing: list[str] = []
        for eid in dict.fromkeys(event_ids):
            ev = self.store.get_event(eid)
            if ev is None:
                missing.append(eid)
            else:
                events.append(ev)
        if missing:
            raise NotFoundError(f"Unknown event id(s): {', '.join(missing)}", missing)
        return events

    @staticmethod
    def _child_update(child_id: str, mother_id: str, grouping_type: str, stamp: str) -> EventUpdate:
        return EventUpdate(
            child_id,
            {
                "parent_event_id": mother_id,
                "is_child_event": True,
                "grouping_type": grouping_type,
                "grouped_at": stamp,
            },
            expect=dict(_STANDALONE),
        )

    # ── grouping ─────────────────────────────────────────────────────────

    def _group_updates(
        self,
        members: list[PQEvent],
        grouping_type: GroupingType,
        stamp: str,
        key: str = "",
    ) -> tuple[GroupingResult, list[EventUpdate]]:
        mother = elect_mother(members)
        children = sorted((e for e in members if e is not mother), key=_by_time)
        updates = [
            EventUpdate(
                mother.id,
                {
                    "is_mother_event": True,
                    "grouping_type": grouping_type.value,
                    "grouped_at": stamp,
                },
                expect=dict(_STANDALONE),
            )
        ]
        updates.extend(
            self._child_update(child.id, mother.id, grouping_type.value, stamp) for child in children
        )
        result = GroupingResult(
            mother_event_id=mother.id,
            child_event_ids=[c.id for c in children],
            grouping_type=grouping_type.value,
            grouped_at=stamp,
            partition_key=key,
        )
        return result, updates

    def perform_manual_grouping(
        self,
        event_ids: list[str],
        performed_by: str = "system",
    ) -> GroupingResult:
        """Group the selected events under the earliest one.

        Raises:
            ValidationError: fewer than two events, one is already grouped,
                or a timestamp cannot be parsed.
            NotFoundError: an id is unknown to the store.
            ConflictError: a selected event was grouped by someone else meanwhile.
        """
        if not event_ids:
            raise ValidationError("no event ids given")
        events = self._fetch(event_ids)

        check = can_group_events(events)
        if not check.can_group:
            raise ValidationError(check.reason or "events cannot be grouped")
        bad = _unparseable(events)
        if bad:
            raise ValidationError(f"unparseable timestamp on event(s): {', '.join(bad)}")

        stamp = format_ts(self._clock())
        result, updates = self._group_updates(events, GroupingType.MANUAL, stamp)
        self.store.batch_update_events(
            updates,
            EventOperation(
                operation_type="group",
                event_ids=[result.mother_event_id, *result.child_event_ids],
                performed_at=stamp,
                mother_event_id=result.mother_event_id,
                performed_by=performed_by,
                description=f"Manual grouping of {len(events)} events",
                details={"grouping_type": GroupingType.MANUAL.value},
            ),
        )
        log.info(
            "Manual group: mother=%s children=%s",
            result.mother_event_id,
            ",".join(result.child_event_ids),
        )
        return result

    def perform_automatic_grouping(
        self,
        ungrouped_events: list[PQEvent] | None = None,
        performed_by: str = "system",
    ) -> list[GroupingResult]:
        """Cluster standalone events by location and time window.

        Candidates are re-read from the store, so a stale snapshot that
        still shows already-grouped events as standalone yields no new
        groups for them.  All groups are committed in one batch.
        """
        current = {ev.id: ev for ev in self.store.list_events(EventFilter(ungrouped_only=True))}
        if ungrouped_events is None:
            candidates = list(current.values())
        else:
            candidates = [current[e.id] for e in ungrouped_events if e.id in current]
            skipped = len(ungrouped_events) - len(candidates)
            if skipped:
                log.debug("Auto-group: %d event(s) no longer standalone or unknown", skipped)

        key = self.settings.correlation_key
        partitions: dict[str, list[PQEvent]] = defaultdict(list)
        seen: set[str] = set()
        for ev in candidates:
            if ev.id in seen:
                continue
            seen.add(ev.id)
            if _unparseable([ev]):
                log.warning("Auto-group: event %s has unparseable timestamp %r", ev.id, ev.timestamp)
                continue
            partitions[partition_key(ev, key)].append(ev)

        stamp = format_ts(self._clock())
        results: list[GroupingResult] = []
        updates: list[EventUpdate] = []
        for pkey in sorted(partitions):
            members = sorted(partitions[pkey], key=_by_time)
            for cluster in cluster_by_window(members, self.settings.correlation_window_ms):
                if len(cluster) < 2:
                    continue
                res, upd = self._group_updates(cluster, GroupingType.AUTOMATIC, stamp, pkey)
                results.append(res)
                updates.extend(upd)

        if not results:
            log.info("Auto-group: no clusters of 2+ events among %d candidates", len(seen))
            return []

        self.store.batch_update_events(
            updates,
            EventOperation(
                operation_type="group",
                event_ids=[u.id for u in updates],
                performed_at=stamp,
                performed_by=performed_by,
                description=f"Automatic grouping created {len(results)} group(s)",
                details={
                    "grouping_type": GroupingType.AUTOMATIC.value,
                    "window_ms": self.settings.correlation_window_ms,
                    "key": key.value,
                },
            ),
        )
        log.info(
            "Auto-group: %d group(s) from %d candidates (window=%dms, key=%s)",
            len(results),
            len(seen),
            self.settings.correlation_window_ms,
            key.value,
        )
        return results

    def add_children_to_mother(
        self,
        mother_event_id: str,
        event_ids: list[str],
        performed_by: str = "system",
    ) -> GroupingResult:
        """Attach standalone events to an existing mother.

        The new children must share the mother's correlation partition
        (substation, or substation + circuit).  They inherit the mother's
        ``grouping_type`` and get a fresh ``grouped_at``.

        Raises:
            ValidationError: empty list, target is not a mother, an event
                is already grouped, or an event is outside the partition.
            NotFoundError: the mother or a listed event is unknown.
            ConflictError: the mother or a child changed before commit.
        """
        if not event_ids:
            raise ValidationError("no event ids given")
        mother = self.store.get_event(mother_event_id)
        if mother is None:
            raise NotFoundError(f"Unknown event id: {mother_event_id}", [mother_event_id])
        if not mother.is_mother_event:
            raise ValidationError(f"event {mother_event_id} is not a mother event")

        children = self._fetch(event_ids)
        for ev in children:
            if ev.id == mother.id or not ev.is_standalone:
                raise ValidationError(f"{REASON_ALREADY_GROUPED} ({ev.id})")

        key = self.settings.correlation_key
        home = partition_key(mother, key)
        outside = [ev.id for ev in children if partition_key(ev, key) != home]
        if outside:
            raise ValidationError(
                f"event(s) {', '.join(outside)} are not in the mother's {key.value} '{home}'"
            )

        grouping_type = mother.grouping_type
        if grouping_type == GroupingType.NONE.value:
            grouping_type = GroupingType.MANUAL.value
        stamp = format_ts(self._clock())
        updates = [EventUpdate(mother.id, {}, expect={"is_mother_event": True, "parent_event_id": None})]
        updates.extend(
            self._child_update(ev.id, mother.id, grouping_type, stamp) for ev in children
        )
        self.store.batch_update_events(
            updates,
            EventOperation(
                operation_type="add_children",
                event_ids=[ev.id for ev in children],
                performed_at=stamp,
                mother_event_id=mother.id,
                performed_by=performed_by,
                description=f"Added {len(children)} child event(s) to {mother.id}",
            ),
        )
        log.info("Added %d child event(s) to mother %s", len(children), mother.id)
        return GroupingResult(
            mother_event_id=mother.id,
            child_event_ids=[ev.id for ev in children],
            grouping_type=grouping_type,
            grouped_at=stamp,
            partition_key=home,
        )

    # ── ungrouping ───────────────────────────────────────────────────────

    def ungroup_events(self, mother_event_id: str, performed_by: str = "system") -> bool:
        """Dissolve a whole group.  False if the mother is unknown or childless."""
        mother = self.store.get_event(mother_event_id)
        if mother is None:
            log.warning("Ungroup: mother event %s not found", mother_event_id)
            return False
        children = self.store.list_events(EventFilter(parent_event_id=mother_event_id))
        if not children:
            log.warning("Ungroup: event %s has no children", mother_event_id)
            return False

        updates = [
            EventUpdate(c.id, dict(_CLEARED_CHILD), expect={"parent_event_id": mother_event_id})
            for c in children
        ]
        updates.append(EventUpdate(mother_event_id, dict(_CLEARED_MOTHER)))

        stamp = format_ts(self._clock())
        self.store.batch_update_events(
            updates,
            EventOperation(
                operation_type="ungroup",
                event_ids=[mother_event_id, *(c.id for c in children)],
                performed_at=stamp,
                mother_event_id=mother_event_id,
                performed_by=performed_by,
                description=f"Dissolved group of {len(children) + 1} events",
            ),
        )
        log.info("Ungrouped mother %s and %d children", mother_event_id, len(children))
        return True

    def ungroup_specific_events(self, event_ids: list[str], performed_by: str = "system") -> bool:
        """Detach the listed children; a mother left without children is demoted.

        Raises:
            ValidationError: empty list, or a listed event is not a child.
            NotFoundError: an id is unknown to the store.
            ConflictError: a listed child was detached or moved meanwhile.
        """
        if not event_ids:
            raise ValidationError("no event ids given")
        targets = self._fetch(event_ids)

        not_children = [ev.id for ev in targets if ev.parent_event_id is None]
        if not_children:
            raise ValidationError(f"event(s) not part of a group: {', '.join(not_children)}")

        by_mother: dict[str, list[str]] = defaultdict(list)
        for ev in targets:
            by_mother[ev.parent_event_id].append(ev.id)

        updates = [
            EventUpdate(ev.id, dict(_CLEARED_CHILD), expect={"parent_event_id": ev.parent_event_id})
            for ev in targets
        ]
        demoted: list[str] = []
        for mother_id, removed in by_mother.items():
            remaining = [
                c
                for c in self.store.list_events(EventFilter(parent_event_id=mother_id))
                if c.id not in removed
            ]
            if remaining:
                continue
            if self.store.get_event(mother_id) is None:
                log.warning("Ungroup: children referenced missing mother %s", mother_id)
                continue
            updates.append(EventUpdate(mother_id, dict(_CLEARED_MOTHER)))
            demoted.append(mother_id)

        stamp = format_ts(self._clock())
        self.store.batch_update_events(
            updates,
            EventOperation(
                operation_type="ungroup",
                event_ids=[ev.id for ev in targets],
                performed_at=stamp,
                performed_by=performed_by,
                description=f"Detached {len(targets)} child event(s)",
                details={"demoted_mothers": demoted},
            ),
        )
        log.info(
            "Detached %d child event(s); demoted %d empty mother(s)",
            len(targets),
            len(demoted),
        )
        return True

    # ── statistics ───────────────────────────────────────────────────────

    def grouping_statistics(self) -> GroupingStatistics:
        """Count groups by type and the events taking part in any group."""
        stats = GroupingStatistics()
        for ev in self.store.list_events():
            if ev.is_mother_event:
                stats.total_groups += 1
                if ev.grouping_type == GroupingType.AUTOMATIC.value:
                    stats.automatic_groups += 1
                elif ev.grouping_type == GroupingType.MANUAL.value:
                    stats.manual_groups += 1
            if ev.is_mother_event or ev.parent_event_id is not None:
                stats.total_grouped_events += 1
        return stats
