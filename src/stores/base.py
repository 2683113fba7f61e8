"""Abstract store interfaces consumed by the correlation and rule engines."""

from __future__ import annotations

import abc

from src.contracts.event import PQEvent
from src.contracts.operation import EventFilter, EventOperation, EventUpdate
from src.contracts.rule import Rule, StatisticsDelta


class EventStore(abc.ABC):
    """Read/write access to PQ event records.

    ``batch_update_events`` must be all-or-nothing: either every update in
    the batch is applied or none is.
    """

    @abc.abstractmethod
    def list_events(self, flt: EventFilter | None = None) -> list[PQEvent]:
        ...

    @abc.abstractmethod
    def get_event(self, event_id: str) -> PQEvent | None:
        ...

    @abc.abstractmethod
    def batch_update_events(
        self,
        updates: list[EventUpdate],
        operation: EventOperation | None = None,
    ) -> None:
        """Apply *updates* atomically and record *operation* alongside them.

        Raises:
            NotFoundError: an update references an unknown event id.
            ConflictError: an ``expect`` precondition no longer holds.
            StoreError: the write failed; nothing was applied.
        """
        ...

    def operations(self) -> list[EventOperation]:
        """Audit trail of grouping operations (empty if not supported)."""
        return []


class RuleStore(abc.ABC):
    """Persisted rule definitions plus atomically updated statistics."""

    @abc.abstractmethod
    def list_rules(self) -> list[Rule]:
        ...

    @abc.abstractmethod
    def get_rule(self, rule_id: str) -> Rule | None:
        ...

    @abc.abstractmethod
    def save_rule(self, rule: Rule) -> Rule:
        ...

    @abc.abstractmethod
    def delete_rule(self, rule_id: str) -> None:
        ...

    @abc.abstractmethod
    def toggle_rule(self, rule_id: str) -> Rule:
        ...

    @abc.abstractmethod
    def increment_rule_statistics(self, rule_id: str, delta: StatisticsDelta) -> Rule:
        """Atomically add *delta* to the rule's counters and recompute accuracy.

        Raises ValidationError, leaving the rule unchanged, if caught
        false positives would exceed processed events.
        """
        ...
