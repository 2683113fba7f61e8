"""Ephemeral engine outputs: classification, grouping, tree nodes."""

from __future__ import annotations

from dataclasses import dataclass, field

from src.contracts.event import PQEvent


@dataclass(slots=True)
class ClassificationResult:
    """Outcome of running the active rule set against one event."""

    event_id: str
    triggered_rule_ids: list[str] = field(default_factory=list)
    would_mark_false: bool = False
    would_hide: bool = False
    requires_review: bool = False
    notify_operator: bool = False

    @property
    def triggered(self) -> bool:
        return bool(self.triggered_rule_ids)


@dataclass(slots=True)
class GroupCheck:
    can_group: bool
    reason: str | None = None


@dataclass(slots=True)
class GroupingResult:
    """A mother event and the children attached to it by one grouping."""

    mother_event_id: str
    child_event_ids: list[str]
    grouping_type: str              # manual | automatic
    grouped_at: str
    partition_key: str = ""         # substation (or substation|circuit) for automatic


@dataclass(slots=True)
class EventTreeNode:
    event: PQEvent
    children: list[EventTreeNode] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.event.id


@dataclass(slots=True)
class GroupingStatistics:
    """Snapshot of how the stored events are currently grouped."""

    total_groups: int = 0
    automatic_groups: int = 0
    manual_groups: int = 0
    total_grouped_events: int = 0     # mothers + children


@dataclass(slots=True)
class DetectionResult:
    """Pattern-based false-positive assessment of one event."""

    event_id: str
    is_false_positive: bool
    confidence: float               # 0..100
    recommended_action: str         # DetectionAction value
    triggered_checks: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
