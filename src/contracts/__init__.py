"""PQ Event Contract — canonical data structures shared by all modules."""

from src.contracts.enums import CorrelationKey, DetectionAction, GroupingType, PQEventType
from src.contracts.event import PQEvent
from src.contracts.operation import EventFilter, EventOperation, EventUpdate
from src.contracts.results import (
    ClassificationResult,
    DetectionResult,
    EventTreeNode,
    GroupCheck,
    GroupingResult,
    GroupingStatistics,
)
from src.contracts.rule import (
    Rule,
    RuleActions,
    RuleConditions,
    RuleStatistics,
    StatisticsDelta,
)

__all__ = [
    "ClassificationResult",
    "CorrelationKey",
    "DetectionAction",
    "DetectionResult",
    "EventFilter",
    "EventOperation",
    "EventTreeNode",
    "EventUpdate",
    "GroupCheck",
    "GroupingResult",
    "GroupingStatistics",
    "GroupingType",
    "PQEvent",
    "PQEventType",
    "Rule",
    "RuleActions",
    "RuleConditions",
    "RuleStatistics",
    "StatisticsDelta",
]
