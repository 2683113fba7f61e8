"""False-event rule model: conditions, actions, statistics."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any

_LIST_CONDITIONS = (
    "allowed_event_types",
    "excluded_event_types",
    "excluded_substations",
    "excluded_voltage_levels",
)
_FLAG_CONDITIONS = (
    "requires_external_validation",
    "requires_multiple_phases",
    "exclude_weekends",
    "exclude_maintenance_hours",
)


@dataclass(slots=True)
class RuleConditions:
    """Sparse set of optional bounds.  ``None`` means "don't care".

    Flag conditions only constrain when set to ``True``; ``False`` and
    ``None`` are equivalent.
    """

    # duration / magnitude bounds (inclusive)
    min_duration: float | None = None
    max_duration: float | None = None
    min_magnitude: float | None = None
    max_magnitude: float | None = None

    # event type membership
    allowed_event_types: list[str] | None = None
    excluded_event_types: list[str] | None = None

    # validation / pattern
    requires_external_validation: bool | None = None
    requires_multiple_phases: bool | None = None

    # temporal exclusions
    exclude_weekends: bool | None = None
    exclude_maintenance_hours: bool | None = None

    # location exclusions
    excluded_substations: list[str] | None = None
    excluded_voltage_levels: list[str] | None = None

    def specified(self) -> dict[str, Any]:
        """Return only the conditions that actually constrain matching."""
        out: dict[str, Any] = {}
        for f in fields(self):
            val = getattr(self, f.name)
            if val is None:
                continue
            if f.name in _FLAG_CONDITIONS and val is False:
                continue
            out[f.name] = val
        return out

    def is_empty(self) -> bool:
        return not self.specified()

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> RuleConditions:
        raw = raw or {}
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for k, v in raw.items():
            if k not in known or v is None:
                continue
            if k in _LIST_CONDITIONS:
                kwargs[k] = [str(x) for x in v]
            elif k in _FLAG_CONDITIONS:
                kwargs[k] = bool(v)
            else:
                kwargs[k] = float(v)
        return cls(**kwargs)


@dataclass(slots=True)
class RuleActions:
    auto_mark: bool = False
    auto_hide: bool = False
    require_review: bool = False
    notify_operator: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> RuleActions:
        raw = raw or {}
        return cls(**{f.name: bool(raw.get(f.name, False)) for f in fields(cls)})


@dataclass(slots=True)
class RuleStatistics:
    """Bookkeeping owned by the rule engine, never edited by rule authors."""

    total_processed: int = 0
    false_positives_caught: int = 0
    accuracy_rate: float = 0.0      # false_positives_caught / total_processed
    last_triggered: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> RuleStatistics:
        raw = raw or {}
        return cls(
            total_processed=int(raw.get("total_processed", 0)),
            false_positives_caught=int(raw.get("false_positives_caught", 0)),
            accuracy_rate=float(raw.get("accuracy_rate", 0.0)),
            last_triggered=raw.get("last_triggered"),
        )


@dataclass(slots=True)
class StatisticsDelta:
    """Increment applied atomically by ``RuleStore.increment_rule_statistics``."""

    total_processed: int = 0
    false_positives_caught: int = 0
    last_triggered: str | None = None


@dataclass(slots=True)
class Rule:
    """A named, user-authored classification filter."""

    id: str
    name: str
    description: str = ""
    is_active: bool = True
    priority: int = 0               # informational ordering only
    conditions: RuleConditions = field(default_factory=RuleConditions)
    actions: RuleActions = field(default_factory=RuleActions)
    statistics: RuleStatistics = field(default_factory=RuleStatistics)
    created_at: str = ""
    created_by: str = ""
    updated_at: str = ""

    def copy(self, **changes: Any) -> Rule:
        """Return a deep-enough copy: nested dataclasses are not shared."""
        changes.setdefault("conditions", RuleConditions.from_dict(self.conditions.to_dict()))
        changes.setdefault("actions", replace(self.actions))
        changes.setdefault("statistics", replace(self.statistics))
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "priority": self.priority,
            "conditions": self.conditions.to_dict(),
            "actions": asdict(self.actions),
            "statistics": asdict(self.statistics),
            "created_at": self.created_at,
            "created_by": self.created_by,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Rule:
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            description=str(raw.get("description", "")),
            is_active=bool(raw.get("is_active", True)),
            priority=int(raw.get("priority", 0)),
            conditions=RuleConditions.from_dict(raw.get("conditions")),
            actions=RuleActions.from_dict(raw.get("actions")),
            statistics=RuleStatistics.from_dict(raw.get("statistics")),
            created_at=str(raw.get("created_at", "") or ""),
            created_by=str(raw.get("created_by", "") or ""),
            updated_at=str(raw.get("updated_at", "") or ""),
        )
