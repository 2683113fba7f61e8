"""Shared fixtures for PQ Event Engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from src.contracts.event import PQEvent
from src.contracts.rule import Rule, RuleActions, RuleConditions
from src.shared.config_loader import EngineSettings
from src.stores.memory import InMemoryEventStore, InMemoryRuleStore

BASE_TS = "2026-03-02T10:00:00Z"  # Monday, outside the default maintenance window

# ── Helper: create PQEvent with sensible defaults ───────────────────────


def make_event(
    *,
    id: str = "EV-001",
    timestamp: str = BASE_TS,
    substation_id: str = "SS-01",
    circuit_id: str = "CKT-01",
    meter_id: str = "PQM-01",
    event_type: str = "voltage_dip",
    severity: str = "medium",
    duration_ms: float | None = 120.0,
    magnitude: float | None = 25.0,
    remaining_voltage_pct: float | None = 75.0,
    affected_phases: list[str] | None = None,
    voltage_level: str = "11kV",
    parent_event_id: str | None = None,
    is_mother_event: bool = False,
    grouping_type: str = "none",
    grouped_at: str | None = None,
    false_event: bool = False,
    validated_externally: bool = False,
) -> PQEvent:
    return PQEvent(
        id=id,
        timestamp=timestamp,
        substation_id=substation_id,
        circuit_id=circuit_id,
        meter_id=meter_id,
        event_type=event_type,
        severity=severity,
        duration_ms=duration_ms,
        magnitude=magnitude,
        remaining_voltage_pct=remaining_voltage_pct,
        affected_phases=list(affected_phases) if affected_phases is not None else ["A"],
        voltage_level=voltage_level,
        parent_event_id=parent_event_id,
        is_mother_event=is_mother_event,
        is_child_event=parent_event_id is not None,
        grouping_type=grouping_type,
        grouped_at=grouped_at,
        false_event=false_event,
        validated_externally=validated_externally,
    )


def make_rule(
    *,
    id: str = "RULE-FE-001",
    name: str = "Test Rule",
    is_active: bool = True,
    priority: int = 1,
    conditions: dict | None = None,
    auto_mark: bool = False,
    auto_hide: bool = False,
    require_review: bool = False,
    notify_operator: bool = False,
) -> Rule:
    return Rule(
        id=id,
        name=name,
        description="test rule",
        is_active=is_active,
        priority=priority,
        conditions=RuleConditions.from_dict(conditions or {}),
        actions=RuleActions(
            auto_mark=auto_mark,
            auto_hide=auto_hide,
            require_review=require_review,
            notify_operator=notify_operator,
        ),
    )


# ── Timestamp helpers ────────────────────────────────────────────────────


def ts_offset(base: str = BASE_TS, seconds: float = 0) -> str:
    """Return an ISO-8601 timestamp offset from *base* by *seconds*."""
    dt = datetime.fromisoformat(base.replace("Z", "+00:00"))
    dt += timedelta(seconds=seconds)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def fixed_clock(iso: str = "2026-03-02T12:00:00Z"):
    dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    return lambda: dt


# ── Fixtures ────────────────────────────────────────────────────────────

_STAMP = {"grouping_type": "manual", "grouped_at": "2026-03-02T11:00:00Z"}


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(correlation_window_ms=5000)


@pytest.fixture
def grouped_events() -> list[PQEvent]:
    """One mother (M) with two children plus one standalone event."""
    return [
        make_event(id="M", timestamp=ts_offset(seconds=0), is_mother_event=True, **_STAMP),
        make_event(id="C1", timestamp=ts_offset(seconds=10), parent_event_id="M", **_STAMP),
        make_event(id="C2", timestamp=ts_offset(seconds=20), parent_event_id="M", **_STAMP),
        make_event(id="S", timestamp=ts_offset(seconds=30)),
    ]


@pytest.fixture
def event_store(grouped_events) -> InMemoryEventStore:
    return InMemoryEventStore(grouped_events)


@pytest.fixture
def rule_store() -> InMemoryRuleStore:
    return InMemoryRuleStore(
        [
            make_rule(id="RULE-SHORT", name="Short", conditions={"max_duration": 50}, auto_mark=True),
            make_rule(
                id="RULE-REVIEW",
                name="Review dips",
                priority=2,
                conditions={"allowed_event_types": ["voltage_dip"]},
                require_review=True,
            ),
        ]
    )
