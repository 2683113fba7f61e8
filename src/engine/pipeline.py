"""Pipeline — orchestrator: load events → group → classify → summarize → report."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from src.engine.analytics import TimeRange, summarize
from src.engine.correlator import CorrelationEngine
from src.engine.detector import detect_false_events
from src.engine.reporter import (
    write_analytics_json,
    write_classifications_csv,
    write_detections_csv,
    write_groups_csv,
    write_report_txt,
)
from src.engine.rules import RuleEngine
from src.shared.config_loader import load_settings
from src.shared.errors import ValidationError
from src.stores.loaders import load_events
from src.stores.memory import InMemoryEventStore, InMemoryRuleStore
from src.stores.yaml_rules import YamlRuleStore, load_rules

log = logging.getLogger(__name__)

MODES = ("test", "apply")


def run_pipeline(
    input_path: str,
    out_dir: str = "out",
    config_dir: str = "config",
    rules_path: str | None = None,
    mode: str = "test",
    auto_group: bool = True,
    time_range: str = "30d",
    now: datetime | None = None,
) -> dict[str, Any]:
    """Execute the full batch flow and write outputs.

    In ``test`` mode rules are read from *rules_path* (default
    ``<config_dir>/rules.yaml``) and left untouched.  In ``apply`` mode the
    rule file is opened as a ``YamlRuleStore`` so the statistics credited
    during this run are persisted back to it.

    Returns
    -------
    dict with keys: events, groups, grouping, results, detections,
    snapshot, rules.
    """
    if mode not in MODES:
        raise ValidationError(f"mode must be one of {', '.join(MODES)} (got '{mode}')")

    settings = load_settings(config_dir)
    rules_file = Path(rules_path) if rules_path else Path(config_dir) / "rules.yaml"

    events = load_events(input_path)
    if not events:
        log.warning("No events loaded from %s — nothing to analyse.", input_path)

    event_store = InMemoryEventStore(events)
    if mode == "apply":
        rule_store = YamlRuleStore(rules_file)
    else:
        rule_store = InMemoryRuleStore(load_rules(rules_file) if rules_file.exists() else [])

    correlator = CorrelationEngine(event_store, settings)
    groups = []
    if auto_group:
        groups = correlator.perform_automatic_grouping()
    grouping = correlator.grouping_statistics()

    current = event_store.list_events()
    engine = RuleEngine(rule_store, settings)
    if mode == "apply":
        results = engine.apply_rules(current, now=now)
    else:
        results = engine.test_rules(current)
    detections = detect_false_events(current, settings)

    rules = rule_store.list_rules()
    snapshot = summarize(
        current,
        results,
        rules,
        TimeRange.last(time_range, now),
        top_n=settings.top_n,
        max_trend_days=settings.max_trend_days,
    )

    # ── write outputs ────────────────────────────────────────────────────
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    write_groups_csv(groups, out / "groups.csv")
    write_classifications_csv(results, out / "classifications.csv")
    write_detections_csv(detections, out / "detections.csv")
    write_analytics_json(snapshot, out / "analytics.json")
    write_report_txt(snapshot, groups, rules, out / "report.txt", grouping, detections)

    log.info("Pipeline complete (%s mode). Outputs in %s/", mode, out_dir)
    return {
        "events": current,
        "groups": groups,
        "grouping": grouping,
        "results": results,
        "detections": detections,
        "snapshot": snapshot,
        "rules": rules,
    }
