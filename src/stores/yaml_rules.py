"""YAML-file-backed rule store.

The file holds a single ``rules:`` list in the same layout as
``Rule.to_dict()``; ``config/rules.yaml`` ships the default templates.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from src.contracts.rule import Rule
from src.shared.atomic import atomic_write
from src.shared.config_loader import load_yaml
from src.shared.errors import ValidationError
from src.stores.memory import InMemoryRuleStore

log = logging.getLogger(__name__)


def parse_rules(cfg: dict[str, Any]) -> list[Rule]:
    """Build Rule objects from a parsed ``rules.yaml`` dict."""
    rules: list[Rule] = []
    for idx, raw in enumerate(cfg.get("rules") or [], 1):
        try:
            rules.append(Rule.from_dict(raw))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Rule #{idx} is malformed: {exc}") from exc
    return rules


def load_rules(path: str | Path) -> list[Rule]:
    rules = parse_rules(load_yaml(path))
    log.info("Loaded %d rules from %s", len(rules), path)
    return rules


def dump_rules(rules: list[Rule]) -> str:
    return yaml.safe_dump(
        {"rules": [r.to_dict() for r in rules]},
        sort_keys=False,
        allow_unicode=True,
    )


class YamlRuleStore(InMemoryRuleStore):
    """Rule store that rewrites its YAML file after every mutation."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        rules = load_rules(self.path) if self.path.exists() else []
        super().__init__(rules)

    def _persist(self) -> None:
        ordered = sorted(self._rules.values(), key=lambda r: (r.priority, r.id))
        atomic_write(self.path, dump_rules(ordered))
        log.debug("Persisted %d rules → %s", len(ordered), self.path)
