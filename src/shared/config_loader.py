"""Завантаження YAML конфігурацій та налаштувань рушія."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from src.contracts.enums import CorrelationKey
from src.shared.errors import ValidationError

log = logging.getLogger(__name__)

_KNOWN_SECTIONS = {"correlation", "rules", "analytics"}


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Зчитує YAML файл та повертає його вміст як dict.

    Args:
        path: Шлях до файлу.

    Returns:
        Вміст файлу як словник.

    Raises:
        FileNotFoundError: Якщо файл не знайдено.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    log.debug("Loaded config %s (%d top-level keys)", p.name, len(data or {}))
    return data or {}


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Налаштування кореляції, правил та аналітики."""

    correlation_window_ms: int = 600_000
    correlation_key: CorrelationKey = CorrelationKey.SUBSTATION
    maintenance_start_hour: int = 0
    maintenance_end_hour: int = 6
    top_n: int = 5
    max_trend_days: int = 90

    @classmethod
    def from_dict(cls, cfg: dict[str, Any]) -> EngineSettings:
        for section in cfg:
            if section not in _KNOWN_SECTIONS:
                log.debug("Ignoring unknown settings section '%s'", section)

        corr = cfg.get("correlation") or {}
        rules = cfg.get("rules") or {}
        analytics = cfg.get("analytics") or {}
        defaults = cls()

        raw_key = corr.get("key", defaults.correlation_key.value)
        try:
            key = CorrelationKey(raw_key)
        except ValueError:
            allowed = ", ".join(k.value for k in CorrelationKey)
            raise ValidationError(
                f"correlation.key must be one of: {allowed} (got '{raw_key}')"
            ) from None

        settings = cls(
            correlation_window_ms=int(corr.get("window_ms", defaults.correlation_window_ms)),
            correlation_key=key,
            maintenance_start_hour=int(
                rules.get("maintenance_start_hour", defaults.maintenance_start_hour)
            ),
            maintenance_end_hour=int(
                rules.get("maintenance_end_hour", defaults.maintenance_end_hour)
            ),
            top_n=int(analytics.get("top_n", defaults.top_n)),
            max_trend_days=int(analytics.get("max_trend_days", defaults.max_trend_days)),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.correlation_window_ms < 0:
            raise ValidationError("correlation.window_ms must be >= 0")
        for name in ("maintenance_start_hour", "maintenance_end_hour"):
            hour = getattr(self, name)
            if not 0 <= hour <= 23:
                raise ValidationError(f"rules.{name} must be within 0..23 (got {hour})")
        if self.top_n < 1:
            raise ValidationError("analytics.top_n must be >= 1")
        if self.max_trend_days < 1:
            raise ValidationError("analytics.max_trend_days must be >= 1")


def load_settings(config_dir: str | Path) -> EngineSettings:
    """Читає ``engine.yaml`` з config_dir; за відсутності файлу — типові значення."""
    path = Path(config_dir) / "engine.yaml"
    if not path.exists():
        log.warning("Settings file %s not found — using defaults", path)
        return EngineSettings()
    settings = EngineSettings.from_dict(load_yaml(path))
    log.info(
        "Loaded settings: window=%dms key=%s top_n=%d",
        settings.correlation_window_ms,
        settings.correlation_key.value,
        settings.top_n,
    )
    return settings
