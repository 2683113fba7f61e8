"""Налаштування логування рушія."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def setup_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Налаштовує кореневий логер: stderr і, за потреби, файл журналу.

    Args:
        level: Рівень логування (DEBUG, INFO, WARNING, ERROR).
        log_file: Необов'язковий шлях до файлу; каталог створюється автоматично.
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=numeric,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )
    logging.getLogger("src").debug(
        "Logging initialised at %s%s",
        level.upper(),
        f" (also → {log_file})" if log_file else "",
    )
