"""CLI entry-point for the PQ Event Engine.

Usage examples
--------------
# Dry run (rules are evaluated, nothing is persisted):
python -m src.engine.cli --input data/events.csv

# Apply mode (rule statistics written back to config/rules.yaml):
python -m src.engine.cli --input data/events.jsonl --mode apply

# Classification only, last 7 days:
python -m src.engine.cli --input data/events.csv --no-auto-group --time-range 7d
"""

from __future__ import annotations

import argparse
import logging
import sys

from src.engine.pipeline import MODES, run_pipeline
from src.shared.errors import EngineError
from src.shared.logger import setup_logging

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pq-engine",
        description="PQ Event Engine — correlate events and flag false detections",
    )
    p.add_argument(
        "--input",
        default="data/events.csv",
        help="Input file (CSV or JSONL). Format auto-detected by extension. "
             "Default: data/events.csv",
    )
    p.add_argument(
        "--out-dir",
        default="out",
        help="Output directory. Default: out/",
    )
    p.add_argument(
        "--config-dir",
        default="config",
        help="Directory with engine.yaml and rules.yaml. Default: config/",
    )
    p.add_argument(
        "--rules",
        default=None,
        help="Rule file (YAML). Default: <config-dir>/rules.yaml",
    )
    p.add_argument(
        "--mode",
        default="test",
        choices=list(MODES),
        help="test = dry run; apply = also record rule statistics. Default: test",
    )
    p.add_argument(
        "--no-auto-group",
        action="store_true",
        default=False,
        help="Skip automatic grouping of standalone events.",
    )
    p.add_argument(
        "--time-range",
        default="30d",
        choices=["7d", "30d", "90d", "1y"],
        help="Analytics window ending now. Default: 30d",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Also write the log to this file.",
    )
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level. Default: INFO",
    )
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        run_pipeline(
            input_path=args.input,
            out_dir=args.out_dir,
            config_dir=args.config_dir,
            rules_path=args.rules,
            mode=args.mode,
            auto_group=not args.no_auto_group,
            time_range=args.time_range,
        )
    except (EngineError, FileNotFoundError) as exc:
        log.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
