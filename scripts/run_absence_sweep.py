#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from markme.logging_utils import setup_json_logging
from markme.services.absence_sweeper import (
    SWEEP_TARGET_CURRENT_DAY,
    SWEEP_TARGET_PREVIOUS_DAY,
    absence_sweep_reference_utc,
    run_absence_sweep,
)
from markme.settings import get_settings


def _parse_reference(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Record absence placeholders for users with no sign-in on a day.")
    parser.add_argument(
        "--reference",
        type=_parse_reference,
        default=None,
        help="ISO instant inside the day to sweep. Defaults to now, shifted by --target.",
    )
    parser.add_argument(
        "--target",
        choices=[SWEEP_TARGET_PREVIOUS_DAY, SWEEP_TARGET_CURRENT_DAY],
        default=None,
        help="Which local day to sweep when --reference is omitted.",
    )
    return parser


def run(argv: list[str] | None = None) -> dict:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_json_logging(settings.log_level, service="markme-sweep")

    reference_utc = args.reference
    if reference_utc is None:
        target = args.target or settings.absence_sweep_target
        reference_utc = absence_sweep_reference_utc(datetime.now(timezone.utc), target)

    result = run_absence_sweep(reference_utc)
    return result.to_dict()


if __name__ == "__main__":
    report = run()
    print(json.dumps(report, ensure_ascii=False, indent=2))
    sys.exit(0 if report["failed"] == 0 else 1)
