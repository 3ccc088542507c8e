"""CLI that triggers every agent schedule whose next run time has passed.

Meant to be invoked from cron or a container scheduler once a minute; each
invocation performs a single pass and exits.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

from app.runtime import get_runtime

logger = logging.getLogger("tools.run_due_schedules")


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--now",
        help="ISO-8601 timestamp to evaluate schedules against (defaults to current UTC time)",
    )
    parser.add_argument(
        "--json", action="store_true", help="Print run results as JSON on stdout"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Script entrypoint; returns the number of runs that reported failures."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = build_parser().parse_args(argv)
    now = _parse_now(args.now)

    with get_runtime().open_services() as services:
        results = services.orchestrator.run_due_schedules(now)

    partial = sum(1 for result in results if result.partial)
    logger.info("Triggered %d scheduled run(s); %d with failures", len(results), partial)
    if args.json:
        sys.stdout.write(json.dumps([r.as_dict() for r in results], indent=2) + "\n")
    return partial


if __name__ == "__main__":  # pragma: no cover - CLI execution
    sys.exit(1 if main() else 0)
