from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

from feewatch.core.config import SUPPORTED_ENGINES, AppConfig, load_targets
from feewatch.core.health import build_health_report, list_runs
from feewatch.core.history import HistoryStore
from feewatch.core.logging_config import configure_logging
from feewatch.core.models import ScrapeResult
from feewatch.core.orchestrator import BatchOrchestrator, render_digest
from feewatch.core.storage import plan_storage

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feewatch",
        description="Download municipal permit fee schedules, extract fees and report changes.",
    )
    parser.add_argument("--targets", type=Path, help="Targets JSON file (default: from config)")
    parser.add_argument("--engine", choices=SUPPORTED_ENGINES, help="Browser engine override")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command")
    run = sub.add_parser("run", help="Scrape every target (default)")
    run.add_argument("--digest", action="store_true", help="Print the change alert digest")
    one = sub.add_parser("scrape", help="Scrape a single jurisdiction without saving history")
    one.add_argument("jurisdiction")
    sub.add_parser("health", help="Show data freshness per jurisdiction")
    cfg = sub.add_parser("config", help="Print the effective configuration")
    cfg.add_argument("--save", action="store_true", help="Write it (with overrides) to config.json")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = AppConfig.load()
    configure_logging(config, verbose=args.verbose)

    settings = config.scrape
    if args.engine:
        settings = replace(settings, engine=args.engine)
    if args.headed:
        settings = replace(settings, headless=False)

    storage = plan_storage(config.paths.results_dir, config.paths.documents_dir)
    targets_path = args.targets or config.paths.targets_path
    command = args.command or "run"

    if command == "config":
        effective = replace(config, scrape=settings)
        if args.save:
            effective.save()
            logger.info("Configuration saved: %s", AppConfig.config_path(effective.paths.app_dir))
        print(json.dumps(effective.to_dict(), indent=2))
        return 0

    if command == "health":
        expected = None
        if targets_path.exists():
            try:
                expected = [t.jurisdiction for t in load_targets(targets_path)]
            except (OSError, ValueError) as e:
                logger.error("Could not load targets from %s: %s", targets_path, e)
                return 2
        report = build_health_report(HistoryStore.load(storage.history_path), expected=expected)
        report["runs"] = [r.filename for r in list_runs(storage.results_dir)]
        print(json.dumps(report, indent=2))
        return 0

    try:
        targets = load_targets(targets_path)
    except (OSError, ValueError) as e:
        logger.error("Could not load targets from %s: %s", targets_path, e)
        return 2

    orchestrator = BatchOrchestrator(settings=settings, storage=storage)

    if command == "scrape":
        matches = [t for t in targets if t.jurisdiction == args.jurisdiction]
        if not matches:
            logger.error("No target configured for %s", args.jurisdiction)
            return 2
        outcome, changes = asyncio.run(orchestrator.run_one(matches[0]))
        print(json.dumps({"result": outcome.to_dict(), "changes": [c.to_dict() for c in changes]}, indent=2))
        return 0 if isinstance(outcome, ScrapeResult) else 1

    batch = asyncio.run(orchestrator.run(targets))
    print(f"Total: {len(batch.outcomes)}  Successful: {batch.successful}  Failed: {batch.failed}  Changed: {len(batch.changes)}")
    if getattr(args, "digest", False):
        digest = render_digest(batch)
        if digest:
            print()
            print(digest)
    return 0 if batch.failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
