#!/usr/bin/env python3
"""Operator entry points for the batch jobs.

    asset-store migrate ROOT [ROOT ...]
    asset-store sweep [ROOT] [--retention-hours N]
    asset-store optimize [ROOT] [--quality Q] [--max-width W] [--max-height H] [--dry-run]

Exit status: 0 success, 1 some items failed, 2 the job could not run.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from managers.config_manager import SettingsManager
from managers.migration import migrate_legacy_files
from managers.optimizer import optimize_stored_assets
from managers.orphan_reaper import sweep_orphans
from models.errors import AssetStoreError

logger = logging.getLogger("AssetStore")

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2


def run_migrate(roots: List[str]) -> int:
    summaries = []
    status = EXIT_OK
    for root in roots:
        try:
            summary = migrate_legacy_files(root)
        except AssetStoreError as e:
            logger.error(f"Migration of {root} failed: {e}")
            summaries.append({"root": root, "error": str(e)})
            status = EXIT_FATAL
            continue
        summaries.append(summary.to_dict())
        if not summary.ok and status == EXIT_OK:
            status = EXIT_PARTIAL
    print(json.dumps({"roots": summaries}, indent=2))
    return status


def run_sweep(root: str, retention_hours: Optional[float], settings: SettingsManager) -> int:
    try:
        summary = sweep_orphans(root, settings.retention(retention_hours))
    except (AssetStoreError, ValueError) as e:
        logger.error(f"Sweep of {root} failed: {e}")
        print(json.dumps({"root": root, "error": str(e)}, indent=2))
        return EXIT_FATAL
    print(json.dumps(summary.to_dict(), indent=2))
    return EXIT_OK if summary.ok else EXIT_PARTIAL


def run_optimize(root: str, settings: SettingsManager, dry_run: bool = False, **overrides) -> int:
    try:
        options = settings.processing_options(**overrides)
        summary = optimize_stored_assets(root, options, dry_run=dry_run)
    except AssetStoreError as e:
        logger.error(f"Optimization of {root} failed: {e}")
        print(json.dumps({"root": root, "error": str(e)}, indent=2))
        return EXIT_FATAL
    print(json.dumps(summary.to_dict(), indent=2))
    return EXIT_OK if summary.ok else EXIT_PARTIAL


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="asset-store", description="Asset storage maintenance jobs")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log per-file detail")
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate = subparsers.add_parser("migrate", help="Move loose legacy files into general/")
    migrate.add_argument("roots", nargs="*", help="Legacy roots (default: configured storage root)")

    sweep = subparsers.add_parser("sweep", help="Delete stale temporary upload directories")
    sweep.add_argument("root", nargs="?", help="Storage root (default: configured storage root)")
    sweep.add_argument("--retention-hours", type=float, default=None,
                       help="Minimum age before deletion (default: configured retention_hours)")

    optimize = subparsers.add_parser("optimize", help="Re-normalize images already in storage")
    optimize.add_argument("root", nargs="?", help="Storage root (default: configured storage root)")
    optimize.add_argument("--quality", type=int, default=None)
    optimize.add_argument("--max-width", type=int, default=None)
    optimize.add_argument("--max-height", type=int, default=None)
    optimize.add_argument("--dry-run", action="store_true", help="Report without rewriting files")
    return parser


def main(argv: Optional[List[str]] = None, settings: Optional[SettingsManager] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, stream=sys.stderr)
    settings = settings or SettingsManager()

    if args.command == "migrate":
        return run_migrate(args.roots or [str(settings.storage_root())])
    if args.command == "sweep":
        return run_sweep(args.root or str(settings.storage_root()), args.retention_hours, settings)
    return run_optimize(
        args.root or str(settings.storage_root()),
        settings,
        dry_run=args.dry_run,
        quality=args.quality,
        max_width=args.max_width,
        max_height=args.max_height,
    )


if __name__ == "__main__":
    sys.exit(main())
