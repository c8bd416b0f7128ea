from __future__ import annotations

import argparse
from dataclasses import replace
import sys

from loguru import logger

from photomap.app.viewmodels.main_vm import MainVM
from photomap.core.services.interfaces import Completed, Error, Progress, Started
from photomap.infrastructure.cache_repository import BinaryCacheRepository
from photomap.infrastructure.crosscheck import crosscheck_roots
from photomap.infrastructure.logging import find_latest_log_file, init_logging
from photomap.infrastructure.processing_service import ProcessingOptions
from photomap.infrastructure.record_store import RecordStore
from photomap.infrastructure.settings import JsonSettings, parse_default_sort


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="photomap",
        description="Extract GPS, capture time and orientation from photo folders.",
    )
    parser.add_argument("roots", nargs="*", help="root folders (default: `roots` from settings)")
    parser.add_argument("--settings", help="path to settings.json")
    parser.add_argument("--reprocess", action="store_true", help="ignore the cache and rescan everything")
    parser.add_argument("--crosscheck", action="store_true", help="compare GPS with Pillow's decoder")
    parser.add_argument("--workers", type=int, help="extraction threads (default: CPU count)")
    parser.add_argument("--verbose", action="store_true", help="debug logging on the console")
    return parser


def _print_event(event) -> None:
    if isinstance(event, Started):
        print(f"Found {event.total} files")
    elif isinstance(event, Progress):
        print(f"\rProcessed {event.processed}/{event.total}", end="", flush=True)
    elif isinstance(event, Completed):
        print()
        state = "Cancelled" if event.cancelled else "Done"
        print(
            f"{state} in {event.elapsed_seconds:.1f}s: {event.kept} on map, "
            f"{event.skipped} without GPS, {event.failed} failed, "
            f"{event.unsupported} unsupported ({event.heif_files} HEIF)"
        )
    elif isinstance(event, Error):
        print(f"{'Error' if event.fatal else 'Warning'}: {event.message}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = JsonSettings(args.settings)
    level = "DEBUG" if args.verbose else str(settings.get("logging.level", "INFO"))
    init_logging(settings.get("logging.dir"), level=level, console=args.verbose)

    roots = args.roots or settings.get_str_list("roots")
    if not roots:
        print("No root folders given and none configured in settings.", file=sys.stderr)
        return 2

    options = ProcessingOptions.from_settings(settings)
    if args.workers:
        options = replace(options, workers=args.workers)

    if args.crosscheck:
        report = crosscheck_roots(roots, options.ignored_dirs)
        print(
            f"match={report.match} mismatch={report.mismatch} ours_only={report.ours_only} "
            f"reference_only={report.reference_only} neither={report.neither}"
        )
        for path, verdict in report.disagreements:
            print(f"  {verdict.value}: {path}")
        return 1 if report.mismatch else 0

    vm = MainVM(
        RecordStore(),
        BinaryCacheRepository(settings.get("cache.path")),
        options=options,
        default_sort=parse_default_sort(settings),
    )
    if not args.reprocess and vm.open_library(roots):
        print(f"Loaded {vm.record_count} photos from cache")
        return 0

    subscription = vm.reprocess(roots) if args.reprocess else vm.start_processing(roots)
    for event in subscription:
        _print_event(event)
    vm.wait()
    if vm.last_error is not None:
        logger.error("Processing failed: {}", vm.last_error)
        log_file = find_latest_log_file(settings.get("logging.dir"))
        if log_file is not None:
            print(f"See {log_file} for details", file=sys.stderr)
        return 1
    print(f"{vm.record_count} photos on the map")
    return 0


if __name__ == "__main__":
    sys.exit(main())
