#!/usr/bin/env python3
from __future__ import annotations

import argparse
import dataclasses
import json
import shutil
import sys

from audiostitch.config import FetchConfig, LoggingConfig, StitchConfig, StoreConfig
from audiostitch.errors import StitchJobError
from audiostitch.housekeeping import cleanup_cache_dir, sweep_orphan_segments
from audiostitch.logging_utils import Logger
from audiostitch.runtime import build_runtime


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Stitch ordered audio segments (URLs or paths) into one WAV or MP3 file.",
    )
    parser.add_argument("segments", nargs="*", help="Segment URLs or local paths, in playback order")
    parser.add_argument("--format", choices=["wav", "mp3"], default="mp3")
    parser.add_argument("--output", default=None, help="Also copy the stitched file to this path")
    parser.add_argument("--cache-dir", default=None)
    parser.add_argument("--parallel-fetch", action="store_true")
    parser.add_argument("--clear-cache", action="store_true", help="Delete cached outputs and exit")
    parser.add_argument("--cleanup", action="store_true", help="Apply cache retention and exit")
    parser.add_argument("--dry-run-cleanup", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    log_cfg = LoggingConfig.from_env()
    if args.debug:
        log_cfg = dataclasses.replace(log_cfg, level="DEBUG", debug_events=True)
    elif args.verbose:
        log_cfg = dataclasses.replace(log_cfg, level="INFO")
    logger = Logger.create(log_cfg)

    stitch_cfg = StitchConfig.from_env(cache_dir=args.cache_dir)
    fetch_cfg = FetchConfig.from_env()
    if args.parallel_fetch:
        fetch_cfg = dataclasses.replace(fetch_cfg, parallel=True)
    runtime = build_runtime(
        stitch_cfg=stitch_cfg,
        fetch_cfg=fetch_cfg,
        store_cfg=StoreConfig.from_env(),
        logger=logger,
    )

    if args.clear_cache:
        removed = runtime.service.clear_cache(args.segments or None)
        print(json.dumps({"removed": removed}))
        return 0
    if args.cleanup or args.dry_run_cleanup:
        report = cleanup_cache_dir(
            base_dir=stitch_cfg.cache_dir,
            retention_days=stitch_cfg.retention_days,
            max_storage_mb=stitch_cfg.max_cache_mb,
            logger=logger,
            dry_run=args.dry_run_cleanup,
        )
        orphans = sweep_orphan_segments(logger=logger, dry_run=args.dry_run_cleanup)
        summary = dataclasses.asdict(report)
        summary["orphan_segments_deleted"] = orphans.deleted_files
        print(json.dumps(summary))
        return 0
    if not args.segments:
        logger.error("no_segments_given")
        return 2

    try:
        outcome = runtime.service.stitch_urls(args.segments, args.format)
    except StitchJobError as exc:
        logger.error("stitch_failed", kind=exc.error_kind, stage=exc.stage, segment=exc.segment_index)
        print(str(exc), file=sys.stderr)
        return 1

    if args.output:
        shutil.copyfile(outcome.output_path, args.output)
    print(json.dumps(dataclasses.asdict(outcome), sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
