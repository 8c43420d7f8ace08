#!/usr/bin/env python3
from __future__ import annotations

"""Disk-space checks and retention cleanup for the stitched-output cache.

Cleanup is split into a scan (one stat per entry), a pure planning step and
an apply step, so `dry_run` and the real run always agree on candidates.
"""

import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import List, Optional

from .errors import WriteError
from .logging_utils import Logger

PARTIAL_SUFFIX = ".tmp"
SEGMENT_TEMP_PREFIX = "audiostitch_seg_"
STALE_PARTIAL_SECONDS = 3600


@dataclass(frozen=True)
class CacheEntry:
    path: str
    size_bytes: int
    modified_at: float

    @property
    def is_partial(self) -> bool:
        return self.path.endswith(PARTIAL_SUFFIX)


@dataclass
class CleanupReport:
    """Summary stats returned by cleanup operations."""

    deleted_files: int
    deleted_bytes: int
    kept_files: int


def ensure_min_free_disk(path: str, min_free_mb: int) -> None:
    """Refuse to start a stitch job when the cache volume is nearly full."""
    if min_free_mb <= 0:
        return
    os.makedirs(path, exist_ok=True)
    free_mb = shutil.disk_usage(path).free // (1024 * 1024)
    if free_mb < min_free_mb:
        raise WriteError(
            f"Not enough free disk space for stitched output: {free_mb}MB available, {min_free_mb}MB required"
        )


def scan_cache_dir(base_dir: str, *, prefix: str = "") -> List[CacheEntry]:
    """Stat every regular file directly under `base_dir`, oldest first."""
    entries: List[CacheEntry] = []
    try:
        iterator = os.scandir(base_dir)
    except FileNotFoundError:
        return entries
    with iterator:
        for item in iterator:
            if prefix and not item.name.startswith(prefix):
                continue
            try:
                if not item.is_file(follow_symlinks=False):
                    continue
                st = item.stat(follow_symlinks=False)
            except OSError:
                # Removed by a concurrent job between listing and stat.
                continue
            entries.append(CacheEntry(path=item.path, size_bytes=st.st_size, modified_at=st.st_mtime))
    entries.sort(key=lambda e: (e.modified_at, e.path))
    return entries


def plan_cleanup(
    entries: List[CacheEntry],
    *,
    now: float,
    retention_days: int,
    max_storage_mb: int,
    stale_partial_seconds: int = STALE_PARTIAL_SECONDS,
) -> List[CacheEntry]:
    """Pick entries to delete: expired outputs, abandoned partials, then oldest over the cap."""
    max_age = max(1, retention_days) * 86400
    doomed: List[CacheEntry] = []
    survivors: List[CacheEntry] = []
    for entry in entries:
        limit = stale_partial_seconds if entry.is_partial else max_age
        if now - entry.modified_at > limit:
            doomed.append(entry)
        elif not entry.is_partial:
            survivors.append(entry)

    cap_bytes = max(0, max_storage_mb) * 1024 * 1024
    if cap_bytes:
        used = sum(e.size_bytes for e in survivors)
        for entry in survivors:
            if used <= cap_bytes:
                break
            doomed.append(entry)
            used -= entry.size_bytes
    return doomed


def _apply(doomed: List[CacheEntry], *, logger: Logger, dry_run: bool) -> CleanupReport:
    deleted_files = 0
    deleted_bytes = 0
    for entry in doomed:
        if dry_run:
            logger.info("cleanup_candidate", path=entry.path, size=entry.size_bytes)
            continue
        try:
            os.remove(entry.path)
        except FileNotFoundError:
            continue
        deleted_files += 1
        deleted_bytes += entry.size_bytes
    return CleanupReport(deleted_files=deleted_files, deleted_bytes=deleted_bytes, kept_files=0)


def cleanup_cache_dir(
    *,
    base_dir: str,
    retention_days: int,
    max_storage_mb: int,
    logger: Logger,
    stale_partial_seconds: int = STALE_PARTIAL_SECONDS,
    dry_run: bool = False,
) -> CleanupReport:
    """Apply retention age and size cap to the stitched-output cache.

    `*.tmp` files are job work files still being written; they are only removed
    once older than `stale_partial_seconds` and never count against the cap.
    """
    doomed = plan_cleanup(
        scan_cache_dir(base_dir),
        now=time.time(),
        retention_days=retention_days,
        max_storage_mb=max_storage_mb,
        stale_partial_seconds=stale_partial_seconds,
    )
    report = _apply(doomed, logger=logger, dry_run=dry_run)
    report.kept_files = len(scan_cache_dir(base_dir))
    logger.info(
        "cleanup_completed",
        base_dir=base_dir,
        deleted_files=report.deleted_files,
        deleted_bytes=report.deleted_bytes,
        kept_files=report.kept_files,
        dry_run=dry_run,
    )
    return report


def sweep_orphan_segments(
    *,
    logger: Logger,
    temp_dir: Optional[str] = None,
    max_age_seconds: int = STALE_PARTIAL_SECONDS,
    dry_run: bool = False,
) -> CleanupReport:
    """Delete fetched-segment temp files left behind by killed processes."""
    base = temp_dir or tempfile.gettempdir()
    now = time.time()
    entries = scan_cache_dir(base, prefix=SEGMENT_TEMP_PREFIX)
    doomed = [e for e in entries if now - e.modified_at > max_age_seconds]
    report = _apply(doomed, logger=logger, dry_run=dry_run)
    report.kept_files = len(entries) - len(doomed)
    if doomed:
        logger.info("orphan_segments_swept", temp_dir=base, deleted_files=report.deleted_files, dry_run=dry_run)
    return report
