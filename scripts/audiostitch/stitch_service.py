#!/usr/bin/env python3
from __future__ import annotations

"""Job boundary for server-side stitching.

`StitchService.stitch_urls` is the single entry point: it memoizes outputs
by cache key, owns the temp files of a job, runs fetch -> sniff -> stitch ->
repair -> verify, and converts every failure into one `StitchJobError`.
"""

import os
import posixpath
import tempfile
import time
import urllib.parse
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .config import StitchConfig
from .errors import (
    ERROR_KIND_CROSS_FORMAT,
    ERROR_KIND_NOT_FOUND,
    ERROR_KIND_SINGLE_FILE,
    STAGE_REPAIR,
    CorruptOutputError,
    CrossFormatError,
    FormatError,
    StitchError,
    StitchJobError,
    StitchTimeoutError,
    StoreError,
    WriteError,
)
from .format_analyzer import analyze_wav, estimate_mp3_duration
from .housekeeping import ensure_min_free_disk
from .logging_utils import Logger
from .metadata_repair import repair_mp3_metadata, repair_wav_header
from .metadata_store import MetadataStore
from .models import (
    CACHE_FILE_PREFIX,
    CONTAINER_MP3,
    CONTAINER_WAV,
    STATUS_COMPLETE,
    STATUS_CONVERTING,
    STATUS_FAILED,
    ContentRecord,
    SingleAudio,
    StitchJob,
    normalize_container,
)
from .segment_fetcher import FetchedSegment, SegmentFetcher, TempFileScope
from .stitcher import BinaryStitcher, StitchInput


@dataclass(frozen=True)
class StitchOutcome:
    cache_key: str
    output_path: str
    url: str
    output_format: str
    cached: bool
    size_bytes: int
    duration_seconds: float
    segment_count: int


def filter_preroll_urls(urls: Sequence[str], prefix: str = "preroll-") -> List[str]:
    """Drop pre-roll segments, recognized by their file-name prefix."""
    if not prefix:
        return list(urls)
    out: List[str] = []
    for url in urls:
        name = posixpath.basename(urllib.parse.urlparse(str(url)).path)
        if not name.startswith(prefix):
            out.append(url)
    return out


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _remove_if_set(path: str) -> None:
    if path:
        _remove_quietly(path)


class StitchService:
    def __init__(
        self,
        *,
        config: StitchConfig,
        logger: Logger,
        fetcher: SegmentFetcher,
        stitcher: BinaryStitcher,
        metadata: Optional[MetadataStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.logger = logger
        self.fetcher = fetcher
        self.stitcher = stitcher
        self.metadata = metadata
        self._clock = clock
        os.makedirs(self.config.cache_dir, exist_ok=True)

    def cache_path(self, job: StitchJob) -> str:
        return os.path.join(self.config.cache_dir, job.output_name)

    def cache_url(self, file_name: str) -> str:
        if self.config.cache_base_url:
            return f"{self.config.cache_base_url}/{file_name}"
        return os.path.abspath(os.path.join(self.config.cache_dir, file_name))

    def lookup_cache(self, job: StitchJob) -> Optional[str]:
        """Return the cached output path, evicting entries below the size floor."""
        path = self.cache_path(job)
        try:
            size = os.path.getsize(path)
        except OSError:
            return None
        if size < self.config.min_output_bytes:
            self.logger.warn("stitch_cache_corrupt_evicted", cache_key=job.cache_key, bytes=size)
            _remove_quietly(path)
            return None
        return path

    def _check_formats(self, fetched: Sequence[FetchedSegment], output_format: str) -> None:
        for seg in fetched:
            detected = seg.container_format
            if detected and detected != output_format:
                raise CrossFormatError(
                    f"Segment is {detected} but job output is {output_format}; "
                    "cross-format stitching is not supported",
                    error_kind=ERROR_KIND_CROSS_FORMAT,
                    segment_index=seg.index,
                )
            if not detected:
                if output_format == CONTAINER_WAV:
                    raise FormatError("Unrecognized container for WAV reconstruction", segment_index=seg.index)
                self.logger.warn("stitch_mp3_segment_unrecognized", segment=seg.index, bytes=seg.size_bytes)

    def _cached_duration(self, path: str, output_format: str, log: Logger) -> float:
        try:
            if output_format == CONTAINER_WAV:
                return analyze_wav(path).duration_seconds
            return estimate_mp3_duration(path)
        except (FormatError, OSError) as exc:
            log.warn("stitch_cache_duration_unknown", error=str(exc))
            return 0.0

    def _repair(self, output_path: str, output_format: str, duration_seconds: float) -> None:
        try:
            if output_format == CONTAINER_WAV:
                repair_wav_header(output_path)
            elif self.config.write_id3:
                repair_mp3_metadata(
                    output_path,
                    duration_seconds=duration_seconds,
                    title=self.config.id3_title,
                    artist=self.config.id3_artist,
                    copy_block_bytes=self.config.copy_block_bytes,
                )
        except FormatError as exc:
            exc.stage = STAGE_REPAIR
            raise

    def _reserve_work_path(self, job: StitchJob) -> str:
        fd, path = tempfile.mkstemp(dir=self.config.cache_dir, prefix=job.output_name + ".", suffix=".tmp")
        os.close(fd)
        return path

    def _run_job(self, job: StitchJob, log: Logger) -> StitchOutcome:
        """Build the output in a job-private work file, then publish it with one rename.

        Jobs racing on the same cache key publish identical bytes, so the last
        rename wins and an already returned path stays valid. A failing job
        only removes its own work file.
        """
        output_path = self.cache_path(job)
        deadline = self._clock() + self.config.job_time_budget_seconds
        progress: Dict[str, object] = {"phase": "fetch", "segments": len(job.segments)}
        work_path = ""
        try:
            ensure_min_free_disk(self.config.cache_dir, self.config.min_free_disk_mb)
            work_path = self._reserve_work_path(job)
            with TempFileScope() as scope, log.heartbeat("stitch", status_fn=lambda: dict(progress)):
                with log.timed("stitch_fetch", segments=len(job.segments)):
                    fetched = self.fetcher.fetch_all(job.segments, scope)
                if self._clock() > deadline:
                    raise StitchTimeoutError(
                        f"Job time budget of {self.config.job_time_budget_seconds:.0f}s exceeded after fetch"
                    )
                self._check_formats(fetched, job.output_format)
                progress["phase"] = "stitch"
                with log.timed("stitch_write", container=job.output_format) as stage:
                    result = self.stitcher.stitch(
                        [StitchInput(index=seg.index, path=seg.path) for seg in fetched],
                        job.output_format,
                        work_path,
                        deadline=deadline,
                    )
                    stage["bytes_written"] = result.bytes_written
            progress["phase"] = "repair"
            self._repair(work_path, job.output_format, result.duration_seconds)
            size = os.path.getsize(work_path)
            if size < self.config.min_output_bytes:
                raise CorruptOutputError(f"Final output too small ({size} bytes)")
            os.replace(work_path, output_path)
        except StitchError:
            _remove_if_set(work_path)
            raise
        except OSError as exc:
            _remove_if_set(work_path)
            raise WriteError(f"I/O failure while building output: {exc}") from exc
        except Exception as exc:
            _remove_if_set(work_path)
            raise StitchError(f"Unexpected {type(exc).__name__} while stitching: {exc}") from exc
        return StitchOutcome(
            cache_key=job.cache_key,
            output_path=output_path,
            url=self.cache_url(job.output_name),
            output_format=job.output_format,
            cached=False,
            size_bytes=size,
            duration_seconds=result.duration_seconds,
            segment_count=result.segment_count,
        )

    def stitch_urls(self, refs: Sequence[str], output_format: str) -> StitchOutcome:
        """Stitch ordered segment URLs/paths into one file, reusing the cache when possible."""
        try:
            if not refs:
                raise StitchError("At least one segment is required")
            try:
                job = StitchJob.from_refs(refs, output_format)
            except ValueError as exc:
                raise FormatError(str(exc)) from exc
        except StitchError as exc:
            raise StitchJobError(exc) from exc

        log = self.logger.bind(cache_key=job.cache_key)
        cached_path = self.lookup_cache(job)
        if cached_path is not None:
            log.info("stitch_cache_hit", output_format=job.output_format)
            return StitchOutcome(
                cache_key=job.cache_key,
                output_path=cached_path,
                url=self.cache_url(job.output_name),
                output_format=job.output_format,
                cached=True,
                size_bytes=os.path.getsize(cached_path),
                duration_seconds=self._cached_duration(cached_path, job.output_format, log),
                segment_count=len(job.segments),
            )

        try:
            outcome = self._run_job(job, log)
        except StitchError as exc:
            log.error(
                "stitch_job_failed",
                stage=exc.stage,
                kind=exc.error_kind,
                segment=exc.segment_index,
                error=str(exc),
            )
            raise StitchJobError(exc, cache_key=job.cache_key) from exc
        log.info(
            "stitch_job_completed",
            output_format=job.output_format,
            bytes=outcome.size_bytes,
            duration_s=round(outcome.duration_seconds, 3),
            segments=outcome.segment_count,
        )
        return outcome

    def _save_record(self, record: ContentRecord) -> None:
        if self.metadata is None:
            return
        self.metadata.put(record.content_id, record)

    def stitch_content(
        self,
        content_id: str,
        *,
        output_format: Optional[str] = None,
        include_preroll: bool = True,
    ) -> StitchOutcome:
        """Stitch the chunked audio of a stored record, tracking its conversion status."""
        if self.metadata is None:
            raise StitchJobError(StoreError("No metadata store configured"))
        record = self.metadata.get(content_id)
        if record is None or record.audio is None:
            raise StitchJobError(
                StoreError(f"No audio found for content {content_id}", error_kind=ERROR_KIND_NOT_FOUND)
            )
        if isinstance(record.audio, SingleAudio):
            raise StitchJobError(
                StitchError(
                    f"Content {content_id} has a single audio file; nothing to stitch",
                    error_kind=ERROR_KIND_SINGLE_FILE,
                )
            )
        fmt_value = output_format or record.output_format or CONTAINER_MP3
        try:
            fmt = normalize_container(fmt_value)
        except ValueError as exc:
            raise StitchJobError(FormatError(str(exc))) from exc
        urls = record.audio.urls()
        if not include_preroll:
            urls = filter_preroll_urls(urls, self.config.preroll_prefix)

        if record.conversion_status == STATUS_CONVERTING:
            # A previous run died mid-conversion; close it out before retrying.
            record.transition(STATUS_FAILED, error_message="superseded by a new conversion")
        record.transition(STATUS_CONVERTING)
        self._save_record(record)
        try:
            outcome = self.stitch_urls(urls, fmt)
        except Exception as exc:
            record.transition(STATUS_FAILED, error_message=str(exc))
            self._save_record(record)
            raise
        record.transition(STATUS_COMPLETE)
        record.stitched_url = outcome.url
        self._save_record(record)
        return outcome

    def clear_cache(self, refs: Optional[Sequence[str]] = None) -> int:
        """Delete cached outputs for `refs` (every format), or the whole cache when None."""
        removed = 0
        if refs is not None:
            for fmt in (CONTAINER_WAV, CONTAINER_MP3):
                path = self.cache_path(StitchJob.from_refs(refs, fmt))
                if os.path.exists(path):
                    os.remove(path)
                    removed += 1
        else:
            for name in os.listdir(self.config.cache_dir):
                if name.startswith(CACHE_FILE_PREFIX) and not name.endswith(".tmp"):
                    _remove_quietly(os.path.join(self.config.cache_dir, name))
                    removed += 1
        self.logger.info("stitch_cache_cleared", removed=removed, scoped=refs is not None)
        return removed

    def cache_stats(self) -> Dict[str, int]:
        files = 0
        total = 0
        for name in os.listdir(self.config.cache_dir):
            if not name.startswith(CACHE_FILE_PREFIX) or name.endswith(".tmp"):
                continue
            try:
                total += os.path.getsize(os.path.join(self.config.cache_dir, name))
            except OSError:
                continue
            files += 1
        return {"files": files, "bytes": total}
