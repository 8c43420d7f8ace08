#!/usr/bin/env python3
from __future__ import annotations

"""Materialize stitch segments as local temp files.

Local sources and URLs served by our own object store are copied directly;
everything else is downloaded over HTTP with bounded retries. Every temp file
is registered in a `TempFileScope` owned by the caller so it is removed on
success and failure alike.
"""

import http.client
import os
import random
import tempfile
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import BinaryIO, Callable, List, Optional, Sequence

from .config import FetchConfig
from .errors import (
    ERROR_KIND_EMPTY_BODY,
    ERROR_KIND_HTTP_STATUS,
    ERROR_KIND_INVALID_URL,
    ERROR_KIND_NOT_FOUND,
    FetchError,
    classify_fetch_exception,
    is_transient_error_kind,
)
from .format_analyzer import sniff_file
from .housekeeping import SEGMENT_TEMP_PREFIX
from .logging_utils import Logger
from .models import LocalSource, RemoteSource, Segment
from .object_store import ObjectStore

SOURCE_LOCAL_FILE = "local_file"
SOURCE_LOCAL_URL = "local_url"
SOURCE_REMOTE = "remote"

USER_AGENT = "audiostitch/1.0"


def _is_retriable_http(code: int) -> bool:
    return int(code) in {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class FetchedSegment:
    index: int
    path: str
    size_bytes: int
    source_kind: str
    container_format: str


class TempFileScope:
    """Owns temp files for one job and deletes them all on exit."""

    def __init__(self, temp_dir: Optional[str] = None) -> None:
        self.temp_dir = temp_dir
        self._paths: List[str] = []

    def __enter__(self) -> "TempFileScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    @property
    def paths(self) -> List[str]:
        return list(self._paths)

    def new_path(self, *, prefix: str, suffix: str = "") -> str:
        if self.temp_dir:
            os.makedirs(self.temp_dir, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=self.temp_dir)
        os.close(fd)
        self._paths.append(path)
        return path

    def register(self, path: str) -> str:
        self._paths.append(path)
        return path

    def cleanup(self) -> int:
        removed = 0
        while self._paths:
            path = self._paths.pop()
            try:
                os.remove(path)
                removed += 1
            except FileNotFoundError:
                continue
        return removed


def copy_stream(src: BinaryIO, dst: BinaryIO, *, block_bytes: int, limit: Optional[int] = None) -> int:
    """Copy up to `limit` bytes (all when None) in fixed-size blocks."""
    copied = 0
    while limit is None or copied < limit:
        want = block_bytes if limit is None else min(block_bytes, limit - copied)
        block = src.read(want)
        if not block:
            break
        dst.write(block)
        copied += len(block)
    return copied


class SegmentFetcher:
    def __init__(
        self,
        *,
        config: FetchConfig,
        logger: Logger,
        store: Optional[ObjectStore] = None,
        copy_block_bytes: int = 65536,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.logger = logger
        self.store = store
        self.copy_block_bytes = int(copy_block_bytes)
        self._sleep = sleep_fn

    def _resolve_local(self, url: str) -> Optional[str]:
        if self.store is None:
            return None
        path = self.store.local_path_for_url(url)
        if path and os.path.isfile(path):
            return path
        return None

    def _copy_local(self, segment: Segment, source_path: str, scope: TempFileScope) -> str:
        target = scope.new_path(prefix=f"{SEGMENT_TEMP_PREFIX}{segment.index}_")
        try:
            with open(source_path, "rb") as src, open(target, "wb") as dst:
                copy_stream(src, dst, block_bytes=self.copy_block_bytes)
        except FileNotFoundError as exc:
            raise FetchError(
                f"Local segment file not found: {source_path}",
                error_kind=ERROR_KIND_NOT_FOUND,
                segment_index=segment.index,
            ) from exc
        except OSError as exc:
            raise FetchError(
                f"Local segment copy failed: {exc}",
                error_kind=classify_fetch_exception(exc),
                segment_index=segment.index,
            ) from exc
        return target

    def _sleep_backoff(self, attempt: int, *, retry_is_5xx: bool) -> None:
        backoff_s = min(
            self.config.backoff_max_ms / 1000.0,
            (self.config.backoff_base_ms / 1000.0) * (2 ** max(0, int(attempt) - 1)),
        )
        if retry_is_5xx:
            backoff_s = min(self.config.backoff_max_ms / 1000.0, backoff_s * 1.6)
        backoff_s += random.uniform(0.0, 0.2)
        self._sleep(backoff_s)

    def _download(self, segment: Segment, url: str, scope: TempFileScope) -> str:
        try:
            request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
        except ValueError as exc:
            raise FetchError(
                f"Invalid segment URL {url!r}: {exc}",
                error_kind=ERROR_KIND_INVALID_URL,
                segment_index=segment.index,
            ) from exc
        target = scope.new_path(prefix=f"{SEGMENT_TEMP_PREFIX}{segment.index}_")
        last_exc: Optional[BaseException] = None
        last_kind = ""
        for attempt in range(1, self.config.retries + 1):
            retry_is_5xx = False
            started = time.time()
            try:
                with urllib.request.urlopen(request, timeout=self.config.timeout_seconds) as resp:
                    status = int(getattr(resp, "status", 200) or 200)
                    if status != 200:
                        raise FetchError(
                            f"HTTP {status} for {url}",
                            error_kind=ERROR_KIND_HTTP_STATUS,
                            segment_index=segment.index,
                        )
                    with open(target, "wb") as dst:
                        size = copy_stream(resp, dst, block_bytes=self.copy_block_bytes)
                if size <= 0:
                    raise FetchError(
                        f"Empty response body for {url}",
                        error_kind=ERROR_KIND_EMPTY_BODY,
                        segment_index=segment.index,
                    )
                self.logger.info(
                    "fetch_remote_ok",
                    segment=segment.index,
                    attempt=attempt,
                    bytes=size,
                    elapsed_ms=int((time.time() - started) * 1000),
                )
                return target
            except urllib.error.HTTPError as exc:
                code = int(getattr(exc, "code", 0) or 0)
                retry_is_5xx = 500 <= code <= 599
                retriable = _is_retriable_http(code)
                self.logger.warn(
                    "fetch_remote_http_error",
                    segment=segment.index,
                    attempt=attempt,
                    code=code,
                    retriable=retriable,
                )
                last_exc = exc
                last_kind = classify_fetch_exception(exc)
                if not retriable or attempt >= self.config.retries:
                    break
            except (OSError, http.client.HTTPException) as exc:
                self.logger.warn(
                    "fetch_remote_error",
                    segment=segment.index,
                    attempt=attempt,
                    error=str(exc),
                )
                last_exc = exc
                last_kind = classify_fetch_exception(exc)
                if attempt >= self.config.retries or not is_transient_error_kind(last_kind):
                    break
            self._sleep_backoff(attempt, retry_is_5xx=retry_is_5xx)
        raise FetchError(
            f"Download failed for {url}: {last_exc}",
            error_kind=last_kind,
            segment_index=segment.index,
        ) from last_exc

    def fetch(self, segment: Segment, scope: TempFileScope) -> FetchedSegment:
        """Copy or download one segment into a scope-owned temp file."""
        source = segment.source
        if isinstance(source, LocalSource):
            path = self._copy_local(segment, source.path, scope)
            kind = SOURCE_LOCAL_FILE
        elif isinstance(source, RemoteSource):
            local = self._resolve_local(source.url)
            if local is not None:
                path = self._copy_local(segment, local, scope)
                kind = SOURCE_LOCAL_URL
            else:
                path = self._download(segment, source.url, scope)
                kind = SOURCE_REMOTE
        else:
            raise FetchError(f"Unsupported segment source: {source!r}", segment_index=segment.index)
        size = os.path.getsize(path)
        if size <= 0:
            raise FetchError(
                "Segment is empty",
                error_kind=ERROR_KIND_EMPTY_BODY,
                segment_index=segment.index,
            )
        fetched = FetchedSegment(
            index=segment.index,
            path=path,
            size_bytes=size,
            source_kind=kind,
            container_format=sniff_file(path),
        )
        self.logger.debug(
            "fetch_segment_ready",
            segment=segment.index,
            source_kind=kind,
            bytes=size,
            container=fetched.container_format,
        )
        return fetched

    def fetch_all(
        self,
        segments: Sequence[Segment],
        scope: TempFileScope,
        *,
        parallel: Optional[bool] = None,
    ) -> List[FetchedSegment]:
        """Fetch every segment, returning results in segment order.

        On failure the scope still owns every temp file written so far; the
        caller's `with` block removes them.
        """
        use_parallel = self.config.parallel if parallel is None else bool(parallel)
        if not use_parallel or len(segments) <= 1:
            return [self.fetch(segment, scope) for segment in segments]

        workers = min(self.config.max_workers, len(segments))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
            futures = [pool.submit(self.fetch, segment, scope) for segment in segments]
        # Executor exit waits for every download, so no writer outlives the scope.
        results: List[FetchedSegment] = []
        for future in futures:
            results.append(future.result())
        return results
