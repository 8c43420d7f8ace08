#!/usr/bin/env python3
from __future__ import annotations

import http.client
import re
import socket
import urllib.error
from typing import Iterable, List, Optional

ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_RATE_LIMIT = "rate_limit"
ERROR_KIND_NETWORK = "network"
ERROR_KIND_HTTP_STATUS = "http_status"
ERROR_KIND_EMPTY_BODY = "empty_body"
ERROR_KIND_NOT_FOUND = "not_found"
ERROR_KIND_INVALID_URL = "invalid_url"
ERROR_KIND_SINGLE_FILE = "single_file"
ERROR_KIND_INVALID_FORMAT = "invalid_format"
ERROR_KIND_CROSS_FORMAT = "cross_format"
ERROR_KIND_FORMAT_MISMATCH = "format_mismatch"
ERROR_KIND_WRITE = "write_failed"
ERROR_KIND_CORRUPT_OUTPUT = "corrupt_output"
ERROR_KIND_PROVIDER = "provider_failed"
ERROR_KIND_STORE = "store_failed"
ERROR_KIND_INTERRUPTED = "interrupted"
ERROR_KIND_UNKNOWN = "unknown"

STAGE_FETCH = "fetch"
STAGE_ANALYZE = "analyze"
STAGE_STITCH = "stitch"
STAGE_WRITE = "write"
STAGE_REPAIR = "repair"
STAGE_VERIFY = "verify"
STAGE_SYNTHESIZE = "synthesize"
STAGE_STORE = "store"

TRANSIENT_ERROR_KINDS = {
    ERROR_KIND_TIMEOUT,
    ERROR_KIND_RATE_LIMIT,
    ERROR_KIND_NETWORK,
}


def is_transient_error_kind(kind: str) -> bool:
    return str(kind or "").strip().lower() in TRANSIENT_ERROR_KINDS


class StitchError(RuntimeError):
    """Base class for every failure raised while building a stitched file."""

    default_kind = ERROR_KIND_UNKNOWN
    default_stage = STAGE_STITCH

    def __init__(
        self,
        message: str,
        *,
        error_kind: str = "",
        stage: str = "",
        segment_index: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.error_kind = str(error_kind or self.default_kind).strip().lower()
        self.stage = str(stage or self.default_stage).strip().lower()
        self.segment_index = segment_index

    def describe(self) -> str:
        where = f"stage={self.stage}"
        if self.segment_index is not None:
            where += f" segment={self.segment_index}"
        return f"{where} kind={self.error_kind}: {self}"


class FetchError(StitchError):
    default_kind = ERROR_KIND_NETWORK
    default_stage = STAGE_FETCH


class FormatError(StitchError):
    default_kind = ERROR_KIND_INVALID_FORMAT
    default_stage = STAGE_ANALYZE


class CrossFormatError(FormatError):
    default_kind = ERROR_KIND_CROSS_FORMAT


class WriteError(StitchError):
    default_kind = ERROR_KIND_WRITE
    default_stage = STAGE_WRITE


class CorruptOutputError(StitchError):
    default_kind = ERROR_KIND_CORRUPT_OUTPUT
    default_stage = STAGE_VERIFY


class StoreError(StitchError):
    default_kind = ERROR_KIND_STORE
    default_stage = STAGE_STORE


class StitchTimeoutError(StitchError):
    default_kind = ERROR_KIND_TIMEOUT
    default_stage = STAGE_STITCH


class ProviderError(StitchError):
    default_kind = ERROR_KIND_PROVIDER
    default_stage = STAGE_SYNTHESIZE

    def __init__(
        self,
        message: str,
        *,
        chunk_index: Optional[int] = None,
        error_kind: str = "",
    ) -> None:
        super().__init__(message, error_kind=error_kind, segment_index=chunk_index)
        self.chunk_index = chunk_index


class StitchJobError(RuntimeError):
    """Single failure surfaced at the job boundary with its root cause attached."""

    def __init__(self, cause: StitchError, *, cache_key: str = "") -> None:
        self.cause = cause
        self.cache_key = cache_key
        self.error_kind = cause.error_kind
        self.stage = cause.stage
        self.segment_index = cause.segment_index
        super().__init__(f"Audio concatenation failed ({cause.describe()})")


def _iter_exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        yield current
        seen.add(id(current))
        next_exc = getattr(current, "__cause__", None) or getattr(current, "__context__", None)
        current = next_exc if isinstance(next_exc, BaseException) else None


def classify_fetch_exception(exc: BaseException) -> str:
    messages: List[str] = []
    for item in _iter_exception_chain(exc):
        if isinstance(item, StitchError) and item.error_kind != ERROR_KIND_UNKNOWN:
            return item.error_kind
        if isinstance(item, InterruptedError):
            return ERROR_KIND_INTERRUPTED
        if isinstance(item, (TimeoutError, socket.timeout)):
            return ERROR_KIND_TIMEOUT
        if isinstance(item, urllib.error.HTTPError):
            code = int(getattr(item, "code", 0) or 0)
            if code == 429:
                return ERROR_KIND_RATE_LIMIT
            if code in {408, 504}:
                return ERROR_KIND_TIMEOUT
            if code == 404:
                return ERROR_KIND_NOT_FOUND
            if code >= 500:
                return ERROR_KIND_NETWORK
            return ERROR_KIND_HTTP_STATUS
        if isinstance(item, urllib.error.URLError):
            reason = getattr(item, "reason", None)
            if isinstance(reason, (TimeoutError, socket.timeout)):
                return ERROR_KIND_TIMEOUT
            return ERROR_KIND_NETWORK
        if isinstance(item, (ConnectionError, http.client.HTTPException)):
            # Truncated bodies and malformed status lines.
            return ERROR_KIND_NETWORK
        if isinstance(item, FileNotFoundError):
            return ERROR_KIND_NOT_FOUND
        messages.append(str(item or ""))

    message = " ".join(messages).lower()
    if "429" in message or "rate limit" in message:
        return ERROR_KIND_RATE_LIMIT
    if "timeout" in message or "timed out" in message:
        return ERROR_KIND_TIMEOUT
    if re.search(r"\b(connection|network|urlopen error)\b", message):
        return ERROR_KIND_NETWORK
    return ERROR_KIND_UNKNOWN

