#!/usr/bin/env python3
from __future__ import annotations

"""HTTP surface: stitched download endpoint and range-capable file serving."""

import os
import re
import time
from typing import Iterator, Optional, Tuple

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse

from .errors import ERROR_KIND_NOT_FOUND, StitchJobError, StoreError
from .logging_utils import Logger
from .metadata_store import MetadataStore
from .models import CONTENT_TYPES, SingleAudio, normalize_container
from .object_store import LocalObjectStore
from .stitch_service import StitchService

_SAFE_FILE_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiable(ValueError):
    pass


def parse_byte_range(header: str, size: int) -> Tuple[int, int]:
    """Parse a single `bytes=` range into an inclusive (start, end) pair."""
    match = _RANGE_RE.match(str(header or "").strip().replace(" ", ""))
    if match is None or size <= 0:
        raise RangeNotSatisfiable(header)
    first, last = match.group(1), match.group(2)
    if first == "" and last == "":
        raise RangeNotSatisfiable(header)
    if first == "":
        suffix = int(last)
        if suffix <= 0:
            raise RangeNotSatisfiable(header)
        return max(0, size - suffix), size - 1
    start = int(first)
    end = size - 1 if last == "" else min(int(last), size - 1)
    if start >= size or start > end:
        raise RangeNotSatisfiable(header)
    return start, end


def iter_file_range(path: str, start: int, length: int, block_bytes: int = 65536) -> Iterator[bytes]:
    with open(path, "rb") as f:
        f.seek(start)
        remaining = length
        while remaining > 0:
            block = f.read(min(block_bytes, remaining))
            if not block:
                break
            remaining -= len(block)
            yield block


def _content_type_for(name: str) -> str:
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    return CONTENT_TYPES.get(ext, "application/octet-stream")


def create_app(
    *,
    service: StitchService,
    metadata: MetadataStore,
    objects: Optional[LocalObjectStore] = None,
    logger: Optional[Logger] = None,
) -> FastAPI:
    log = logger or service.logger
    app = FastAPI(title="audiostitch", version="1.0.0")
    block_bytes = service.config.copy_block_bytes

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/audio/{content_id}/download")
    def download(content_id: str, format: str = Query("mp3")) -> StreamingResponse:
        try:
            fmt = normalize_container(format)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unsupported format: {format}")
        record = metadata.get(content_id)
        if record is None or record.audio is None:
            raise HTTPException(status_code=404, detail="No audio found for this content")
        if isinstance(record.audio, SingleAudio):
            raise HTTPException(status_code=409, detail="Content has a single audio file; download it directly")
        try:
            outcome = service.stitch_content(content_id, output_format=fmt)
        except StitchJobError as exc:
            if exc.error_kind == ERROR_KIND_NOT_FOUND:
                raise HTTPException(status_code=404, detail=str(exc))
            log.error("http_download_failed", content_id=content_id, error=str(exc))
            raise HTTPException(status_code=502, detail=str(exc))
        size = os.path.getsize(outcome.output_path)
        filename = f"audio-{content_id}-{time.strftime('%Y-%m-%d-%H-%M-%S')}.{fmt}"
        headers = {
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(size),
            "Accept-Ranges": "bytes",
            "Cache-Control": "no-cache, must-revalidate",
        }
        log.info("http_download", content_id=content_id, format=fmt, bytes=size, cached=outcome.cached)
        return StreamingResponse(
            iter_file_range(outcome.output_path, 0, size, block_bytes),
            media_type=CONTENT_TYPES[fmt],
            headers=headers,
        )

    @app.get("/audio/files/{file_name}")
    def serve_file(file_name: str, request: Request) -> Response:
        if not _SAFE_FILE_RE.match(file_name) or file_name.startswith("."):
            raise HTTPException(status_code=404, detail="Not found")
        return serve_path(os.path.join(service.config.cache_dir, file_name), request, block_bytes)

    if objects is not None:

        @app.get("/uploads/{key:path}")
        def serve_object(key: str, request: Request) -> Response:
            try:
                path = objects.path_for_key(key)
            except StoreError:
                raise HTTPException(status_code=404, detail="Not found")
            return serve_path(path, request, block_bytes)

    return app


def serve_path(path: str, request: Request, block_bytes: int = 65536) -> Response:
    """Stream a file, honouring a single `Range` request header."""
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Not found")
    size = os.path.getsize(path)
    media_type = _content_type_for(os.path.basename(path))
    range_header = request.headers.get("range")
    if not range_header:
        return StreamingResponse(
            iter_file_range(path, 0, size, block_bytes),
            media_type=media_type,
            headers={"Content-Length": str(size), "Accept-Ranges": "bytes"},
        )
    try:
        start, end = parse_byte_range(range_header, size)
    except RangeNotSatisfiable:
        return Response(
            status_code=416,
            headers={"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"},
        )
    length = end - start + 1
    return StreamingResponse(
        iter_file_range(path, start, length, block_bytes),
        status_code=206,
        media_type=media_type,
        headers={
            "Content-Range": f"bytes {start}-{end}/{size}",
            "Content-Length": str(length),
            "Accept-Ranges": "bytes",
        },
    )
