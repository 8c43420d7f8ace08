#!/usr/bin/env python3
from __future__ import annotations

"""Value types shared by the fetch/stitch/serve layers."""

import hashlib
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

CONTAINER_WAV = "wav"
CONTAINER_MP3 = "mp3"
CONTAINER_FORMATS = (CONTAINER_WAV, CONTAINER_MP3)

CONTENT_TYPES = {
    CONTAINER_WAV: "audio/wav",
    CONTAINER_MP3: "audio/mpeg",
}

CACHE_FILE_PREFIX = "concatenated_"


def normalize_container(value: str) -> str:
    fmt = str(value or "").strip().lower().lstrip(".")
    if fmt == "mpeg":
        fmt = CONTAINER_MP3
    if fmt not in CONTAINER_FORMATS:
        raise ValueError(f"Unsupported container format: {value!r}")
    return fmt


@dataclass(frozen=True)
class LocalSource:
    path: str

    @property
    def ref(self) -> str:
        return self.path


@dataclass(frozen=True)
class RemoteSource:
    url: str

    @property
    def ref(self) -> str:
        return self.url


SegmentSource = Union[LocalSource, RemoteSource]


def source_from_ref(ref: str) -> SegmentSource:
    """Map a URL or filesystem path to a source variant."""
    scheme = urllib.parse.urlparse(str(ref)).scheme.lower()
    if scheme in {"http", "https"}:
        return RemoteSource(url=str(ref))
    if scheme == "file":
        return LocalSource(path=urllib.parse.unquote(urllib.parse.urlparse(str(ref)).path))
    return LocalSource(path=str(ref))


@dataclass(frozen=True)
class Segment:
    """One fetched-or-fetchable piece of the final file; index 0 may be a pre-roll."""

    index: int
    source: SegmentSource
    container_format: str = ""


@dataclass(frozen=True)
class SingleAudio:
    url: str

    def urls(self) -> List[str]:
        return [self.url]


@dataclass(frozen=True)
class ChunkedAudio:
    chunk_urls: Tuple[str, ...]

    def urls(self) -> List[str]:
        return list(self.chunk_urls)


AudioRef = Union[SingleAudio, ChunkedAudio]


def audio_ref_from_value(value: Any) -> Optional[AudioRef]:
    """Decode the stored JSON form (string or list of strings)."""
    if value is None or value == "" or value == []:
        return None
    if isinstance(value, str):
        return SingleAudio(url=value)
    if isinstance(value, (list, tuple)):
        urls = tuple(str(item) for item in value if str(item or "").strip())
        if not urls:
            return None
        return ChunkedAudio(chunk_urls=urls)
    raise ValueError(f"Unsupported audio reference: {type(value).__name__}")


def audio_ref_to_value(ref: Optional[AudioRef]) -> Any:
    if ref is None:
        return None
    if isinstance(ref, SingleAudio):
        return ref.url
    return list(ref.chunk_urls)


def compute_cache_key(refs: Sequence[str], output_format: str) -> str:
    """Deterministic key over the ordered segment references and output format."""
    payload = "|".join(str(r) for r in refs) + "|" + str(output_format)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def cache_file_name(cache_key: str, output_format: str) -> str:
    return f"{CACHE_FILE_PREFIX}{cache_key}.{output_format}"


@dataclass(frozen=True)
class StitchJob:
    segments: Tuple[Segment, ...]
    output_format: str

    @staticmethod
    def from_refs(refs: Sequence[str], output_format: str) -> "StitchJob":
        segments = tuple(Segment(index=i, source=source_from_ref(ref)) for i, ref in enumerate(refs))
        return StitchJob(segments=segments, output_format=normalize_container(output_format))

    @property
    def refs(self) -> List[str]:
        return [seg.source.ref for seg in self.segments]

    @property
    def cache_key(self) -> str:
        return compute_cache_key(self.refs, self.output_format)

    @property
    def output_name(self) -> str:
        return cache_file_name(self.cache_key, self.output_format)


# ConversionStatus values.
STATUS_PENDING = "pending"
STATUS_CONVERTING = "converting"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"
CONVERSION_STATUSES = (STATUS_PENDING, STATUS_CONVERTING, STATUS_COMPLETE, STATUS_FAILED)

_ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CONVERTING},
    STATUS_CONVERTING: {STATUS_COMPLETE, STATUS_FAILED},
    STATUS_FAILED: {STATUS_CONVERTING},
    STATUS_COMPLETE: {STATUS_CONVERTING},
}


def validate_status_transition(current: str, target: str) -> None:
    if target not in CONVERSION_STATUSES:
        raise ValueError(f"Unknown conversion status: {target!r}")
    if target not in _ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Illegal conversion status transition: {current} -> {target}")


@dataclass
class ContentRecord:
    """Metadata-store entry for one piece of narrated content."""

    content_id: str
    audio: Optional[AudioRef] = None
    output_format: str = CONTAINER_MP3
    conversion_status: str = STATUS_PENDING
    error_message: str = ""
    stitched_url: str = ""
    updated_at: float = field(default_factory=time.time)

    def transition(self, target: str, *, error_message: str = "") -> None:
        validate_status_transition(self.conversion_status, target)
        self.conversion_status = target
        self.error_message = error_message if target == STATUS_FAILED else ""
        self.updated_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "audio": audio_ref_to_value(self.audio),
            "output_format": self.output_format,
            "conversion_status": self.conversion_status,
            "error_message": self.error_message,
            "stitched_url": self.stitched_url,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(payload: Dict[str, Any]) -> "ContentRecord":
        status = str(payload.get("conversion_status") or STATUS_PENDING)
        if status not in CONVERSION_STATUSES:
            status = STATUS_PENDING
        return ContentRecord(
            content_id=str(payload.get("content_id", "")),
            audio=audio_ref_from_value(payload.get("audio")),
            output_format=str(payload.get("output_format") or CONTAINER_MP3),
            conversion_status=status,
            error_message=str(payload.get("error_message") or ""),
            stitched_url=str(payload.get("stitched_url") or ""),
            updated_at=float(payload.get("updated_at") or 0.0),
        )
