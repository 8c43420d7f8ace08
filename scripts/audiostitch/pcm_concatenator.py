#!/usr/bin/env python3
from __future__ import annotations

"""Decode-and-re-encode fallback concatenation on float PCM buffers.

Used when byte-level stitching is unavailable: every segment is decoded to
float32 PCM, the buffers are merged in order and re-encoded as a 16-bit
canonical WAV (optionally carrying a LIST/INFO chunk). The result is handed
out as a revocable in-memory playable resource.
"""

import asyncio
import io
import struct
import threading
import time
import urllib.request
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import numpy as np
import soundfile as sf

from .config import ClientConfig
from .errors import ERROR_KIND_TIMEOUT, FetchError, FormatError, classify_fetch_exception
from .logging_utils import Logger
from .wav_header import WAVE_FORMAT_PCM

PCM16_BITS = 16


@dataclass(frozen=True)
class PcmBuffer:
    """Planar float32 samples shaped (channels, frames)."""

    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_seconds(self) -> float:
        return self.frames / float(self.sample_rate) if self.sample_rate else 0.0


class AudioDecoder(Protocol):
    def decode(self, data: bytes) -> PcmBuffer:
        ...


class SoundfileDecoder:
    """Decode any container libsndfile understands (WAV, FLAC, OGG, MP3)."""

    def decode(self, data: bytes) -> PcmBuffer:
        try:
            samples, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
        except RuntimeError as exc:
            raise FormatError(f"Audio decode failed: {exc}") from exc
        return PcmBuffer(samples=np.ascontiguousarray(samples.T), sample_rate=int(sample_rate))


def concatenate_buffers(buffers: Sequence[PcmBuffer]) -> PcmBuffer:
    """Merge buffers in order; a single buffer is returned unchanged."""
    if not buffers:
        raise ValueError("At least one audio buffer is required")
    if len(buffers) == 1:
        return buffers[0]
    first = buffers[0]
    for i, buf in enumerate(buffers[1:], start=1):
        if buf.channels != first.channels or buf.sample_rate != first.sample_rate:
            raise FormatError(
                "PCM buffers disagree on format: "
                f"expected {first.sample_rate}Hz/{first.channels}ch, got {buf.sample_rate}Hz/{buf.channels}ch",
                segment_index=i,
            )
    merged = np.concatenate([buf.samples.astype(np.float32, copy=False) for buf in buffers], axis=1)
    return PcmBuffer(samples=merged, sample_rate=first.sample_rate)


def quantize_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1], scale negatives by 32768 and positives by 32767.

    Rounds half up (as `Math.round` does) and interleaves planar
    (channels, frames) input into one little-endian int16 vector.
    """
    arr = np.asarray(samples, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr[np.newaxis, :]
    clipped = np.clip(arr, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    rounded = np.floor(scaled + 0.5)
    ints = np.clip(rounded, -32768, 32767).astype("<i2")
    return ints.T.reshape(-1)


@dataclass(frozen=True)
class InfoTags:
    title: str = ""
    artist: str = ""
    comment: str = ""
    software: str = ""
    created: str = ""


def _info_entry(chunk_id: bytes, text: str) -> bytes:
    payload = text.encode("latin-1", errors="replace") + b"\x00"
    entry = chunk_id + struct.pack("<I", len(payload)) + payload
    if len(payload) % 2:
        entry += b"\x00"
    return entry


def build_info_chunk(tags: InfoTags) -> bytes:
    entries = b""
    for chunk_id, value in (
        (b"INAM", tags.title),
        (b"IART", tags.artist),
        (b"ICMT", tags.comment),
        (b"ISFT", tags.software),
        (b"ICRD", tags.created),
    ):
        if value:
            entries += _info_entry(chunk_id, value)
    if not entries:
        return b""
    body = b"INFO" + entries
    return b"LIST" + struct.pack("<I", len(body)) + body


def encode_wav(buffer: PcmBuffer, tags: Optional[InfoTags] = None) -> bytes:
    pcm = quantize_pcm16(buffer.samples).tobytes()
    channels = buffer.channels
    block_align = channels * PCM16_BITS // 8
    byte_rate = buffer.sample_rate * block_align
    info = build_info_chunk(tags) if tags is not None else b""
    fmt_chunk = b"fmt " + struct.pack(
        "<IHHIIHH", 16, WAVE_FORMAT_PCM, channels, buffer.sample_rate, byte_rate, block_align, PCM16_BITS
    )
    data_chunk = b"data" + struct.pack("<I", len(pcm)) + pcm
    riff_size = 4 + len(fmt_chunk) + len(info) + len(data_chunk)
    return b"RIFF" + struct.pack("<I", riff_size) + b"WAVE" + fmt_chunk + info + data_chunk


class ResourceRegistry:
    """In-memory table of playable resources, released explicitly by callers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, bytes] = {}
        self._types: Dict[str, str] = {}

    def create(self, data: bytes, content_type: str = "audio/wav") -> "PlayableResource":
        handle = f"blob:{uuid.uuid4()}"
        with self._lock:
            self._items[handle] = data
            self._types[handle] = content_type
        return PlayableResource(handle=handle, content_type=content_type, size=len(data), registry=self)

    def get(self, handle: str) -> bytes:
        with self._lock:
            if handle not in self._items:
                raise KeyError(f"Unknown or revoked resource: {handle}")
            return self._items[handle]

    def revoke(self, handle: str) -> bool:
        with self._lock:
            self._types.pop(handle, None)
            return self._items.pop(handle, None) is not None

    @property
    def live_handles(self) -> List[str]:
        with self._lock:
            return list(self._items)


@dataclass(frozen=True)
class PlayableResource:
    handle: str
    content_type: str
    size: int
    registry: ResourceRegistry

    def read(self) -> bytes:
        return self.registry.get(self.handle)

    def release(self) -> bool:
        return self.registry.revoke(self.handle)


@dataclass(frozen=True)
class ConcatenationResult:
    resource: PlayableResource
    duration_seconds: float
    sample_rate: int
    channels: int
    segment_count: int


def fetch_url_bytes(url: str, timeout_seconds: float) -> bytes:
    with urllib.request.urlopen(url, timeout=timeout_seconds) as resp:
        return resp.read()


class ClientConcatenator:
    def __init__(
        self,
        *,
        config: ClientConfig,
        logger: Logger,
        registry: ResourceRegistry,
        decoder: Optional[AudioDecoder] = None,
        fetch_fn: Optional[Callable[[str, float], bytes]] = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self.registry = registry
        self.decoder = decoder or SoundfileDecoder()
        self.fetch_fn = fetch_fn or fetch_url_bytes

    def _load(self, url: str) -> PcmBuffer:
        data = self.fetch_fn(url, self.config.decode_timeout_seconds)
        return self.decoder.decode(data)

    async def _load_bounded(self, index: int, url: str) -> PcmBuffer:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._load, url),
                timeout=self.config.decode_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise FetchError(
                f"Fetch/decode timed out after {self.config.decode_timeout_seconds:.0f}s: {url}",
                error_kind=ERROR_KIND_TIMEOUT,
                segment_index=index,
            ) from exc
        except FormatError as exc:
            exc.segment_index = index
            raise
        except OSError as exc:
            raise FetchError(
                f"Fetch failed for {url}: {exc}",
                error_kind=classify_fetch_exception(exc),
                segment_index=index,
            ) from exc

    async def concatenate_urls(
        self,
        urls: Sequence[str],
        *,
        title: str = "",
        artist: str = "",
    ) -> ConcatenationResult:
        """Fetch, decode, merge and encode `urls` into a playable WAV resource."""
        if not urls:
            raise ValueError("At least one audio URL is required")
        started = time.time()
        buffers = await asyncio.gather(*(self._load_bounded(i, url) for i, url in enumerate(urls)))
        merged = concatenate_buffers(list(buffers))
        tags = None
        if self.config.embed_info:
            tags = InfoTags(
                title=title,
                artist=artist,
                comment=f"Duration: {merged.duration_seconds:.2f}s | Concatenated Audio",
                software=self.config.software,
                created=time.strftime("%Y-%m-%d"),
            )
        data = await asyncio.to_thread(encode_wav, merged, tags)
        resource = self.registry.create(data, "audio/wav")
        self.logger.info(
            "client_concat_ready",
            segments=len(urls),
            duration_s=round(merged.duration_seconds, 3),
            bytes=len(data),
            elapsed_ms=int((time.time() - started) * 1000),
            handle=resource.handle,
        )
        return ConcatenationResult(
            resource=resource,
            duration_seconds=merged.duration_seconds,
            sample_rate=merged.sample_rate,
            channels=merged.channels,
            segment_count=len(urls),
        )
