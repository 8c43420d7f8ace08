#!/usr/bin/env python3
from __future__ import annotations

"""Server-side binary stitching of WAV and MP3 segments.

Two algorithms only:

* WAV reconstruction: one fresh canonical header followed by the `data`
  payload of every segment, located per segment by the format analyzer.
* MP3 append: MPEG frames of every segment streamed back to back. Leading
  ID3v2 and trailing ID3v1 tags are dropped so the repairer can author the
  single tag the output carries.

Output is written to a uniquely named `<output>.<random>.tmp` sibling and
renamed into place only after it passed the minimum size check, so a failed
job never leaves a partial file and concurrent jobs never share a temp file.
"""

import os
import tempfile
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .config import StitchConfig
from .errors import (
    ERROR_KIND_FORMAT_MISMATCH,
    CorruptOutputError,
    FetchError,
    FormatError,
    StitchError,
    StitchTimeoutError,
    WriteError,
)
from .format_analyzer import (
    ID3V1_TAG_SIZE,
    ID3V2_HEADER_SIZE,
    WavInfo,
    analyze_mp3,
    analyze_wav,
    estimate_mp3_duration,
    id3v2_total_size,
)
from .logging_utils import Logger
from .models import CONTAINER_MP3, CONTAINER_WAV, normalize_container
from .segment_fetcher import copy_stream
from .wav_header import CANONICAL_HEADER_SIZE, WavHeader


@dataclass(frozen=True)
class StitchInput:
    index: int
    path: str


@dataclass(frozen=True)
class StitchResult:
    output_path: str
    container_format: str
    bytes_written: int
    data_size: int
    duration_seconds: float
    segment_count: int
    sample_rate: int
    channels: int
    bits_per_sample: int


def inputs_from_paths(paths: Sequence[str]) -> List[StitchInput]:
    return [StitchInput(index=i, path=p) for i, p in enumerate(paths)]


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class BinaryStitcher:
    def __init__(self, *, config: StitchConfig, logger: Logger) -> None:
        self.config = config
        self.logger = logger

    def _check_deadline(self, deadline: Optional[float], segment_index: int) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise StitchTimeoutError(
                f"Job time budget of {self.config.job_time_budget_seconds:.0f}s exceeded",
                segment_index=segment_index,
            )

    def stitch(
        self,
        segments: Sequence[StitchInput],
        container_format: str,
        output_path: str,
        *,
        deadline: Optional[float] = None,
    ) -> StitchResult:
        """Stitch local segment files (already in order) into `output_path`."""
        if not segments:
            raise StitchError("No segments to stitch")
        try:
            fmt = normalize_container(container_format)
        except ValueError as exc:
            raise FormatError(str(exc)) from exc

        out_dir = os.path.dirname(os.path.abspath(output_path))
        os.makedirs(out_dir, exist_ok=True)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=out_dir, prefix=os.path.basename(output_path) + ".", suffix=".tmp")
            os.close(fd)
        except OSError as exc:
            raise WriteError(f"Cannot create temp output: {exc}") from exc
        try:
            if fmt == CONTAINER_WAV:
                result = self._stitch_wav(segments, tmp_path, output_path, deadline)
            else:
                result = self._stitch_mp3(segments, tmp_path, output_path, deadline)
            if result.bytes_written < self.config.min_output_bytes:
                raise CorruptOutputError(
                    f"Stitched output too small ({result.bytes_written} bytes, "
                    f"minimum {self.config.min_output_bytes})"
                )
            os.replace(tmp_path, output_path)
        except BaseException:
            _remove_quietly(tmp_path)
            raise
        self.logger.info(
            "stitch_output_written",
            container=fmt,
            segments=result.segment_count,
            bytes=result.bytes_written,
            duration_s=round(result.duration_seconds, 3),
        )
        return result

    def _resolve_wav_layout(
        self, segments: Sequence[StitchInput]
    ) -> Tuple[Tuple[int, int, int, int], List[Tuple[int, int]]]:
        """Return (format, per-segment (data_offset, data_size))."""
        infos: List[Optional[WavInfo]] = []
        for seg in segments:
            try:
                infos.append(analyze_wav(seg.path))
            except FormatError as exc:
                self.logger.warn(
                    "stitch_wav_header_unparsed",
                    segment=seg.index,
                    error=str(exc),
                    fallback_offset=CANONICAL_HEADER_SIZE,
                )
                infos.append(None)

        reference = next((info for info in infos if info is not None), None)
        if reference is None:
            fmt = (
                1,
                self.config.default_sample_rate,
                self.config.default_channels,
                self.config.default_bits_per_sample,
            )
            self.logger.warn(
                "stitch_wav_default_format",
                sample_rate=fmt[1],
                channels=fmt[2],
                bits_per_sample=fmt[3],
            )
        else:
            fmt = (
                reference.audio_format_tag,
                reference.sample_rate,
                reference.channels,
                reference.bits_per_sample,
            )

        layout: List[Tuple[int, int]] = []
        for seg, info in zip(segments, infos):
            if info is None:
                size = os.path.getsize(seg.path)
                layout.append((CANONICAL_HEADER_SIZE, max(0, size - CANONICAL_HEADER_SIZE)))
                continue
            if reference is not None and not info.same_format(reference):
                raise FormatError(
                    "WAV segments disagree on format: "
                    f"expected {reference.sample_rate}Hz/{reference.channels}ch/{reference.bits_per_sample}bit, "
                    f"got {info.sample_rate}Hz/{info.channels}ch/{info.bits_per_sample}bit",
                    error_kind=ERROR_KIND_FORMAT_MISMATCH,
                    segment_index=seg.index,
                )
            if info.header_size != CANONICAL_HEADER_SIZE:
                self.logger.debug("stitch_wav_noncanonical_header", segment=seg.index, header_bytes=info.header_size)
            layout.append((info.header_size, info.data_size))
        return fmt, layout

    def _copy_region(self, seg: StitchInput, dst, offset: int, size: Optional[int]) -> int:
        try:
            src = open(seg.path, "rb")
        except OSError as exc:
            raise FetchError(f"Cannot open segment file: {exc}", segment_index=seg.index) from exc
        with src:
            try:
                src.seek(offset)
                return copy_stream(src, dst, block_bytes=self.config.copy_block_bytes, limit=size)
            except OSError as exc:
                raise WriteError(f"Segment copy failed: {exc}", segment_index=seg.index) from exc

    def _stitch_wav(
        self,
        segments: Sequence[StitchInput],
        tmp_path: str,
        output_path: str,
        deadline: Optional[float],
    ) -> StitchResult:
        (tag, sample_rate, channels, bits), layout = self._resolve_wav_layout(segments)
        expected = sum(size for _, size in layout)
        header = WavHeader(
            num_channels=channels,
            sample_rate=sample_rate,
            bits_per_sample=bits,
            data_size=expected,
            audio_format=tag,
        )
        total = 0
        try:
            dst = open(tmp_path, "wb")
        except OSError as exc:
            raise WriteError(f"Cannot open output for writing: {exc}") from exc
        with dst:
            try:
                dst.write(header.pack())
            except OSError as exc:
                raise WriteError(f"Header write failed: {exc}") from exc
            for seg, (offset, size) in zip(segments, layout):
                self._check_deadline(deadline, seg.index)
                copied = self._copy_region(seg, dst, offset, size)
                total += copied
                self.logger.debug("stitch_segment_copied", segment=seg.index, offset=offset, bytes=copied)
            if total != expected:
                # A segment was shorter than its header claimed; keep the header honest.
                self.logger.warn("stitch_wav_size_adjusted", expected=expected, actual=total)
                header = WavHeader(
                    num_channels=channels,
                    sample_rate=sample_rate,
                    bits_per_sample=bits,
                    data_size=total,
                    audio_format=tag,
                )
                try:
                    dst.seek(0)
                    dst.write(header.pack())
                except OSError as exc:
                    raise WriteError(f"Header rewrite failed: {exc}") from exc
        return StitchResult(
            output_path=output_path,
            container_format=CONTAINER_WAV,
            bytes_written=CANONICAL_HEADER_SIZE + total,
            data_size=total,
            duration_seconds=header.duration_seconds,
            segment_count=len(segments),
            sample_rate=sample_rate,
            channels=channels,
            bits_per_sample=bits,
        )

    def _mp3_frame_region(self, seg: StitchInput) -> Tuple[int, int]:
        """Byte range holding MPEG frames, excluding ID3v2/ID3v1 tags."""
        size = os.path.getsize(seg.path)
        try:
            with open(seg.path, "rb") as f:
                start = id3v2_total_size(f.read(ID3V2_HEADER_SIZE))
                end = size
                if size - start >= ID3V1_TAG_SIZE:
                    f.seek(size - ID3V1_TAG_SIZE)
                    if f.read(3) == b"TAG":
                        end = size - ID3V1_TAG_SIZE
        except OSError as exc:
            raise FetchError(f"Cannot read segment file: {exc}", segment_index=seg.index) from exc
        if start >= end:
            self.logger.warn("stitch_mp3_tag_only_segment", segment=seg.index, bytes=size)
            return 0, size
        return start, end - start

    def _stitch_mp3(
        self,
        segments: Sequence[StitchInput],
        tmp_path: str,
        output_path: str,
        deadline: Optional[float],
    ) -> StitchResult:
        total = 0
        try:
            dst = open(tmp_path, "wb")
        except OSError as exc:
            raise WriteError(f"Cannot open output for writing: {exc}") from exc
        with dst:
            for seg in segments:
                self._check_deadline(deadline, seg.index)
                offset, size = self._mp3_frame_region(seg)
                copied = self._copy_region(seg, dst, offset, size)
                total += copied
                self.logger.debug("stitch_segment_copied", segment=seg.index, offset=offset, bytes=copied)

        duration = 0.0
        sample_rate = 0
        channels = 0
        try:
            duration = estimate_mp3_duration(tmp_path)
        except FormatError as exc:
            # Unparseable frames are tolerated for MP3; the bytes are still playable.
            self.logger.warn("stitch_mp3_duration_unknown", error=str(exc))
        else:
            info = analyze_mp3(tmp_path)
            sample_rate = info.sample_rate
            channels = info.channels
        return StitchResult(
            output_path=output_path,
            container_format=CONTAINER_MP3,
            bytes_written=total,
            data_size=total,
            duration_seconds=duration,
            segment_count=len(segments),
            sample_rate=sample_rate,
            channels=channels,
            bits_per_sample=0,
        )
