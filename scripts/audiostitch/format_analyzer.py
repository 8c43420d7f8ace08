#!/usr/bin/env python3
from __future__ import annotations

"""Container sniffing and header analysis for WAV and MP3 segments.

WAV files are scanned chunk by chunk so non-canonical headers (LIST/fact/
bext chunks before `data`) resolve to the true payload location. MP3 files
are scanned for the first valid MPEG audio frame after any leading ID3v2 tag.
"""

import io
import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, Optional, Tuple, Union

from .errors import FormatError
from .models import CONTAINER_MP3, CONTAINER_WAV

SNIFF_BYTES = 12
MP3_SYNC_SCAN_BYTES = 256 * 1024
ID3V2_HEADER_SIZE = 10
ID3V1_TAG_SIZE = 128

# MPEG version bits -> label.
MPEG_VERSIONS = {0: "2.5", 2: "2", 3: "1"}
# Layer bits -> layer number.
MPEG_LAYERS = {1: 3, 2: 2, 3: 1}

_BITRATES_KBPS = {
    ("1", 1): (0, 32, 64, 96, 128, 160, 192, 224, 256, 288, 320, 352, 384, 416, 448),
    ("1", 2): (0, 32, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320, 384),
    ("1", 3): (0, 32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320),
    ("2", 1): (0, 32, 48, 56, 64, 80, 96, 112, 128, 144, 160, 176, 192, 224, 256),
    ("2", 2): (0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160),
    ("2", 3): (0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160),
}

_SAMPLE_RATES = {
    "1": (44100, 48000, 32000),
    "2": (22050, 24000, 16000),
    "2.5": (11025, 12000, 8000),
}

CHANNEL_MODES = {0: "stereo", 1: "joint_stereo", 2: "dual_channel", 3: "mono"}


@dataclass(frozen=True)
class WavInfo:
    audio_format_tag: int
    channels: int
    sample_rate: int
    bits_per_sample: int
    byte_rate: int
    block_align: int
    data_offset: int
    data_size: int
    file_size: int

    container: str = CONTAINER_WAV

    @property
    def header_size(self) -> int:
        """Bytes in front of the PCM payload (44 only for canonical headers)."""
        return self.data_offset

    @property
    def duration_seconds(self) -> float:
        if self.byte_rate <= 0:
            return 0.0
        return self.data_size / float(self.byte_rate)

    def same_format(self, other: "WavInfo") -> bool:
        return (
            self.sample_rate == other.sample_rate
            and self.channels == other.channels
            and self.bits_per_sample == other.bits_per_sample
        )


@dataclass(frozen=True)
class Mp3FrameHeader:
    version: str
    layer: int
    bitrate_kbps: int
    sample_rate: int
    padding: int
    channel_mode: str

    @property
    def channels(self) -> int:
        return 1 if self.channel_mode == "mono" else 2

    @property
    def samples_per_frame(self) -> int:
        if self.layer == 1:
            return 384
        if self.layer == 3 and self.version != "1":
            return 576
        return 1152

    @property
    def frame_length(self) -> int:
        if self.layer == 1:
            return (12 * self.bitrate_kbps * 1000 // self.sample_rate + self.padding) * 4
        return self.samples_per_frame // 8 * self.bitrate_kbps * 1000 // self.sample_rate + self.padding


@dataclass(frozen=True)
class Mp3Info:
    version: str
    layer: int
    bitrate_kbps: int
    sample_rate: int
    channels: int
    channel_mode: str
    id3_size: int
    first_frame_offset: int
    file_size: int

    container: str = CONTAINER_MP3


AudioInfo = Union[WavInfo, Mp3Info]


def sniff_container(head: bytes) -> str:
    """Return "wav", "mp3" or "" from the first bytes of a file."""
    if len(head) >= 12 and head[0:4] == b"RIFF" and head[8:12] == b"WAVE":
        return CONTAINER_WAV
    if head[0:3] == b"ID3":
        return CONTAINER_MP3
    if len(head) >= 2 and head[0] == 0xFF and (head[1] & 0xE0) == 0xE0:
        return CONTAINER_MP3
    return ""


def sniff_file(path: str) -> str:
    with open(path, "rb") as f:
        return sniff_container(f.read(SNIFF_BYTES))


def synchsafe_to_int(data: bytes) -> int:
    value = 0
    for byte in data[:4]:
        value = (value << 7) | (byte & 0x7F)
    return value


def int_to_synchsafe(value: int) -> bytes:
    if value < 0 or value > 0x0FFFFFFF:
        raise ValueError(f"value does not fit a synchsafe integer: {value}")
    return bytes(
        [
            (value >> 21) & 0x7F,
            (value >> 14) & 0x7F,
            (value >> 7) & 0x7F,
            value & 0x7F,
        ]
    )


def id3v2_total_size(head: bytes) -> int:
    """Size in bytes of a leading ID3v2 tag (header + body + footer), or 0."""
    if len(head) < ID3V2_HEADER_SIZE or head[0:3] != b"ID3":
        return 0
    size = synchsafe_to_int(head[6:10]) + ID3V2_HEADER_SIZE
    if head[5] & 0x10:
        size += ID3V2_HEADER_SIZE
    return size


def parse_mp3_frame_header(header: bytes) -> Optional[Mp3FrameHeader]:
    """Decode a 4-byte MPEG audio frame header; None when it is not valid."""
    if len(header) < 4 or header[0] != 0xFF or (header[1] & 0xE0) != 0xE0:
        return None
    version = MPEG_VERSIONS.get((header[1] >> 3) & 0x03)
    layer = MPEG_LAYERS.get((header[1] >> 1) & 0x03)
    if version is None or layer is None:
        return None
    bitrate_index = (header[2] >> 4) & 0x0F
    sample_rate_index = (header[2] >> 2) & 0x03
    if bitrate_index in (0, 15) or sample_rate_index == 3:
        return None
    table_version = "1" if version == "1" else "2"
    bitrate = _BITRATES_KBPS[(table_version, layer)][bitrate_index]
    sample_rate = _SAMPLE_RATES[version][sample_rate_index]
    return Mp3FrameHeader(
        version=version,
        layer=layer,
        bitrate_kbps=bitrate,
        sample_rate=sample_rate,
        padding=(header[2] >> 1) & 0x01,
        channel_mode=CHANNEL_MODES[(header[3] >> 6) & 0x03],
    )


def _stream_size(f: BinaryIO) -> int:
    pos = f.tell()
    f.seek(0, os.SEEK_END)
    size = f.tell()
    f.seek(pos)
    return size


def analyze_wav_stream(f: BinaryIO) -> WavInfo:
    file_size = _stream_size(f)
    f.seek(0)
    head = f.read(12)
    if len(head) < 12 or head[0:4] != b"RIFF" or head[8:12] != b"WAVE":
        raise FormatError("Not a RIFF/WAVE file")

    fmt: Optional[Tuple[int, int, int, int, int, int]] = None
    offset = 12
    while offset + 8 <= file_size:
        f.seek(offset)
        chunk_header = f.read(8)
        if len(chunk_header) < 8:
            break
        chunk_id = chunk_header[0:4]
        (chunk_size,) = struct.unpack("<I", chunk_header[4:8])
        body_offset = offset + 8
        if chunk_id == b"fmt ":
            body = f.read(min(chunk_size, 40))
            if len(body) < 16:
                raise FormatError("Truncated fmt chunk")
            fmt = struct.unpack("<HHIIHH", body[:16])
        elif chunk_id == b"data":
            if fmt is None:
                raise FormatError("data chunk found before fmt chunk")
            remaining = file_size - body_offset
            # Streaming writers leave 0 or 0xFFFFFFFF placeholders; trust the file.
            data_size = chunk_size if 0 < chunk_size <= remaining else max(0, remaining)
            tag, channels, sample_rate, byte_rate, block_align, bits = fmt
            if channels <= 0 or sample_rate <= 0 or bits <= 0:
                raise FormatError(
                    f"Invalid fmt values: channels={channels} sample_rate={sample_rate} bits={bits}"
                )
            return WavInfo(
                audio_format_tag=tag,
                channels=channels,
                sample_rate=sample_rate,
                bits_per_sample=bits,
                byte_rate=byte_rate or sample_rate * channels * bits // 8,
                block_align=block_align or channels * bits // 8,
                data_offset=body_offset,
                data_size=data_size,
                file_size=file_size,
            )
        # Chunks are word aligned.
        offset = body_offset + chunk_size + (chunk_size & 1)
    if fmt is None:
        raise FormatError("Missing fmt chunk")
    raise FormatError("Missing data chunk")


def analyze_mp3_stream(f: BinaryIO) -> Mp3Info:
    file_size = _stream_size(f)
    f.seek(0)
    id3_size = id3v2_total_size(f.read(ID3V2_HEADER_SIZE))
    f.seek(id3_size)
    window = f.read(MP3_SYNC_SCAN_BYTES)
    pos = window.find(b"\xff")
    while 0 <= pos <= len(window) - 4:
        frame = parse_mp3_frame_header(window[pos : pos + 4])
        if frame is not None:
            return Mp3Info(
                version=frame.version,
                layer=frame.layer,
                bitrate_kbps=frame.bitrate_kbps,
                sample_rate=frame.sample_rate,
                channels=frame.channels,
                channel_mode=frame.channel_mode,
                id3_size=id3_size,
                first_frame_offset=id3_size + pos,
                file_size=file_size,
            )
        pos = window.find(b"\xff", pos + 1)
    raise FormatError("No MPEG frame sync found")


def analyze_stream(f: BinaryIO) -> AudioInfo:
    f.seek(0)
    container = sniff_container(f.read(SNIFF_BYTES))
    if container == CONTAINER_WAV:
        return analyze_wav_stream(f)
    if container == CONTAINER_MP3:
        return analyze_mp3_stream(f)
    raise FormatError("Unrecognized audio container")


def analyze(path: str) -> AudioInfo:
    """Analyze a local audio file, raising FormatError when it cannot be parsed."""
    try:
        with open(path, "rb") as f:
            return analyze_stream(f)
    except OSError as exc:
        raise FormatError(f"Cannot read audio file: {exc}") from exc


def analyze_wav(path: str) -> WavInfo:
    try:
        with open(path, "rb") as f:
            return analyze_wav_stream(f)
    except OSError as exc:
        raise FormatError(f"Cannot read audio file: {exc}") from exc


def analyze_mp3(path: str) -> Mp3Info:
    try:
        with open(path, "rb") as f:
            return analyze_mp3_stream(f)
    except OSError as exc:
        raise FormatError(f"Cannot read audio file: {exc}") from exc


def analyze_bytes(data: bytes) -> AudioInfo:
    return analyze_stream(io.BytesIO(data))


def estimate_mp3_duration(path: str) -> float:
    """Walk MPEG frames and sum their durations.

    Garbage between frames is skipped byte by byte; a trailing ID3v1 tag ends
    the walk.
    """
    info = analyze_mp3(path)
    end = info.file_size
    total = 0.0
    with open(path, "rb") as f:
        if end >= ID3V1_TAG_SIZE:
            f.seek(end - ID3V1_TAG_SIZE)
            if f.read(3) == b"TAG":
                end -= ID3V1_TAG_SIZE
        pos = info.first_frame_offset
        while pos + 4 <= end:
            f.seek(pos)
            frame = parse_mp3_frame_header(f.read(4))
            if frame is None:
                pos += 1
                continue
            length = frame.frame_length
            if length <= 4:
                pos += 1
                continue
            total += frame.samples_per_frame / float(frame.sample_rate)
            pos += length
    return total
