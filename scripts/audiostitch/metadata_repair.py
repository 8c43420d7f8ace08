#!/usr/bin/env python3
from __future__ import annotations

"""Post-stitch header and tag repair.

`repair_wav_header` patches the four size/rate fields of a canonical header
in place. `repair_mp3_metadata` replaces any leading ID3v2 tag with a fresh
ID3v2.3 tag carrying title, artist and a duration comment.
"""

import os
import struct
from typing import Optional

from .errors import FormatError, WriteError
from .format_analyzer import ID3V2_HEADER_SIZE, id3v2_total_size, int_to_synchsafe
from .segment_fetcher import copy_stream
from .wav_header import CANONICAL_HEADER_SIZE, WavHeader

ID3_TEXT_ENCODING_LATIN1 = 0x00
ID3_COMMENT_LANGUAGE = b"eng"


def repair_wav_header(path: str) -> WavHeader:
    """Rewrite RIFF size (@4), byte rate (@28), block align (@32) and data size (@40)."""
    file_size = os.path.getsize(path)
    if file_size < CANONICAL_HEADER_SIZE:
        raise FormatError(f"File too small for a WAV header: {file_size} bytes")
    with open(path, "r+b") as f:
        head = f.read(CANONICAL_HEADER_SIZE)
        if head[0:4] != b"RIFF" or head[8:12] != b"WAVE":
            raise FormatError("Not a RIFF/WAVE file")
        audio_format, channels, sample_rate = struct.unpack("<HHI", head[20:28])
        (bits,) = struct.unpack("<H", head[34:36])
        header = WavHeader(
            num_channels=channels,
            sample_rate=sample_rate,
            bits_per_sample=bits,
            data_size=file_size - CANONICAL_HEADER_SIZE,
            audio_format=audio_format,
        )
        f.seek(4)
        f.write(struct.pack("<I", file_size - 8))
        f.seek(28)
        f.write(struct.pack("<I", header.byte_rate))
        f.seek(32)
        f.write(struct.pack("<H", header.block_align))
        f.seek(40)
        f.write(struct.pack("<I", header.data_size))
    return header


def _text_frame(frame_id: bytes, text: str) -> bytes:
    body = bytes([ID3_TEXT_ENCODING_LATIN1]) + text.encode("latin-1", errors="replace")
    return frame_id + struct.pack(">I", len(body)) + b"\x00\x00" + body


def _comment_frame(text: str) -> bytes:
    # encoding, language, empty short description (NUL), text
    body = (
        bytes([ID3_TEXT_ENCODING_LATIN1])
        + ID3_COMMENT_LANGUAGE
        + b"\x00"
        + text.encode("latin-1", errors="replace")
    )
    return b"COMM" + struct.pack(">I", len(body)) + b"\x00\x00" + body


def build_id3v2_tag(title: str, artist: str, comment: str = "") -> bytes:
    """Build an ID3v2.3 tag with TIT2/TPE1/COMM frames."""
    frames = b""
    if title:
        frames += _text_frame(b"TIT2", title)
    if artist:
        frames += _text_frame(b"TPE1", artist)
    if comment:
        frames += _comment_frame(comment)
    return b"ID3" + b"\x03\x00" + b"\x00" + int_to_synchsafe(len(frames)) + frames


def duration_comment(duration_seconds: float) -> str:
    return f"Duration: {float(duration_seconds):.2f}s"


def strip_leading_id3(data: bytes) -> bytes:
    size = id3v2_total_size(data[:ID3V2_HEADER_SIZE])
    return data[size:] if size else data


def repair_mp3_metadata(
    path: str,
    *,
    duration_seconds: float,
    title: str,
    artist: str,
    copy_block_bytes: int = 65536,
    comment: Optional[str] = None,
) -> int:
    """Replace the leading tag of `path` with a fresh one; returns the new tag size."""
    tag = build_id3v2_tag(
        title=title,
        artist=artist,
        comment=duration_comment(duration_seconds) if comment is None else comment,
    )
    tmp_path = path + ".id3.tmp"
    try:
        with open(path, "rb") as src, open(tmp_path, "wb") as dst:
            skip = id3v2_total_size(src.read(ID3V2_HEADER_SIZE))
            src.seek(skip)
            dst.write(tag)
            copy_stream(src, dst, block_bytes=copy_block_bytes)
        os.replace(tmp_path, path)
    except OSError as exc:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise WriteError(f"ID3 rewrite failed: {exc}", stage="repair") from exc
    return len(tag)
