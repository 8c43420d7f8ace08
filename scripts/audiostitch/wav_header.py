#!/usr/bin/env python3
from __future__ import annotations

"""Canonical 44-byte RIFF/WAVE header codec."""

import struct
from dataclasses import dataclass

CANONICAL_HEADER_SIZE = 44
WAVE_FORMAT_PCM = 1

# RIFF, riff_size, WAVE, "fmt ", 16, tag, channels, rate, byte_rate, block_align, bits, "data", data_size
_HEADER_STRUCT = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass(frozen=True)
class WavHeader:
    """Header values for a single-`data`-chunk PCM WAV file.

    `byte_rate`, `block_align` and `riff_size` are derived so the invariants
    between them always hold.
    """

    num_channels: int
    sample_rate: int
    bits_per_sample: int
    data_size: int
    audio_format: int = WAVE_FORMAT_PCM

    @property
    def block_align(self) -> int:
        return self.num_channels * self.bits_per_sample // 8

    @property
    def byte_rate(self) -> int:
        return self.sample_rate * self.num_channels * self.bits_per_sample // 8

    @property
    def riff_size(self) -> int:
        return 36 + self.data_size

    @property
    def duration_seconds(self) -> float:
        if self.byte_rate <= 0:
            return 0.0
        return self.data_size / float(self.byte_rate)

    def pack(self) -> bytes:
        if self.data_size < 0 or self.data_size > 0xFFFFFFFF - 36:
            raise ValueError(f"data_size out of range for RIFF: {self.data_size}")
        return _HEADER_STRUCT.pack(
            b"RIFF",
            self.riff_size,
            b"WAVE",
            b"fmt ",
            16,
            self.audio_format,
            self.num_channels,
            self.sample_rate,
            self.byte_rate,
            self.block_align,
            self.bits_per_sample,
            b"data",
            self.data_size,
        )

    @staticmethod
    def unpack(data: bytes) -> "WavHeader":
        """Parse a canonical header; raises ValueError on anything else."""
        if len(data) < CANONICAL_HEADER_SIZE:
            raise ValueError("header shorter than 44 bytes")
        (
            riff,
            _riff_size,
            wave,
            fmt_id,
            _fmt_size,
            audio_format,
            channels,
            sample_rate,
            _byte_rate,
            _block_align,
            bits,
            data_id,
            data_size,
        ) = _HEADER_STRUCT.unpack(data[:CANONICAL_HEADER_SIZE])
        if riff != b"RIFF" or wave != b"WAVE" or fmt_id != b"fmt " or data_id != b"data":
            raise ValueError("not a canonical RIFF/WAVE header")
        return WavHeader(
            num_channels=channels,
            sample_rate=sample_rate,
            bits_per_sample=bits,
            data_size=data_size,
            audio_format=audio_format,
        )

