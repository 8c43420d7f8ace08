import asyncio
import os
import sys
import time
import unittest

import numpy as np


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from audiostitch.config import ClientConfig  # noqa: E402
from audiostitch.errors import FetchError, FormatError  # noqa: E402
from audiostitch.format_analyzer import analyze_bytes  # noqa: E402
from audiostitch.logging_utils import Logger  # noqa: E402
from audiostitch.pcm_concatenator import (  # noqa: E402
    ClientConcatenator,
    InfoTags,
    PcmBuffer,
    ResourceRegistry,
    SoundfileDecoder,
    build_info_chunk,
    concatenate_buffers,
    encode_wav,
    quantize_pcm16,
)


def _buffer(frames: int, *, channels: int = 1, sample_rate: int = 8000, value: float = 0.25) -> PcmBuffer:
    return PcmBuffer(samples=np.full((channels, frames), value, dtype=np.float32), sample_rate=sample_rate)


class _TableDecoder:
    def __init__(self, table: dict) -> None:
        self.table = table

    def decode(self, data: bytes) -> PcmBuffer:
        return self.table[data.decode("utf-8")]


class QuantizeTests(unittest.TestCase):
    def test_asymmetric_scaling_and_clamping(self) -> None:
        out = quantize_pcm16(np.array([[1.0, -1.0, 0.0, 2.0, -2.0, 0.5, -0.5]]))
        self.assertEqual(out.tolist(), [32767, -32768, 0, 32767, -32768, 16384, -16384])
        self.assertEqual(out.dtype.str, "<i2")

    def test_planar_input_is_interleaved(self) -> None:
        out = quantize_pcm16(np.array([[0.0, 1.0], [-1.0, 0.0]]))
        self.assertEqual(out.tolist(), [0, -32768, 32767, 0])


class BufferTests(unittest.TestCase):
    def test_single_buffer_is_returned_unchanged(self) -> None:
        buf = _buffer(10)
        self.assertIs(concatenate_buffers([buf]), buf)

    def test_buffers_merge_in_order(self) -> None:
        merged = concatenate_buffers([_buffer(8000, value=0.1), _buffer(4000, value=-0.1)])
        self.assertEqual(merged.frames, 12000)
        self.assertAlmostEqual(merged.duration_seconds, 1.5)
        self.assertAlmostEqual(float(merged.samples[0, 0]), 0.1, places=6)
        self.assertAlmostEqual(float(merged.samples[0, -1]), -0.1, places=6)

    def test_format_mismatch_is_reported(self) -> None:
        with self.assertRaises(FormatError) as ctx:
            concatenate_buffers([_buffer(10), _buffer(10), _buffer(10, sample_rate=16000)])
        self.assertEqual(ctx.exception.segment_index, 2)
        with self.assertRaises(ValueError):
            concatenate_buffers([])


class EncodeTests(unittest.TestCase):
    def test_encoded_wav_with_info_chunk(self) -> None:
        buf = _buffer(800, channels=2)
        tags = InfoTags(title="Episode", artist="Narrator", comment="Duration: 0.10s | Concatenated Audio")
        blob = encode_wav(buf, tags)

        info = analyze_bytes(blob)
        self.assertEqual(info.channels, 2)
        self.assertEqual(info.sample_rate, 8000)
        self.assertEqual(info.bits_per_sample, 16)
        self.assertEqual(info.data_size, 800 * 2 * 2)
        self.assertGreater(info.data_offset, 44)
        self.assertIn(b"INFO", blob)
        self.assertIn(b"Duration: 0.10s | Concatenated Audio\x00", blob)

    def test_info_chunk_entries_are_word_aligned(self) -> None:
        chunk = build_info_chunk(InfoTags(title="abc"))
        # "abc\0" is even; "abcd\0" needs a pad byte.
        self.assertEqual(len(chunk), 8 + 4 + 8 + 4)
        padded = build_info_chunk(InfoTags(title="abcd"))
        self.assertEqual(len(padded), 8 + 4 + 8 + 6)
        self.assertEqual(build_info_chunk(InfoTags()), b"")

    def test_soundfile_decodes_encoded_output(self) -> None:
        blob = encode_wav(_buffer(400, channels=2, value=0.5))
        decoded = SoundfileDecoder().decode(blob)
        self.assertEqual(decoded.channels, 2)
        self.assertEqual(decoded.frames, 400)
        self.assertEqual(decoded.sample_rate, 8000)
        self.assertAlmostEqual(float(decoded.samples[1, 10]), 16384 / 32768.0, places=4)

    def test_soundfile_rejects_garbage(self) -> None:
        with self.assertRaises(FormatError):
            SoundfileDecoder().decode(b"not audio at all" * 10)


class ClientConcatenatorTests(unittest.TestCase):
    def _config(self, timeout: float = 5.0) -> ClientConfig:
        return ClientConfig(decode_timeout_seconds=timeout, embed_info=True, software="audiostitch-test")

    def test_concatenate_urls_creates_releasable_resource(self) -> None:
        registry = ResourceRegistry()
        decoder = _TableDecoder({"u1": _buffer(8000), "u2": _buffer(4000)})
        concat = ClientConcatenator(
            config=self._config(),
            logger=Logger.quiet(),
            registry=registry,
            decoder=decoder,
            fetch_fn=lambda url, _timeout: url.encode("utf-8"),
        )

        result = asyncio.run(concat.concatenate_urls(["u1", "u2"], title="T", artist="A"))

        self.assertAlmostEqual(result.duration_seconds, 1.5)
        self.assertEqual(result.segment_count, 2)
        self.assertTrue(result.resource.handle.startswith("blob:"))
        blob = result.resource.read()
        self.assertEqual(blob[0:4], b"RIFF")
        self.assertIn(b"Duration: 1.50s | Concatenated Audio", blob)
        self.assertIn(b"audiostitch-test", blob)
        self.assertEqual(registry.live_handles, [result.resource.handle])

        self.assertTrue(result.resource.release())
        self.assertEqual(registry.live_handles, [])
        with self.assertRaises(KeyError):
            result.resource.read()

    def test_slow_segment_times_out(self) -> None:
        def slow_fetch(url: str, _timeout: float) -> bytes:
            if url == "slow":
                time.sleep(0.5)
            return url.encode("utf-8")

        concat = ClientConcatenator(
            config=self._config(timeout=0.05),
            logger=Logger.quiet(),
            registry=ResourceRegistry(),
            decoder=_TableDecoder({"fast": _buffer(10), "slow": _buffer(10)}),
            fetch_fn=slow_fetch,
        )
        with self.assertRaises(FetchError) as ctx:
            asyncio.run(concat.concatenate_urls(["fast", "slow"]))
        self.assertEqual(ctx.exception.error_kind, "timeout")
        self.assertEqual(ctx.exception.segment_index, 1)

    def test_decode_failure_names_segment(self) -> None:
        class _Broken:
            def decode(self, data: bytes) -> PcmBuffer:
                raise FormatError("bad data")

        concat = ClientConcatenator(
            config=self._config(),
            logger=Logger.quiet(),
            registry=ResourceRegistry(),
            decoder=_Broken(),
            fetch_fn=lambda url, _timeout: b"x",
        )
        with self.assertRaises(FormatError) as ctx:
            asyncio.run(concat.concatenate_urls(["a", "b"]))
        self.assertIn(ctx.exception.segment_index, (0, 1))


if __name__ == "__main__":
    unittest.main()
