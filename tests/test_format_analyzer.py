import os
import struct
import sys
import tempfile
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from audiostitch.errors import FormatError  # noqa: E402
from audiostitch.format_analyzer import (  # noqa: E402
    analyze,
    analyze_bytes,
    estimate_mp3_duration,
    id3v2_total_size,
    int_to_synchsafe,
    parse_mp3_frame_header,
    sniff_container,
    synchsafe_to_int,
)
from audiostitch.wav_header import CANONICAL_HEADER_SIZE, WavHeader  # noqa: E402

from audio_fixtures import (  # noqa: E402
    MP3_FRAME_HEADER,
    MP3_FRAME_SECONDS,
    id3v1_tag,
    id3v2_tag,
    list_chunk,
    mp3_frames,
    wav_bytes,
    write_file,
)


class WavAnalysisTests(unittest.TestCase):
    def test_canonical_header(self) -> None:
        info = analyze_bytes(wav_bytes(b"\x01\x00" * 500, sample_rate=22050, channels=1))
        self.assertEqual(info.container, "wav")
        self.assertEqual(info.data_offset, CANONICAL_HEADER_SIZE)
        self.assertEqual(info.data_size, 1000)
        self.assertEqual(info.sample_rate, 22050)
        self.assertEqual(info.byte_rate, 44100)
        self.assertEqual(info.block_align, 2)

    def test_list_chunk_before_data_moves_payload_offset(self) -> None:
        info = analyze_bytes(wav_bytes(b"\x00" * 64, extra_chunks=list_chunk(b"Narrator")))
        # 12 (RIFF/WAVE) + 24 (fmt) + 28 (LIST) + 8 (data header)
        self.assertEqual(info.data_offset, 72)
        self.assertEqual(info.header_size, 72)
        self.assertEqual(info.data_size, 64)

    def test_odd_sized_chunk_is_word_aligned(self) -> None:
        junk = b"junk" + struct.pack("<I", 3) + b"abc" + b"\x00"
        info = analyze_bytes(wav_bytes(b"\x00" * 10, extra_chunks=junk))
        self.assertEqual(info.data_offset, 56)
        self.assertEqual(info.data_size, 10)

    def test_streaming_placeholder_sizes_use_file_length(self) -> None:
        for placeholder in (0, 0xFFFFFFFF):
            info = analyze_bytes(wav_bytes(b"\x00" * 100, data_size=placeholder))
            self.assertEqual(info.data_size, 100, placeholder)

    def test_non_riff_data_is_rejected(self) -> None:
        with self.assertRaises(FormatError):
            analyze_bytes(b"OggS" + b"\x00" * 60)

    def test_missing_data_chunk_is_rejected(self) -> None:
        blob = wav_bytes(b"")[:-8]
        with self.assertRaises(FormatError):
            analyze_bytes(blob)

    def test_unreadable_path_raises_format_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(FormatError):
                analyze(os.path.join(tmp, "missing.wav"))


class WavHeaderTests(unittest.TestCase):
    def test_derived_fields(self) -> None:
        header = WavHeader(num_channels=2, sample_rate=48000, bits_per_sample=16, data_size=192000)
        self.assertEqual(header.block_align, 4)
        self.assertEqual(header.byte_rate, 192000)
        self.assertEqual(header.riff_size, 192036)
        self.assertAlmostEqual(header.duration_seconds, 1.0)

    def test_pack_unpack(self) -> None:
        raw = WavHeader(num_channels=1, sample_rate=44100, bits_per_sample=16, data_size=88200).pack()
        self.assertEqual(len(raw), CANONICAL_HEADER_SIZE)
        self.assertEqual(struct.unpack("<I", raw[4:8])[0], 88236)
        self.assertEqual(struct.unpack("<I", raw[40:44])[0], 88200)
        parsed = WavHeader.unpack(raw)
        self.assertEqual(parsed.sample_rate, 44100)
        self.assertEqual(parsed.data_size, 88200)

    def test_unpack_rejects_foreign_header(self) -> None:
        with self.assertRaises(ValueError):
            WavHeader.unpack(b"\x00" * 44)


class Mp3AnalysisTests(unittest.TestCase):
    def test_sniffing(self) -> None:
        self.assertEqual(sniff_container(wav_bytes(b"\x00")[:12]), "wav")
        self.assertEqual(sniff_container(b"ID3\x03\x00"), "mp3")
        self.assertEqual(sniff_container(MP3_FRAME_HEADER), "mp3")
        self.assertEqual(sniff_container(b"fLaC\x00\x00"), "")

    def test_frame_header_fields(self) -> None:
        frame = parse_mp3_frame_header(MP3_FRAME_HEADER)
        self.assertIsNotNone(frame)
        self.assertEqual(frame.version, "1")
        self.assertEqual(frame.layer, 3)
        self.assertEqual(frame.bitrate_kbps, 128)
        self.assertEqual(frame.sample_rate, 44100)
        self.assertEqual(frame.channels, 2)
        self.assertEqual(frame.frame_length, 417)
        self.assertIsNone(parse_mp3_frame_header(b"\xff\xfb\xf0\x64"))

    def test_first_frame_after_id3v2(self) -> None:
        tag = id3v2_tag()
        info = analyze_bytes(tag + mp3_frames(3))
        self.assertEqual(info.container, "mp3")
        self.assertEqual(info.id3_size, len(tag))
        self.assertEqual(info.first_frame_offset, len(tag))
        self.assertEqual(info.sample_rate, 44100)

    def test_synchsafe(self) -> None:
        self.assertEqual(int_to_synchsafe(257), b"\x00\x00\x02\x01")
        self.assertEqual(synchsafe_to_int(int_to_synchsafe(0x0ABCDEF)), 0x0ABCDEF)
        self.assertEqual(id3v2_total_size(b"ID3\x04\x00\x10\x00\x00\x00\x0a"), 30)

    def test_duration_skips_tags_and_garbage(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            blob = id3v2_tag() + mp3_frames(6) + b"\x00\x00\x00" + mp3_frames(4) + id3v1_tag()
            path = write_file(tmp, "a.mp3", blob)
            self.assertAlmostEqual(estimate_mp3_duration(path), 10 * MP3_FRAME_SECONDS, places=6)

    def test_no_frames_raises(self) -> None:
        with self.assertRaises(FormatError):
            analyze_bytes(id3v2_tag() + b"\x00" * 200)


if __name__ == "__main__":
    unittest.main()
