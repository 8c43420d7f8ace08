import io
import json
import os
import sys
import tempfile
import unittest
from unittest import mock


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

import make_narration  # noqa: E402
from audiostitch.tts_provider import TTSAudioResult  # noqa: E402

from audio_fixtures import mp3_frames  # noqa: E402


class _FakeProvider:
    provider_name = "fake"

    def synthesize(self, text: str, *, voice_id: str, style_id: str, output_format: str) -> TTSAudioResult:
        return TTSAudioResult(
            audio_bytes=mp3_frames(3),
            content_type="audio/mpeg",
            file_extension="mp3",
            provider=self.provider_name,
        )


class MakeNarrationCliTests(unittest.TestCase):
    def test_narrate_and_stitch(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            text_path = os.path.join(tmp, "article.html")
            sentences = " ".join(f"<p>Paragraph {i} has a sentence worth hearing.</p>" for i in range(20))
            with open(text_path, "w", encoding="utf-8") as f:
                f.write(sentences)
            env = {
                "LOG_LEVEL": "ERROR",
                "MIN_FREE_DISK_MB": "0",
                "TTS_MAX_CHUNK_CHARS": "300",
                "STITCH_CACHE_DIR": os.path.join(tmp, "cache"),
                "OBJECT_STORE_ROOT": os.path.join(tmp, "objects"),
                "METADATA_STORE_DIR": os.path.join(tmp, "meta"),
            }
            with mock.patch.dict(os.environ, env, clear=True):
                with mock.patch.object(make_narration, "create_tts_provider", return_value=_FakeProvider()):
                    with mock.patch("sys.stdout", new_callable=io.StringIO) as stdout:
                        rc = make_narration.main([text_path, "article-1", "--stitch", "--no-preroll"])

            self.assertEqual(rc, 0)
            summary = json.loads(stdout.getvalue())
            self.assertGreater(summary["chunks"], 1)
            self.assertEqual(summary["chunks_cached"], 0)
            self.assertEqual(len(summary["urls"]), summary["chunks"])
            self.assertTrue(summary["stitched_url"].endswith(".mp3"))
            with open(os.path.join(tmp, "meta", "article-1.json"), "r", encoding="utf-8") as f:
                record = json.load(f)
            self.assertEqual(record["conversion_status"], "complete")

    def test_content_id_must_be_plain_name(self) -> None:
        with mock.patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                make_narration.parse_args(["text.txt", "../escape"])


if __name__ == "__main__":
    unittest.main()
