import os
import sys
import tempfile
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from audiostitch.config import SynthesisConfig  # noqa: E402
from audiostitch.errors import ProviderError  # noqa: E402
from audiostitch.logging_utils import Logger  # noqa: E402
from audiostitch.models import ChunkedAudio, SingleAudio  # noqa: E402
from audiostitch.object_store import LocalObjectStore  # noqa: E402
from audiostitch.synthesizer import NarrationSynthesizer, chunk_content_hash  # noqa: E402
from audiostitch.tts_provider import TTSAudioResult  # noqa: E402

from audio_fixtures import mp3_frames  # noqa: E402

TEXT = " ".join(f"This is sentence {i} of a narration that needs several chunks." for i in range(12))


def _synth_config(**overrides) -> SynthesisConfig:
    values = dict(
        provider="http",
        base_url="https://tts.example.com",
        api_key="k",
        voice_id="voice-a",
        style_id="",
        output_format="mp3",
        max_chunk_chars=200,
        timeout_seconds=5,
        retries=1,
        backoff_base_ms=1,
        backoff_max_ms=1,
        preroll_url="",
    )
    values.update(overrides)
    return SynthesisConfig(**values)


class _FakeProvider:
    provider_name = "fake"

    def __init__(self, *, fail_on_call: int = 0, extension: str = "mp3") -> None:
        self.calls = []
        self.fail_on_call = fail_on_call
        self.extension = extension

    def synthesize(self, text: str, *, voice_id: str, style_id: str, output_format: str) -> TTSAudioResult:
        self.calls.append(text)
        if self.fail_on_call and len(self.calls) == self.fail_on_call:
            raise ProviderError("quota exceeded", error_kind="rate_limit")
        return TTSAudioResult(
            audio_bytes=mp3_frames(2),
            content_type="audio/mpeg",
            file_extension=self.extension,
            provider=self.provider_name,
        )


class NarrationSynthesizerTests(unittest.TestCase):
    def _synth(self, tmp: str, provider: _FakeProvider, **overrides) -> NarrationSynthesizer:
        store = LocalObjectStore(root_dir=os.path.join(tmp, "objects"), base_url="http://localhost:8000/uploads")
        return NarrationSynthesizer(
            provider=provider,
            store=store,
            config=_synth_config(**overrides),
            logger=Logger.quiet(),
        )

    def test_chunks_are_stored_and_reused(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            provider = _FakeProvider()
            synth = self._synth(tmp, provider)

            first = synth.synthesize("c1", TEXT)

            self.assertIsInstance(first.audio, ChunkedAudio)
            self.assertGreater(first.chunks_total, 1)
            self.assertEqual(len(provider.calls), first.chunks_total)
            self.assertEqual(first.chunks_cached, 0)
            for url in first.chunk_urls:
                self.assertTrue(url.startswith("http://localhost:8000/uploads/c1/chunk-"))
            self.assertTrue(first.chunk_urls[0].split("/")[-1].startswith("chunk-001-"))

            second = synth.synthesize("c1", TEXT)

            self.assertEqual(second.chunks_cached, second.chunks_total)
            self.assertEqual(len(provider.calls), first.chunks_total)
            self.assertEqual(second.chunk_urls, first.chunk_urls)

    def test_preroll_is_prepended(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            synth = self._synth(tmp, _FakeProvider(), preroll_url="https://cdn.example.com/preroll-intro.mp3")
            result = synth.synthesize("c1", "One short sentence.")
            self.assertTrue(result.preroll_included)
            self.assertEqual(
                result.audio,
                ChunkedAudio(("https://cdn.example.com/preroll-intro.mp3", result.chunk_urls[0])),
            )
            without = synth.synthesize("c1", "One short sentence.", include_preroll=False)
            self.assertIsInstance(without.audio, SingleAudio)
            self.assertFalse(without.preroll_included)

    def test_failure_names_chunk_and_rerun_resumes(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            failing = _FakeProvider(fail_on_call=2)
            with self.assertRaises(ProviderError) as ctx:
                self._synth(tmp, failing).synthesize("c1", TEXT)
            self.assertEqual(ctx.exception.chunk_index, 1)
            self.assertEqual(ctx.exception.error_kind, "rate_limit")

            healthy = _FakeProvider()
            result = self._synth(tmp, healthy).synthesize("c1", TEXT)
            self.assertEqual(result.chunks_cached, 1)
            self.assertEqual(len(healthy.calls), result.chunks_total - 1)

    def test_wrong_extension_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ProviderError):
                self._synth(tmp, _FakeProvider(extension="wav")).synthesize("c1", "Hello.")

    def test_empty_text_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ProviderError):
                self._synth(tmp, _FakeProvider()).synthesize("c1", "   ")

    def test_hash_depends_on_voice(self) -> None:
        a = chunk_content_hash("hi", voice_id="a", style_id="", output_format="mp3")
        b = chunk_content_hash("hi", voice_id="b", style_id="", output_format="mp3")
        self.assertNotEqual(a, b)


if __name__ == "__main__":
    unittest.main()
