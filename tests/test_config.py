import dataclasses
import os
import sys
import unittest
from unittest import mock


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from audiostitch.config import (  # noqa: E402
    ClientConfig,
    FetchConfig,
    LoggingConfig,
    StitchConfig,
    StoreConfig,
    SynthesisConfig,
    config_fingerprint,
)


class ConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            stitch = StitchConfig.from_env()
            fetch = FetchConfig.from_env()
            store = StoreConfig.from_env()
            synth = SynthesisConfig.from_env()
            client = ClientConfig.from_env()
            logging_cfg = LoggingConfig.from_env()
        self.assertEqual(stitch.min_output_bytes, 1000)
        self.assertEqual(stitch.copy_block_bytes, 65536)
        self.assertEqual(stitch.preroll_prefix, "preroll-")
        self.assertEqual(stitch.id3_title, "Concatenated Audio")
        self.assertEqual(stitch.default_sample_rate, 44100)
        self.assertEqual(stitch.default_channels, 1)
        self.assertEqual(stitch.default_bits_per_sample, 16)
        self.assertFalse(fetch.parallel)
        self.assertIn("localhost", fetch.local_hosts)
        self.assertEqual(store.object_base_url, "http://localhost:8000/uploads")
        self.assertEqual(synth.max_chunk_chars, 2800)
        self.assertEqual(synth.output_format, "mp3")
        self.assertEqual(client.decode_timeout_seconds, 30.0)
        self.assertEqual(logging_cfg.level, "INFO")

    def test_env_and_cli_overrides(self) -> None:
        env = {
            "STITCH_CACHE_DIR": "/env/cache",
            "STITCH_CACHE_BASE_URL": "https://files.example.com/audio/",
            "STITCH_DEFAULT_BITS": "12",
            "STITCH_COPY_BLOCK_BYTES": "1",
            "FETCH_PARALLEL": "yes",
            "FETCH_LOCAL_HOSTS": "Media.Internal, ,127.0.0.1",
            "FETCH_RETRIES": "not-a-number",
            "TTS_FORMAT": "ogg",
            "TTS_MAX_CHUNK_CHARS": "5",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            stitch = StitchConfig.from_env(cache_dir="/cli/cache")
            fetch = FetchConfig.from_env()
            synth = SynthesisConfig.from_env(voice_id="voice-1")
        self.assertEqual(stitch.cache_dir, "/cli/cache")
        self.assertEqual(stitch.cache_base_url, "https://files.example.com/audio")
        self.assertEqual(stitch.default_bits_per_sample, 16)
        self.assertEqual(stitch.copy_block_bytes, 4096)
        self.assertTrue(fetch.parallel)
        self.assertEqual(fetch.local_hosts, ("media.internal", "127.0.0.1"))
        self.assertEqual(fetch.retries, 3)
        self.assertEqual(synth.output_format, "mp3")
        self.assertEqual(synth.max_chunk_chars, 100)
        self.assertEqual(synth.voice_id, "voice-1")

    def test_fingerprint_ignores_api_key_value(self) -> None:
        with mock.patch.dict(os.environ, {"TTS_API_KEY": "secret-1"}, clear=True):
            synth_a = SynthesisConfig.from_env()
        synth_b = dataclasses.replace(synth_a, api_key="secret-2")
        synth_c = dataclasses.replace(synth_a, api_key="")
        self.assertEqual(config_fingerprint(synthesis_cfg=synth_a), config_fingerprint(synthesis_cfg=synth_b))
        self.assertNotEqual(config_fingerprint(synthesis_cfg=synth_a), config_fingerprint(synthesis_cfg=synth_c))
        self.assertNotEqual(config_fingerprint(), config_fingerprint(extra={"run": 1}))


if __name__ == "__main__":
    unittest.main()
