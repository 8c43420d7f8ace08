import json
import os
import sys
import tempfile
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from audiostitch.errors import StoreError  # noqa: E402
from audiostitch.logging_utils import Logger  # noqa: E402
from audiostitch.metadata_store import JsonMetadataStore  # noqa: E402
from audiostitch.models import (  # noqa: E402
    ChunkedAudio,
    ContentRecord,
    LocalSource,
    RemoteSource,
    SingleAudio,
    StitchJob,
    audio_ref_from_value,
    normalize_container,
    source_from_ref,
)
from audiostitch.object_store import LocalObjectStore  # noqa: E402

from audio_fixtures import write_file  # noqa: E402


class LocalObjectStoreTests(unittest.TestCase):
    def test_upload_publishes_url_that_maps_back(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = LocalObjectStore(root_dir=os.path.join(tmp, "objects"), base_url="http://localhost:8000/uploads/")
            src = write_file(tmp, "a.mp3", b"abc")

            url = store.upload(src, "c1/chunk 001.mp3")

            self.assertEqual(url, "http://localhost:8000/uploads/c1/chunk%20001.mp3")
            self.assertTrue(store.exists("c1/chunk 001.mp3"))
            self.assertEqual(store.local_path_for_url(url), store.path_for_key("c1/chunk 001.mp3"))
            self.assertEqual(store.download(url), b"abc")
            self.assertTrue(store.delete("c1/chunk 001.mp3"))
            self.assertFalse(store.exists("c1/chunk 001.mp3"))

    def test_foreign_urls_are_not_local(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = LocalObjectStore(root_dir=tmp, base_url="http://localhost:8000/uploads")
            self.assertIsNone(store.local_path_for_url("https://cdn.example.com/uploads/a.mp3"))
            self.assertIsNone(store.local_path_for_url("http://localhost:8000/other/a.mp3"))
            self.assertIsNone(store.local_path_for_url("not a url"))

    def test_keys_cannot_escape_root(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = os.path.join(tmp, "objects")
            store = LocalObjectStore(root_dir=root, base_url="http://localhost:8000/uploads")
            path = store.path_for_key("../../etc/passwd")
            self.assertTrue(path.startswith(os.path.abspath(root) + os.sep))
            with self.assertRaises(StoreError):
                store.path_for_key("")
            self.assertFalse(store.exists(""))


class JsonMetadataStoreTests(unittest.TestCase):
    def test_round_trip_and_counts(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JsonMetadataStore(base_dir=tmp, logger=Logger.quiet())
            store.put("c1", ContentRecord(content_id="c1", audio=ChunkedAudio(("u1", "u2"))))
            store.put("c2", ContentRecord(content_id="c2", audio=SingleAudio("u3"), conversion_status="complete"))

            record = store.get("c1")
            self.assertEqual(record.audio, ChunkedAudio(("u1", "u2")))
            self.assertEqual(record.conversion_status, "pending")
            with open(os.path.join(tmp, "c2.json"), "r", encoding="utf-8") as f:
                self.assertEqual(json.load(f)["audio"], "u3")
            self.assertEqual(store.status_counts(), {"pending": 1, "complete": 1})
            self.assertIsNone(store.get("c3"))
            self.assertTrue(store.delete("c2"))

    def test_corrupt_record_is_quarantined(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JsonMetadataStore(base_dir=tmp, logger=Logger.quiet())
            write_file(tmp, "bad.json", b"{not json")
            self.assertIsNone(store.get("bad"))
            self.assertFalse(os.path.exists(os.path.join(tmp, "bad.json")))
            self.assertTrue(any(name.startswith("bad.json.corrupt.") for name in os.listdir(tmp)))
            self.assertEqual(list(store.iter_records()), [])

    def test_unsafe_ids_are_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JsonMetadataStore(base_dir=tmp, logger=Logger.quiet())
            for content_id in ("../x", "a/b", "", ".."):
                with self.assertRaises(StoreError, msg=content_id):
                    store.get(content_id)


class ModelTests(unittest.TestCase):
    def test_status_transitions(self) -> None:
        record = ContentRecord(content_id="c1")
        with self.assertRaises(ValueError):
            record.transition("complete")
        record.transition("converting")
        record.transition("failed", error_message="boom")
        self.assertEqual(record.error_message, "boom")
        record.transition("converting")
        self.assertEqual(record.error_message, "")
        record.transition("complete")
        with self.assertRaises(ValueError):
            record.transition("pending")
        with self.assertRaises(ValueError):
            record.transition("exploded")

    def test_sources_and_refs(self) -> None:
        self.assertEqual(source_from_ref("https://cdn/a.mp3"), RemoteSource("https://cdn/a.mp3"))
        self.assertEqual(source_from_ref("/tmp/a.wav"), LocalSource("/tmp/a.wav"))
        self.assertEqual(source_from_ref("file:///tmp/a%20b.wav"), LocalSource("/tmp/a b.wav"))
        self.assertIsNone(audio_ref_from_value([]))
        self.assertEqual(audio_ref_from_value("u"), SingleAudio("u"))
        self.assertEqual(audio_ref_from_value(["a", "", "b"]), ChunkedAudio(("a", "b")))
        with self.assertRaises(ValueError):
            audio_ref_from_value(42)

    def test_job_naming(self) -> None:
        job = StitchJob.from_refs(["a", "b"], "MP3")
        self.assertEqual(job.output_format, "mp3")
        self.assertEqual(job.refs, ["a", "b"])
        self.assertEqual(job.output_name, f"concatenated_{job.cache_key}.mp3")
        self.assertEqual(normalize_container(".mpeg"), "mp3")
        with self.assertRaises(ValueError):
            normalize_container("ogg")


if __name__ == "__main__":
    unittest.main()
