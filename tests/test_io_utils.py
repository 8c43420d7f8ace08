import json
import os
import sys
import tempfile
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from audiostitch.io_utils import (  # noqa: E402
    atomic_write_json,
    load_json_or_quarantine,
    read_text_file_with_fallback,
)


class IOUtilsTests(unittest.TestCase):
    def test_encoding_fallback_cp1252(self) -> None:
        text = "Información útil para prueba de codificación."
        seen = []
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "input_cp1252.txt")
            with open(path, "wb") as f:
                f.write(text.encode("cp1252"))
            out, enc = read_text_file_with_fallback(path, on_fallback=seen.append)
            self.assertEqual(out, text)
            self.assertIn(enc, {"cp1252", "latin-1"})
            self.assertEqual(seen, [enc])

    def test_atomic_write_then_load(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "record.json")
            atomic_write_json(path, {"b": 1, "a": "ü"})
            self.assertFalse(os.path.exists(path + ".tmp"))
            payload, backup = load_json_or_quarantine(path)
            self.assertEqual(payload, {"a": "ü", "b": 1})
            self.assertEqual(backup, "")

    def test_non_object_json_is_quarantined(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "record.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump([1, 2, 3], f)
            payload, backup = load_json_or_quarantine(path)
            self.assertIsNone(payload)
            self.assertTrue(os.path.exists(backup))
            self.assertFalse(os.path.exists(path))
            self.assertEqual(load_json_or_quarantine(path), (None, ""))


if __name__ == "__main__":
    unittest.main()
