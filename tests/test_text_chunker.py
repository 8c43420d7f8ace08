import os
import sys
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from audiostitch.text_chunker import normalize_text, plan_chunks, split_text  # noqa: E402


class TextChunkerTests(unittest.TestCase):
    def test_short_text_is_single_chunk(self) -> None:
        chunks = plan_chunks("Hello there. General Kenobi!", 2800)
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].text, "Hello there. General Kenobi!")
        self.assertEqual(chunks[0].chunk_number, 1)
        self.assertEqual(chunks[0].total_chunks, 1)

    def test_long_text_splits_on_sentence_boundaries(self) -> None:
        sentences = [f"Sentence number {i:04d} carries some narration text." for i in range(130)]
        text = " ".join(sentences)
        self.assertGreater(len(text), 6000)

        chunks = plan_chunks(text, 2800)

        self.assertEqual(len(chunks), 3)
        for chunk in chunks:
            self.assertLessEqual(chunk.length, 2800)
            self.assertTrue(chunk.text.endswith("."))
            self.assertEqual(chunk.total_chunks, 3)
        self.assertEqual([c.chunk_number for c in chunks], [1, 2, 3])
        self.assertEqual(" ".join(c.text for c in chunks), normalize_text(text))

    def test_markup_and_entities_are_normalized(self) -> None:
        out = normalize_text("<p>Fish &amp; chips</p>\n\n<b>are</b>   great.")
        self.assertEqual(out, "Fish & chips are great.")

    def test_sentence_longer_than_limit_splits_by_words(self) -> None:
        words = ["word"] * 100
        text = "Short intro. " + " ".join(words) + " end."
        pieces = split_text(text, 60)
        self.assertEqual(pieces[0], "Short intro.")
        for piece in pieces:
            self.assertLessEqual(len(piece), 60)
        self.assertEqual(" ".join(pieces), normalize_text(text))

    def test_oversized_single_word_is_kept_whole(self) -> None:
        giant = "x" * 50
        pieces = split_text(f"Tiny. {giant} tail words here.", 20)
        self.assertIn(giant, pieces)

    def test_empty_text_yields_no_chunks(self) -> None:
        self.assertEqual(plan_chunks("  <br/>  ", 2800), [])


if __name__ == "__main__":
    unittest.main()
