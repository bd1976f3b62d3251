import unittest
from datetime import datetime

from feedsync.similarity import is_within_time_tolerance, token_overlap, tokenize


class TokenizeTests(unittest.TestCase):
    def test_lowercases_and_drops_short_tokens(self) -> None:
        self.assertEqual(tokenize("U17 Kamp vs AGF"), {"u17", "kamp", "agf"})

    def test_punctuation_splits_tokens(self) -> None:
        self.assertEqual(tokenize("Kamp: Brøndby-AGF!"), {"kamp", "brøndby", "agf"})

    def test_danish_letters_are_kept(self) -> None:
        self.assertEqual(tokenize("Træning på Græsbanen"), {"træning", "græsbanen"})

    def test_empty_input(self) -> None:
        self.assertEqual(tokenize(""), set())
        self.assertEqual(tokenize(None), set())


class TokenOverlapTests(unittest.TestCase):
    def test_identical_texts(self) -> None:
        self.assertEqual(token_overlap("Kamp mod AGF", "kamp MOD agf"), 1.0)

    def test_jaccard_index(self) -> None:
        # {kamp, mod, agf} vs {kamp, mod, fcm}: 2 shared of 4 total.
        self.assertAlmostEqual(token_overlap("Kamp mod AGF", "Kamp mod FCM"), 0.5)

    def test_empty_side_scores_zero(self) -> None:
        self.assertEqual(token_overlap("", "Kamp"), 0.0)
        self.assertEqual(token_overlap("Kamp", "ab"), 0.0)


class TimeToleranceTests(unittest.TestCase):
    def test_boundary_is_inclusive(self) -> None:
        base = datetime(2026, 3, 1, 10, 0, 0)
        self.assertTrue(is_within_time_tolerance(base, datetime(2026, 3, 1, 10, 5, 0), 300))
        self.assertTrue(is_within_time_tolerance(datetime(2026, 3, 1, 9, 55, 0), base, 300))
        self.assertFalse(is_within_time_tolerance(base, datetime(2026, 3, 1, 10, 5, 1), 300))


if __name__ == "__main__":
    unittest.main()
