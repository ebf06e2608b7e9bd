import unittest
from unittest import mock

from lib.catalog import normalizer
from lib.catalog.normalizer import normalize_text


class NormalizeTests(unittest.TestCase):
    def test_traditional_and_simplified_fold_together(self):
        self.assertEqual(normalize_text("神的游戏"), normalize_text("神的遊戲"))
        self.assertEqual(normalize_text("張懸"), "张悬")

    def test_case_and_whitespace_insensitive(self):
        self.assertEqual(normalize_text("  Abc "), normalize_text("abc"))
        self.assertEqual(normalize_text("Deep   Blue\tSea"), "deep blue sea")

    def test_idempotent(self):
        for s in ["  Abc ", "神的遊戲", "Mixed 張懸 Album", "", "   "]:
            once = normalize_text(s)
            self.assertEqual(normalize_text(once), once)

    def test_phrase_conversion_reaches_a_fixed_point(self):
        for s in ["乾紅", "干红", "蕭乾", "畢昇", "於梨華"]:
            once = normalize_text(s)
            self.assertEqual(normalize_text(once), once)
        self.assertEqual(normalize_text("乾紅"), normalize_text("干红"))

    def test_conversion_repeats_until_stable(self):
        steps = {"乾紅": "乾红", "乾红": "干红"}
        converter = mock.Mock()
        converter.convert.side_effect = lambda s: steps.get(s, s)
        with mock.patch.object(normalizer, "_get_converter", return_value=converter):
            self.assertEqual(normalize_text("乾紅"), "干红")
        self.assertEqual(converter.convert.call_count, 3)

    def test_none_and_blank(self):
        self.assertEqual(normalize_text(None), "")
        self.assertEqual(normalize_text("   "), "")

    def test_conversion_failure_degrades_to_trim_lower(self):
        broken = mock.Mock()
        broken.convert.side_effect = RuntimeError("dictionary missing")
        with mock.patch.object(normalizer, "_get_converter", return_value=broken):
            self.assertEqual(normalize_text("  遊戲 ABC "), "遊戲 abc")


if __name__ == "__main__":
    unittest.main()
