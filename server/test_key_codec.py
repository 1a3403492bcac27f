import unittest
from decimal import Decimal

from key_codec import (
    KEY_SEPARATOR, decode_key, encode_key, encode_number, encode_prefix,
    split_prefix_marker, to_index_string,
)
from store_errors import ConfigurationError, LogicalInputError


class TestEncodeNumber(unittest.TestCase):
    def test_known_encodings(self):
        self.assertEqual(encode_number(0), "1" + "0" * 12)
        self.assertEqual(encode_number(1), "2121000000000")
        self.assertEqual(encode_number(-2.5), "0127499999999")
        self.assertEqual(encode_number(Decimal("0.5")), "2115000000000")

    def test_order_is_preserved(self):
        values = [-1e12, -1000, -2.5, -1, -0.001, -1e-12, 0, 1e-12, 0.001, 0.5, 1, 2, 2.5, 10, 20, 20.1, 210, 1e12]
        encoded = [encode_number(v) for v in values]
        self.assertEqual(encoded, sorted(encoded))
        self.assertEqual(len(set(encoded)), len(values))

    def test_fixed_width(self):
        widths = {len(encode_number(v)) for v in (0, 1, -1, 123456.789, -0.000123, 1e12)}
        self.assertEqual(widths, {13})

    def test_int_and_float_agree(self):
        self.assertEqual(encode_number(20), encode_number(20.0))
        self.assertEqual(encode_number(-3), encode_number(Decimal("-3.000")))

    def test_extra_digits_share_an_encoding(self):
        # Order is only weak beyond SIGNIFICANT_DIGITS; equality is checked on raw values
        self.assertEqual(encode_number(1.00000000001), encode_number(1))
        self.assertEqual(encode_number(0.1 + 0.2), encode_number(0.3))
        self.assertLessEqual(encode_number(1), encode_number(1.00000000001))

    def test_out_of_range(self):
        for v in (1e13, -1e13, 1e-13, -1e-13):
            with self.assertRaises(ConfigurationError):
                encode_number(v)

    def test_non_finite(self):
        for v in (float("nan"), float("inf"), float("-inf")):
            with self.assertRaises(ConfigurationError):
                encode_number(v)

    def test_rejects_non_numbers(self):
        with self.assertRaises(TypeError):
            encode_number("12")
        with self.assertRaises(TypeError):
            encode_number(True)


class TestCompositeKeys(unittest.TestCase):
    def test_to_index_string(self):
        self.assertEqual(to_index_string("world"), "world")
        self.assertEqual(to_index_string(True), "true")
        self.assertEqual(to_index_string(False), "false")
        self.assertEqual(to_index_string(1), encode_number(1))

    def test_to_index_string_rejects_containers(self):
        for v in ([1], {"a": 1}, (1, 2), {1}):
            with self.assertRaises(LogicalInputError):
                to_index_string(v)

    def test_separator_in_value(self):
        with self.assertRaises(LogicalInputError):
            to_index_string("a" + KEY_SEPARATOR + "b")

    def test_encode_key(self):
        self.assertEqual(encode_key("world", "42"), "world" + KEY_SEPARATOR + "42")
        self.assertEqual(decode_key(encode_key(-2.5, "7")), ("0127499999999", "7"))

    def test_shorter_value_sorts_first(self):
        keys = [encode_key("AAAAA", "3"), encode_key("BBB", "0"), encode_key("AAA", "2")]
        self.assertEqual(sorted(keys), [encode_key("AAA", "2"), encode_key("AAAAA", "3"), encode_key("BBB", "0")])

    def test_same_value_keys_are_contiguous(self):
        keys = sorted([encode_key("world", "9"), encode_key("worldAAA", "1"), encode_key("world", "10")])
        self.assertTrue(keys[0].startswith(encode_prefix("world")))
        self.assertTrue(keys[1].startswith(encode_prefix("world")))
        self.assertFalse(keys[2].startswith(encode_prefix("world")))

    def test_decode_key_requires_separator(self):
        with self.assertRaises(ValueError):
            decode_key("plain")

    def test_split_prefix_marker(self):
        self.assertEqual(split_prefix_marker("name%"), ("name", True))
        self.assertEqual(split_prefix_marker("name"), ("name", False))
        self.assertEqual(split_prefix_marker("user.name%"), ("user.name", True))


if __name__ == "__main__":
    unittest.main()
