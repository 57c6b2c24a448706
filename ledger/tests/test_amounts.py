import unittest
from decimal import Decimal

from ledger.amounts import format_amount, looks_like_thousands, parse_amount


class ParseAmountTests(unittest.TestCase):
    def test_comma_decimal_with_dot_grouping(self) -> None:
        self.assertEqual(parse_amount("1.234.567,89"), Decimal("1234567.89"))

    def test_dot_decimal_with_comma_grouping(self) -> None:
        self.assertEqual(parse_amount("1,234.5"), Decimal("1234.5"))

    def test_single_comma_is_decimal_mark(self) -> None:
        self.assertEqual(parse_amount("1234,5"), Decimal("1234.5"))

    def test_three_digit_groups_are_thousands(self) -> None:
        self.assertEqual(parse_amount("1.234"), Decimal("1234"))
        self.assertEqual(parse_amount("12,345,678"), Decimal("12345678"))

    def test_leading_minus_is_negative(self) -> None:
        self.assertEqual(parse_amount("-41,05"), Decimal("-41.05"))

    def test_currency_symbols_and_spaces_are_ignored(self) -> None:
        self.assertEqual(parse_amount(" ₺ 1.250,00 "), Decimal("1250.00"))
        self.assertEqual(parse_amount("$ 99.90"), Decimal("99.90"))

    def test_unreadable_input_yields_zero(self) -> None:
        self.assertEqual(parse_amount("abc"), Decimal("0"))
        self.assertEqual(parse_amount(""), Decimal("0"))
        self.assertEqual(parse_amount(None), Decimal("0"))
        self.assertEqual(parse_amount("-"), Decimal("0"))

    def test_numbers_pass_through(self) -> None:
        self.assertEqual(parse_amount(Decimal("7.25")), Decimal("7.25"))
        self.assertEqual(parse_amount(12.5), Decimal("12.5"))
        self.assertEqual(parse_amount(3), Decimal("3"))
        self.assertEqual(parse_amount(Decimal("NaN")), Decimal("0"))


class FormatAmountTests(unittest.TestCase):
    def test_formats_with_dot_grouping_and_comma_decimals(self) -> None:
        self.assertEqual(format_amount(Decimal("1234567.891")), "1.234.567,89")

    def test_always_two_decimals(self) -> None:
        self.assertEqual(format_amount(Decimal("5")), "5,00")
        self.assertEqual(format_amount(Decimal("-41.05")), "-41,05")

    def test_blank_renders_empty(self) -> None:
        self.assertEqual(format_amount(None), "")
        self.assertEqual(format_amount("   "), "")

    def test_negative_zero_renders_as_zero(self) -> None:
        self.assertEqual(format_amount(Decimal("-0.001")), "0,00")

    def test_formatted_text_parses_back(self) -> None:
        for value in (Decimal("0.5"), Decimal("999.99"), Decimal("1234567.89"), Decimal("-12000.10")):
            self.assertEqual(parse_amount(format_amount(value)), value)


class ThousandsDetectionTests(unittest.TestCase):
    def test_requires_groups_of_three(self) -> None:
        self.assertTrue(looks_like_thousands("1.234.567", "."))
        self.assertFalse(looks_like_thousands("1.23", "."))
        self.assertFalse(looks_like_thousands("1234.567", "."))
        self.assertFalse(looks_like_thousands("1234", "."))


if __name__ == "__main__":
    unittest.main()
