"""Tests for the shared parsing helpers."""

import re
from datetime import date
from decimal import Decimal

from fee_reconciliation.parsing.common import (
    parse_date,
    parse_currency,
    is_negative_amount,
    extract_payer_identifier,
    extract_payment_reference,
    generate_bank_reference,
    content_fingerprint,
)


class TestParseDate:
    """Tests for date parsing."""

    def test_statement_short_year(self):
        assert parse_date("23 May 25") == date(2025, 5, 23)

    def test_single_digit_day(self):
        assert parse_date("3 Jun 25") == date(2025, 6, 3)

    def test_short_year_always_this_century(self):
        assert parse_date("01 Jan 75") == date(2075, 1, 1)

    def test_iso_format(self):
        assert parse_date("2025-01-15") == date(2025, 1, 15)

    def test_day_first_slashes(self):
        assert parse_date("15/01/2025") == date(2025, 1, 15)

    def test_day_first_dashes(self):
        assert parse_date("15-01-2025") == date(2025, 1, 15)

    def test_four_digit_year_with_month_name(self):
        assert parse_date("05 Mar 2025") == date(2025, 3, 5)

    def test_extra_whitespace(self):
        assert parse_date("  23   May 25 ") == date(2025, 5, 23)

    def test_unparseable(self):
        assert parse_date("yesterday") is None
        assert parse_date("") is None
        assert parse_date(None) is None


class TestParseCurrency:
    """Tests for currency parsing."""

    def test_rand_with_thousands(self):
        assert parse_currency("R1,500.00") == Decimal("1500.00")

    def test_spaces_and_symbol(self):
        assert parse_currency("R 45,230.50") == Decimal("45230.50")

    def test_quantized_to_cents(self):
        assert parse_currency("700") == Decimal("700.00")
        assert str(parse_currency("700")) == "700.00"

    def test_sign_is_stripped(self):
        assert parse_currency("-250.00") == Decimal("250.00")

    def test_nothing_numeric(self):
        assert parse_currency("abc") is None
        assert parse_currency(".") is None
        assert parse_currency(None) is None

    def test_several_points(self):
        assert parse_currency("1.2.3") is None


class TestNegativeAmounts:
    """Tests for debit detection."""

    def test_leading_minus(self):
        assert is_negative_amount("-100.00")

    def test_trailing_minus(self):
        assert is_negative_amount("100.00-")

    def test_parentheses(self):
        assert is_negative_amount("(100.00)")

    def test_currency_then_minus(self):
        assert is_negative_amount("R-100.00")

    def test_positive(self):
        assert not is_negative_amount("100.00")
        assert not is_negative_amount("R1,500.00")
        assert not is_negative_amount("")


class TestReferences:
    """Tests for payer identifiers and pseudo-references."""

    def test_identifier_found(self):
        assert extract_payer_identifier("STU-2025-001 January Fee") == "STU-2025-001"

    def test_first_identifier_wins(self):
        assert extract_payer_identifier("STU-2025-002 and STU-2025-001") == "STU-2025-002"

    def test_identifier_absent(self):
        assert extract_payer_identifier("January fees") is None
        assert extract_payer_identifier(None) is None

    def test_payment_reference_prefers_identifier(self):
        assert extract_payment_reference("CAPITEC STU-2025-001 FEES") == "STU-2025-001"

    def test_payment_reference_truncates_description(self):
        description = "CAPITEC " + "X" * 80
        reference = extract_payment_reference(description)
        assert reference == description[:50]
        assert len(reference) == 50

    def test_payment_reference_blank(self):
        assert extract_payment_reference("   ") is None


class TestKeys:
    """Tests for synthesized keys and fingerprints."""

    def test_bank_reference_shape(self):
        reference = generate_bank_reference(date(2025, 5, 23), Decimal("700.00"))
        assert re.fullmatch(r"2025-05-23-70000-[0-9a-f]{8}", reference)

    def test_bank_reference_is_salted(self):
        first = generate_bank_reference(date(2025, 5, 23), Decimal("700.00"))
        second = generate_bank_reference(date(2025, 5, 23), Decimal("700.00"))
        assert first != second

    def test_fingerprint_is_stable(self):
        first = content_fingerprint(date(2025, 1, 15), Decimal("1500"), "STU-2025-001")
        second = content_fingerprint(date(2025, 1, 15), Decimal("1500.00"), "STU-2025-001")
        assert first == second
        assert len(first) == 44

    def test_fingerprint_depends_on_text(self):
        first = content_fingerprint(date(2025, 1, 15), Decimal("1500.00"), "A")
        second = content_fingerprint(date(2025, 1, 15), Decimal("1500.00"), "B")
        assert first != second
