"""
tests/test_core_utils.py -- OTP generation, phone normalization, masking.
"""

from __future__ import annotations

import pytest

from core.masking import mask_email, mask_phone
from core.otp import generate_numeric_code
from core.phone import normalize_phone_number, sanitize_phone_number


class TestOtp:
    @pytest.mark.parametrize("length", [1, 4, 6, 10])
    def test_code_has_requested_length_and_is_numeric(self, length):
        for _ in range(20):
            code = generate_numeric_code(length)
            assert len(code) == length
            assert code.isdigit()

    def test_six_digit_codes_stay_in_range(self):
        for _ in range(50):
            assert 100000 <= int(generate_numeric_code(6)) <= 999999

    @pytest.mark.parametrize("length", [0, 11, -1])
    def test_out_of_range_length_rejected(self, length):
        with pytest.raises(ValueError):
            generate_numeric_code(length)


class TestPhone:
    def test_strips_formatting(self):
        assert normalize_phone_number("+1 (555) 555-1212") == "+15555551212"

    def test_double_zero_prefix_becomes_plus(self):
        assert normalize_phone_number("0044 20 7946 0958") == "+442079460958"

    def test_trunk_zero_dropped_after_country_code(self):
        assert normalize_phone_number("+61 0412 345 678") == "+61412345678"

    def test_sanitize_blank_is_none(self):
        assert sanitize_phone_number("   ") is None
        assert sanitize_phone_number(None) is None

    def test_sanitize_requires_country_code(self):
        with pytest.raises(ValueError):
            sanitize_phone_number("555-555-1212")

    def test_sanitize_without_country_code_requirement(self):
        assert sanitize_phone_number("555-555-1212", require_country_code=False) == "5555551212"


class TestMasking:
    def test_mask_phone_shows_last_four(self):
        assert mask_phone("+15555551212") == "***-***-1212"

    def test_mask_short_phone(self):
        assert mask_phone("123") == "***123"

    def test_mask_email(self):
        assert mask_email("ada@example.com") == "a***a@e***.com"

    def test_mask_email_short_local(self):
        assert mask_email("al@example.com") == "a***@e***.com"

    def test_mask_invalid_email(self):
        assert mask_email("not-an-email") == "***"
