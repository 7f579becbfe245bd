"""Tests for request field validation."""

import time

import pytest

from stayhub.service import validation
from stayhub.service.errors import (
    InvalidEmailError,
    InvalidPasswordError,
    InvalidPhoneError,
    MissingFieldsError,
    ValidationError,
)
from stayhub.storage.models import Address, PriceRange


class TestRequireFields:
    def test_reports_every_missing_field(self):
        with pytest.raises(MissingFieldsError) as excinfo:
            validation.require_fields(
                {"name": "Ann", "email": "", "phone": "   "}, ("name", "email", "phone", "password")
            )
        assert excinfo.value.detail == {"fields": ["email", "phone", "password"]}
        assert excinfo.value.error_code == "missing_fields"

    def test_passes_when_all_present(self):
        validation.require_fields({"email": "a@b.com"}, ("email",))


class TestEmail:
    @pytest.mark.parametrize(
        "email", ["user@example.com", "first.last@mail.example.org", "a-b@c-d.vn"]
    )
    def test_accepts_valid(self, email):
        assert validation.validate_email(email) == email

    def test_normalizes_case_and_whitespace(self):
        assert validation.validate_email("  User@Example.COM ") == "user@example.com"

    @pytest.mark.parametrize("email", ["plain", "missing@tld", "@example.com", "a@b.toolong"])
    def test_rejects_invalid(self, email):
        with pytest.raises(InvalidEmailError):
            validation.validate_email(email)

    def test_accepts_multi_part_tld(self):
        assert validation.validate_email("host@mail.co.uk") == "host@mail.co.uk"

    @pytest.mark.parametrize(
        "email",
        [
            "a" * 253 + "!",
            "a" * 120 + "@" + "b" * 132 + "!",
            "a." * 126 + "!",
        ],
    )
    def test_long_near_miss_fails_fast(self, email):
        started = time.perf_counter()
        with pytest.raises(InvalidEmailError):
            validation.validate_email(email)
        assert time.perf_counter() - started < 0.5

    def test_rejects_overlong_address(self):
        with pytest.raises(InvalidEmailError):
            validation.validate_email("a" * 250 + "@b.com")


class TestPhone:
    def test_accepts_ten_digits(self):
        assert validation.validate_phone("0912345678") == "0912345678"

    @pytest.mark.parametrize("phone", ["091234567", "09123456789", "09123abc78", "+84912345678"])
    def test_rejects_other_shapes(self, phone):
        with pytest.raises(InvalidPhoneError):
            validation.validate_phone(phone)


class TestPassword:
    @pytest.mark.parametrize("password", ["Abcdefg1", "abcdef1!", "ABCDEF1!", "Abcdefg!"])
    def test_three_of_four_classes_is_enough(self, password):
        assert validation.validate_password(password) == password

    @pytest.mark.parametrize("password", ["Abc1!", "abcdefgh", "abcdefg1", "ABCDEFGH1"])
    def test_rejects_short_or_simple(self, password):
        with pytest.raises(InvalidPasswordError):
            validation.validate_password(password)

    def test_class_count(self):
        assert validation.password_classes("aA1!") == 4
        assert validation.password_classes("aaaa") == 1


class TestAddress:
    def test_builds_address(self):
        address = validation.validate_address(
            {"street": " 1 Main ", "ward": "W1", "district": "D1", "city": "HCMC"}
        )
        assert address == Address(street="1 Main", ward="W1", district="D1", city="HCMC")

    def test_missing_subfields_are_named(self):
        with pytest.raises(MissingFieldsError) as excinfo:
            validation.validate_address({"street": "1 Main", "city": ""})
        assert excinfo.value.detail["fields"] == ["address.ward", "address.district", "address.city"]

    def test_non_mapping_is_missing(self):
        with pytest.raises(MissingFieldsError):
            validation.validate_address("1 Main street")


class TestProfileFields:
    def test_name_bounds(self):
        assert validation.validate_name("  Jo ") == "Jo"
        with pytest.raises(ValidationError):
            validation.validate_name("J")
        with pytest.raises(ValidationError):
            validation.validate_name("x" * 51)

    def test_role(self):
        assert validation.validate_role("technician") == "technician"
        with pytest.raises(ValidationError):
            validation.validate_role("superuser")

    def test_utilities_deduplicated(self):
        assert validation.validate_utilities(["wifi", "aircon", "wifi"]) == ["wifi", "aircon"]
        with pytest.raises(ValidationError):
            validation.validate_utilities(["wifi", "pool"])

    def test_price_range(self):
        assert validation.validate_price_range({"min": "100", "max": 500}) == PriceRange(100.0, 500.0)
        assert validation.validate_price_range(None) is None
        with pytest.raises(ValidationError):
            validation.validate_price_range({"min": 600, "max": 500})
        with pytest.raises(ValidationError):
            validation.validate_price_range({"min": -1, "max": 5})
