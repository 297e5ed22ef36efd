"""Tests for phone number normalization and equivalence."""

import pytest

from chatapp.schemas.contact import DeviceContact
from chatapp.services.phone import (
    candidate_formats,
    dedupe_device_contacts,
    format_registration_number,
    formats_overlap,
    is_same_number,
    is_valid_registration_number,
    normalize,
    phone_index_key,
)

PHONE_SAMPLES = [
    "+44 7700 900123",
    "07700-900-123",
    "(555) 010-9999",
    "+1 555 010 9999",
    "44+12",
    "++44 20",
    "ext. 12",
    "",
    "no digits",
    "  +  ",
]


class TestNormalize:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("+44 7700-900 123", "+447700900123"),
            ("(555) 010-9999", "5550109999"),
            ("44+12", "4412"),
            ("+", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize(raw) == expected

    @pytest.mark.parametrize("raw", PHONE_SAMPLES)
    def test_normalize_is_idempotent(self, raw):
        once = normalize(raw)
        assert normalize(once) == once

    def test_index_key_strips_plus(self):
        assert phone_index_key("+44 7700 900123") == "447700900123"


class TestCandidateFormats:
    def test_uk_international_number(self):
        formats = candidate_formats("+447700900123")
        assert {"+447700900123", "447700900123", "7700900123", "07700900123"} <= formats

    def test_uk_national_number(self):
        formats = candidate_formats("07700900123")
        assert "+447700900123" in formats
        assert "7700900123" in formats

    def test_north_american_number(self):
        assert "5550109999" in candidate_formats("+15550109999")
        assert "+15550109999" in candidate_formats("5550109999")

    def test_long_number_without_plus_gets_one(self):
        assert "+447700900123" in candidate_formats("447700900123")

    def test_suffix_fallbacks(self):
        formats = candidate_formats("+33612345678")
        assert "612345678" in formats
        assert "3612345678" in formats

    def test_no_digits_gives_no_formats(self):
        assert candidate_formats("n/a") == set()

    def test_overlap_is_symmetric(self):
        assert formats_overlap("+447700900123", "07700900123")
        assert formats_overlap("07700900123", "+447700900123")
        assert not formats_overlap("+447700900123", "+15550109999")


class TestIsSameNumber:
    def test_suffix_match_either_direction(self):
        assert is_same_number("+447700900123", "7700900123")
        assert is_same_number("7700900123", "+447700900123")

    def test_different_numbers(self):
        assert not is_same_number("+447700900123", "+447700900124")

    def test_empty_never_matches(self):
        assert not is_same_number("", "+447700900123")
        assert not is_same_number("+447700900123", "")


class TestDedupeDeviceContacts:
    def test_drops_duplicates_and_short_numbers(self):
        contacts = [
            DeviceContact(local_id="1", display_name="Alice", raw_phone_number="+44 7700 900123"),
            DeviceContact(local_id="2", display_name="Work", raw_phone_number="+447700900123"),
            DeviceContact(local_id="3", display_name="Voicemail", raw_phone_number="121"),
            DeviceContact(local_id="4", display_name="Bob", raw_phone_number="07700 900456"),
        ]
        assert [c.local_id for c in dedupe_device_contacts(contacts)] == ["1", "4"]


class TestRegistrationNumbers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("+447700900123", "+447700900123"),
            ("7700900123", "+447700900123"),
            ("15550109999", "+15550109999"),
            (" +15550109999 ", "+15550109999"),
        ],
    )
    def test_format_registration_number(self, raw, expected):
        assert format_registration_number(raw) == expected

    @pytest.mark.parametrize(
        "phone,valid",
        [
            ("+1234567", True),
            ("+123456", False),
            ("1234567890", False),
            ("+44 7700", False),
            ("+447700900123", True),
        ],
    )
    def test_is_valid_registration_number(self, phone, valid):
        assert is_valid_registration_number(phone) is valid
