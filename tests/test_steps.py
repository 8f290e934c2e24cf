"""Tests for step validators."""

from datetime import date

import pytest

from conversation import Attachment, Rejection
from steps import (
    parse_date,
    parse_weight,
    validate_date,
    validate_optional_text,
    validate_optional_weight,
    validate_pictures,
    validate_text,
    validate_weight,
)


class TestDate:
    def test_valid_date_normalized_to_iso(self):
        assert validate_date("02/15/2024") == "2024-02-15"

    def test_surrounding_whitespace_ignored(self):
        assert validate_date("  12/31/2023 ") == "2023-12-31"

    def test_leap_day(self):
        assert parse_date("02/29/2024") == date(2024, 2, 29)
        assert parse_date("02/29/2023") is None

    @pytest.mark.parametrize("text", ["02/30/2024", "04/31/2024", "13/01/2024", "00/10/2024", "01/32/2024"])
    def test_impossible_dates_rejected(self, text):
        result = validate_date(text)
        assert isinstance(result, Rejection)
        assert "valid date" in result.message

    @pytest.mark.parametrize("text", ["1/5/2024", "2024-02-15", "02/15/24", "", "tomorrow"])
    def test_bad_format_rejected(self, text):
        result = validate_date(text)
        assert isinstance(result, Rejection)
        assert "MM/DD/YYYY" in result.message


class TestText:
    def test_trimmed(self):
        assert validate_text("  Blue Dream \n") == "Blue Dream"

    def test_blank_rejected_with_label(self):
        result = validate_text("   ", label="Strain name")
        assert isinstance(result, Rejection)
        assert result.message.startswith("Strain name cannot be empty")

    def test_skip_is_just_text(self):
        assert validate_text("skip") == "skip"


class TestOptionalText:
    @pytest.mark.parametrize("text", ["skip", "SKIP", " Skip "])
    def test_skip_stores_absence(self, text):
        assert validate_optional_text(text) is None

    def test_value_trimmed(self):
        assert validate_optional_text(" 24C, 55% RH ") == "24C, 55% RH"


class TestWeight:
    def test_parse(self):
        assert parse_weight("14.5") == 14.5
        assert parse_weight(" 0 ") == 0.0

    @pytest.mark.parametrize("text, expected", [("28g", 28.0), ("14.5 grams", 14.5), (" .5g", 0.5), ("1e2 g", 100.0)])
    def test_unit_suffix_ignored(self, text, expected):
        assert parse_weight(text) == expected
        assert validate_weight(text) == expected

    @pytest.mark.parametrize("text", ["abc", "-5", "", "nan", "inf", "g12", "-3 grams"])
    def test_invalid(self, text):
        assert isinstance(validate_weight(text), Rejection)

    def test_weight_does_not_accept_skip(self):
        assert isinstance(validate_weight("skip"), Rejection)

    def test_optional_weight_skip(self):
        assert validate_optional_weight("Skip") is None

    def test_optional_weight_value(self):
        assert validate_optional_weight("3.25") == 3.25

    def test_optional_weight_rejection_mentions_skip(self):
        result = validate_optional_weight("-1")
        assert isinstance(result, Rejection)
        assert "skip" in result.message


class TestPictures:
    def test_collects_only_images_in_order(self):
        attachments = [
            Attachment("https://x/1.jpg", "image/jpeg"),
            Attachment("https://x/notes.pdf", "application/pdf"),
            Attachment("https://x/2.png", "image/png"),
            Attachment("https://x/unknown", None),
        ]
        assert validate_pictures("", attachments) == ["https://x/1.jpg", "https://x/2.png"]

    def test_skip_ignores_attachments(self):
        attachments = [Attachment("https://x/1.jpg", "image/jpeg"), Attachment("https://x/2.jpg", "image/jpeg")]
        assert validate_pictures("skip", attachments) == []

    def test_no_attachments_is_empty_list(self):
        assert validate_pictures("here you go", []) == []
