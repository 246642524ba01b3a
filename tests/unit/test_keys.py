"""Tests for key argument normalization."""

from __future__ import annotations

import pytest

from entitygate.contracts.enums import ErrorCode, TypeTag
from entitygate.synthesis.keys import MissingKeyError, normalize_key_arguments

SINGLE = {"ID": TypeTag.INTEGER}
COMPOSITE = {"ID": TypeTag.INTEGER, "invoice_ID": TypeTag.UUID}


class TestExactKeys:
    def test_declared_name_passes(self) -> None:
        assert normalize_key_arguments({"ID": 5}, SINGLE) == {"ID": 5}

    def test_digit_string_coerced_for_integer_key(self) -> None:
        assert normalize_key_arguments({"ID": "5"}, SINGLE) == {"ID": 5}

    def test_non_key_arguments_untouched(self) -> None:
        assert normalize_key_arguments({"ID": 5, "title": "Dune"}, SINGLE) == {"ID": 5, "title": "Dune"}


class TestCaseInsensitiveMatching:
    def test_key_renamed_ignoring_case(self) -> None:
        assert normalize_key_arguments({"id": 5}, SINGLE) == {"ID": 5}

    def test_bare_scalar_shorthand(self) -> None:
        assert normalize_key_arguments("7", SINGLE) == {"ID": 7}

    def test_value_alias_shorthand(self) -> None:
        assert normalize_key_arguments({"value": 7}, SINGLE) == {"ID": 7}

    def test_shorthand_needs_a_single_key(self) -> None:
        with pytest.raises(MissingKeyError):
            normalize_key_arguments(7, COMPOSITE)

    def test_shorthand_can_be_disabled(self) -> None:
        with pytest.raises(MissingKeyError):
            normalize_key_arguments({"value": 7}, SINGLE, allow_shorthand=False)

    def test_matching_can_be_disabled(self) -> None:
        with pytest.raises(MissingKeyError):
            normalize_key_arguments({"id": 5}, SINGLE, case_insensitive=False)


class TestMissingKeys:
    def test_reports_missing_and_expected(self) -> None:
        with pytest.raises(MissingKeyError) as exc_info:
            normalize_key_arguments({"ID": 1}, COMPOSITE)

        error = exc_info.value
        assert error.code is ErrorCode.MISSING_KEY
        assert error.details == {"missing": ["invoice_ID"], "expected": ["ID", "invoice_ID"]}

    def test_none_arguments_are_missing_every_key(self) -> None:
        with pytest.raises(MissingKeyError) as exc_info:
            normalize_key_arguments(None, SINGLE)
        assert exc_info.value.missing == ["ID"]
