# tests/property/test_coercion_properties.py
"""Property tests for boundary coercion and type validators.

The rule under test: a value is only converted between string and number
when the target's native representation cannot lose precision.
"""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from entitygate.contracts.enums import PRECISION_SENSITIVE_TAGS, SAFE_INTEGER_TAGS, TEXT_TAGS, TypeTag
from entitygate.synthesis.types import INTEGER_RANGES, adapter_for, coerce_key_value
from tests.property.settings import QUICK_SETTINGS, STANDARD_SETTINGS

signed_safe_tags = st.sampled_from(sorted(SAFE_INTEGER_TAGS - {TypeTag.UINT8}))
text_tags = st.sampled_from(sorted(TEXT_TAGS))
precision_tags = st.sampled_from(sorted(PRECISION_SENSITIVE_TAGS))


class TestSafeIntegerCoercion:
    @given(tag=signed_safe_tags, value=st.integers(min_value=-(2**15), max_value=2**15 - 1))
    @STANDARD_SETTINGS
    def test_digit_strings_become_ints(self, tag: TypeTag, value: int) -> None:
        assert coerce_key_value(str(value), tag) == value

    @given(value=st.integers(min_value=0, max_value=255))
    @STANDARD_SETTINGS
    def test_uint8_digit_strings_become_ints(self, value: int) -> None:
        assert coerce_key_value(str(value), TypeTag.UINT8) == value

    @given(value=st.integers(min_value=1, max_value=255))
    @QUICK_SETTINGS
    def test_uint8_never_accepts_signed_strings(self, value: int) -> None:
        assert coerce_key_value(f"-{value}", TypeTag.UINT8) == f"-{value}"

    @given(tag=signed_safe_tags, value=st.integers())
    @STANDARD_SETTINGS
    def test_validator_enforces_range(self, tag: TypeTag, value: int) -> None:
        low, high = INTEGER_RANGES[tag]
        if low <= value <= high:
            assert adapter_for(tag).validate_python(value) == value
        else:
            with pytest.raises(ValidationError):
                adapter_for(tag).validate_python(value)


class TestPrecisionSensitiveCoercion:
    @given(tag=precision_tags, value=st.integers(min_value=-(2**53), max_value=2**53))
    @STANDARD_SETTINGS
    def test_numbers_become_strings(self, tag: TypeTag, value: int) -> None:
        assert coerce_key_value(value, tag) == str(value)

    @given(tag=precision_tags, value=st.from_regex(r"-?[1-9][0-9]{0,17}", fullmatch=True))
    @STANDARD_SETTINGS
    def test_strings_are_never_turned_into_numbers(self, tag: TypeTag, value: str) -> None:
        coerced = coerce_key_value(value, tag)
        assert coerced == value
        assert isinstance(coerced, str)

    @given(value=st.integers(min_value=-(2**63), max_value=2**63 - 1))
    @STANDARD_SETTINGS
    def test_int64_keeps_every_digit(self, value: int) -> None:
        assert adapter_for(TypeTag.INT64).validate_python(str(value)) == str(value)


class TestTextCoercion:
    @given(tag=text_tags, value=st.from_regex(r"[0-9]{1,12}", fullmatch=True))
    @STANDARD_SETTINGS
    def test_digit_strings_stay_strings(self, tag: TypeTag, value: str) -> None:
        assert coerce_key_value(value, tag) == value

    @given(value=st.integers() | st.floats(allow_nan=False))
    @QUICK_SETTINGS
    def test_string_validator_rejects_numbers(self, value: float) -> None:
        with pytest.raises(ValidationError):
            adapter_for(TypeTag.STRING).validate_python(value)


class TestDoubleValidation:
    @given(value=st.floats(allow_nan=False, allow_infinity=False))
    @STANDARD_SETTINGS
    def test_finite_floats_pass(self, value: float) -> None:
        assert adapter_for(TypeTag.DOUBLE).validate_python(value) == value

    @given(value=st.sampled_from([float("nan"), float("inf"), float("-inf")]))
    @QUICK_SETTINGS
    def test_non_finite_floats_rejected(self, value: float) -> None:
        with pytest.raises(ValidationError):
            adapter_for(TypeTag.DOUBLE).validate_python(value)

    @given(value=st.floats(allow_nan=False, allow_infinity=False).map(repr))
    @QUICK_SETTINGS
    def test_numeric_strings_rejected(self, value: str) -> None:
        with pytest.raises(ValidationError):
            adapter_for(TypeTag.DOUBLE).validate_python(value)
