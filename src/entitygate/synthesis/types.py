"""Type coercion and validation primitives.

Maps an abstract ``TypeTag`` to a pydantic validator (``validator_for``) and
to a boundary coercion rule (``coerce_key_value``).

Callers are loosely typed: LLM agents routinely send ``"42"`` for an integer
key or ``12.5`` for a decimal amount. A numeric-looking string may only be
promoted to a native number when the target's native representation cannot
lose precision:

- Safe integers (Integer, Int16, Int32, UInt8): digit strings become ``int``
  (no sign allowed for UInt8); non-integral numbers are rejected.
- Precision-sensitive (Int64, Decimal): numbers become strings, strings stay
  strings. A string is never turned back into a number.
- Floating point (Double): native numbers only, in either direction.
- Text and identifiers: strings only, digit strings are never coerced.
"""

from __future__ import annotations

import math
import re
import uuid
from collections.abc import Callable
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from functools import cache
from typing import Annotated, Any

from pydantic import AfterValidator, BeforeValidator, Field, Strict, StrictBool, StrictStr, TypeAdapter

from entitygate.contracts.enums import (
    PRECISION_SENSITIVE_TAGS,
    SAFE_INTEGER_TAGS,
    UNSIGNED_INTEGER_TAGS,
    TypeTag,
)

_SIGNED_DIGITS = re.compile(r"-?\d+")
_UNSIGNED_DIGITS = re.compile(r"\d+")

# Inclusive value ranges for the bounded integer tags.
INTEGER_RANGES: dict[TypeTag, tuple[int, int]] = {
    TypeTag.INTEGER: (-(2**31), 2**31 - 1),
    TypeTag.INT32: (-(2**31), 2**31 - 1),
    TypeTag.INT16: (-(2**15), 2**15 - 1),
    TypeTag.UINT8: (0, 255),
    TypeTag.INT64: (-(2**63), 2**63 - 1),
}

# Largest integer a JSON/IEEE-754 number carries exactly.
MAX_SAFE_INTEGER = 2**53 - 1


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number_to_string(value: int | float) -> str:
    """Render a number the way a JSON producer would (``5.0`` -> ``"5"``)."""
    if isinstance(value, float) and value.is_integer() and abs(value) <= MAX_SAFE_INTEGER:
        return str(int(value))
    return str(value)


def coerce_key_value(raw: Any, tag: TypeTag) -> Any:
    """Coerce a boundary value between string and number based on its type tag.

    Rules, applied in order:
    1. Safe integer tags: a digit-only string (optionally signed, never signed
       for unsigned tags) becomes an ``int``. Other strings pass through.
    2. Precision-sensitive tags: a native number becomes its string form.
    3. Everything else is returned unchanged.

    Args:
        raw: Value as received from the caller
        tag: Type tag of the target field

    Returns:
        The coerced value, or ``raw`` if no rule applies.
    """
    if isinstance(raw, str) and tag in SAFE_INTEGER_TAGS:
        pattern = _UNSIGNED_DIGITS if tag in UNSIGNED_INTEGER_TAGS else _SIGNED_DIGITS
        if pattern.fullmatch(raw):
            return int(raw)
        return raw
    if _is_number(raw) and tag in PRECISION_SENSITIVE_TAGS:
        return _number_to_string(raw)
    return raw


def _integral(tag: TypeTag) -> Callable[[Any], Any]:
    def _coerce(value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError(f"{tag} does not accept booleans")
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"{tag} requires an integral number, got {value}")
            return int(value)
        return coerce_key_value(value, tag)

    return _coerce


def _precise(tag: TypeTag) -> Callable[[Any], Any]:
    def _normalize(value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError(f"{tag} does not accept booleans")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"{tag} does not accept NaN or Infinity")
        if isinstance(value, float) and tag is TypeTag.INT64 and not value.is_integer():
            raise ValueError(f"{tag} requires an integral number, got {value}")
        value = coerce_key_value(value, tag)
        if not isinstance(value, str):
            raise ValueError(f"{tag} requires a number or a numeric string")
        if tag is TypeTag.INT64:
            _check_int64_literal(value)
        else:
            _check_decimal_literal(value)
        return value

    return _normalize


def _check_int64_literal(value: str) -> None:
    if not _SIGNED_DIGITS.fullmatch(value):
        raise ValueError(f"'{value}' is not an integer literal")
    low, high = INTEGER_RANGES[TypeTag.INT64]
    if not low <= int(value) <= high:
        raise ValueError(f"'{value}' is outside the Int64 range")


def _check_decimal_literal(value: str) -> None:
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise ValueError(f"'{value}' is not a decimal literal") from None
    if not parsed.is_finite():
        raise ValueError("Decimal does not accept NaN or Infinity")


def _native_number(value: Any) -> Any:
    if isinstance(value, (str, bool)):
        raise ValueError("Double requires a native number")
    return value


def _not_a_number(value: Any) -> Any:
    if isinstance(value, (int, float)):
        raise ValueError("temporal values must be ISO-8601 strings")
    return value


def _uuid_string(value: str) -> str:
    try:
        uuid.UUID(value)
    except ValueError:
        raise ValueError(f"'{value}' is not a valid UUID") from None
    return value


# Finite float that rejects NaN/Infinity; they have no JSON representation.
FiniteFloat = Annotated[float, BeforeValidator(_native_number), Field(allow_inf_nan=False)]


def _build_validator(tag: TypeTag) -> Any:
    if tag in SAFE_INTEGER_TAGS:
        low, high = INTEGER_RANGES[tag]
        return Annotated[int, Strict(), BeforeValidator(_integral(tag)), Field(ge=low, le=high)]
    if tag in PRECISION_SENSITIVE_TAGS:
        return Annotated[str, Strict(), BeforeValidator(_precise(tag))]
    if tag is TypeTag.DOUBLE:
        return FiniteFloat
    if tag is TypeTag.UUID:
        return Annotated[StrictStr, AfterValidator(_uuid_string)]
    if tag is TypeTag.BOOLEAN:
        return StrictBool
    if tag is TypeTag.DATE:
        return Annotated[date, BeforeValidator(_not_a_number)]
    if tag is TypeTag.TIME:
        return Annotated[time, BeforeValidator(_not_a_number)]
    if tag in (TypeTag.DATETIME, TypeTag.TIMESTAMP):
        return Annotated[datetime, BeforeValidator(_not_a_number)]
    # String, LargeString, Binary
    return StrictStr


# Built once at import; tags are a closed enum.
_VALIDATORS: dict[TypeTag, Any] = {tag: _build_validator(tag) for tag in TypeTag}


def validator_for(tag: TypeTag) -> Any:
    """Return the pydantic type annotation validating values of ``tag``.

    The returned annotation can be used directly as a field type in
    ``pydantic.create_model`` and wrapped in ``list[...]`` or ``... | None``.
    """
    return _VALIDATORS[tag]


@cache
def adapter_for(tag: TypeTag) -> TypeAdapter[Any]:
    """Standalone validator for single values of ``tag`` (filter literals)."""
    return TypeAdapter(validator_for(tag))
