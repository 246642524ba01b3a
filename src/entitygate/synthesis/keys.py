"""Key argument normalization for keyed operations (get/update/delete).

Loosely-typed callers address records in many shapes: ``{"ID": 5}``,
``{"id": "5"}``, ``5`` or ``{"value": 5}``. Before contract validation the
raw arguments are normalized so that every key appears under its declared
name. A key that still cannot be found is reported as ``MISSING_KEY``
rather than as a generic validation failure.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from entitygate.contracts.enums import ErrorCode, TypeTag
from entitygate.contracts.errors import ToolError
from entitygate.synthesis.types import coerce_key_value

# Alias accepted for the single key of a one-key entity.
VALUE_ALIAS = "value"


class MissingKeyError(ToolError):
    """Raised when a keyed operation is called without all of its key fields."""

    def __init__(self, missing: list[str], expected: list[str]) -> None:
        super().__init__(
            ErrorCode.MISSING_KEY,
            f"Missing key field(s): {', '.join(missing)}",
            {"missing": missing, "expected": expected},
        )
        self.missing = missing


def normalize_key_arguments(
    raw: Any,
    key_types: Mapping[str, TypeTag],
    *,
    case_insensitive: bool = True,
    allow_shorthand: bool = True,
) -> dict[str, Any]:
    """Return ``raw`` as an argument dict with every key under its declared name.

    With ``case_insensitive`` enabled:
    - a bare scalar is accepted for a single-key entity (if ``allow_shorthand``)
    - ``{"value": x}`` is accepted for a single-key entity (if ``allow_shorthand``)
    - an argument whose name matches a key ignoring case is renamed to the key

    Key values are passed through ``coerce_key_value`` so that ``"5"`` reaches an
    Integer key as ``5``. Non-key arguments are left untouched.

    Raises:
        MissingKeyError: If any key is absent after normalization.
    """
    keys = list(key_types)
    if not isinstance(raw, Mapping):
        if case_insensitive and allow_shorthand and len(keys) == 1 and raw is not None:
            raw = {keys[0]: raw}
        else:
            raw = {}
    arguments = dict(raw)

    if case_insensitive:
        if allow_shorthand and len(keys) == 1 and keys[0] not in arguments and VALUE_ALIAS in arguments:
            arguments[keys[0]] = arguments.pop(VALUE_ALIAS)
        for key in keys:
            if key in arguments:
                continue
            match = next((name for name in arguments if isinstance(name, str) and name.lower() == key.lower()), None)
            if match is not None:
                arguments[key] = arguments.pop(match)

    missing = [key for key in keys if key not in arguments]
    if missing:
        raise MissingKeyError(missing, keys)

    for key, tag in key_types.items():
        arguments[key] = coerce_key_value(arguments[key], tag)
    return arguments
