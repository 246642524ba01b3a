"""Operation synthesis: type primitives, per-mode contracts, composition expansion."""

from entitygate.synthesis.composition import CompositionExpander, EntityResolver, write_field_definitions
from entitygate.synthesis.keys import MissingKeyError, normalize_key_arguments
from entitygate.synthesis.synthesizer import SchemaSynthesizer, field_name_enum, filterable_fields
from entitygate.synthesis.types import coerce_key_value, validator_for

__all__ = [
    "CompositionExpander",
    "EntityResolver",
    "MissingKeyError",
    "SchemaSynthesizer",
    "coerce_key_value",
    "field_name_enum",
    "filterable_fields",
    "normalize_key_arguments",
    "validator_for",
    "write_field_definitions",
]
