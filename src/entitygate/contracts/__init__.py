"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE: it depends on nothing else in entitygate.
Descriptors, enums, argument models and error payloads defined here are
consumed by synthesis, query compilation, the executor and the registrar.

Import patterns:
    from entitygate.contracts import EntityDescriptor, OperationMode, TypeTag
"""

from entitygate.contracts.access import (
    ALL_OPERATIONS,
    PRIVILEGED_IDENTITY,
    AccessRights,
    Identity,
    RestrictedOperation,
    Restriction,
)
from entitygate.contracts.entity import (
    AssociationField,
    DescriptorError,
    EntityDescriptor,
    FieldSpec,
    ScalarField,
)
from entitygate.contracts.enums import (
    FAILURE_CODES,
    KEYED_MODES,
    ErrorCode,
    OperationMode,
    QueryCapability,
    ReturnMode,
    TypeTag,
)
from entitygate.contracts.errors import ToolError, ToolErrorPayload, ValidationIssue
from entitygate.contracts.query import (
    AggregateClause,
    FilterClause,
    OrderByClause,
    QueryArgs,
)

__all__ = [
    "ALL_OPERATIONS",
    "FAILURE_CODES",
    "KEYED_MODES",
    "PRIVILEGED_IDENTITY",
    "AccessRights",
    "AggregateClause",
    "AssociationField",
    "DescriptorError",
    "EntityDescriptor",
    "ErrorCode",
    "FieldSpec",
    "FilterClause",
    "Identity",
    "OperationMode",
    "OrderByClause",
    "QueryArgs",
    "QueryCapability",
    "RestrictedOperation",
    "Restriction",
    "ReturnMode",
    "ScalarField",
    "ToolError",
    "ToolErrorPayload",
    "TypeTag",
    "ValidationIssue",
]
