"""
Core of StateIndex: key codec, dependent keys, record types, the formula
evaluation environment and the computation cache.
"""

from stateindex.core.dependent_keys import DependentKey, DependentKeyKind, DependentKeyNamespace
from stateindex.core.types import (
    Block,
    Computation,
    ComputationOutput,
    ContractInfo,
    Formula,
    Transformation,
    WasmStateEvent,
)

__all__ = [
    "Block",
    "Computation",
    "ComputationOutput",
    "ContractInfo",
    "DependentKey",
    "DependentKeyKind",
    "DependentKeyNamespace",
    "Formula",
    "Transformation",
    "WasmStateEvent",
]
