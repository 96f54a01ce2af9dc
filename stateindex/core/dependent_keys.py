"""
Dependent keys.

A dependent key describes a piece of state an evaluation consulted, so a
memoized result can be invalidated when that state changes. Its textual form
is "namespace:contract:body" where any empty component is written "*" and
"*" matches any run of characters. A prefix dependent key also matches any
concrete key that merely starts with it (maps, transformation name prefixes).

Matching is a pure predicate over concrete written keys so storage backends
only need to pre-filter candidates; the final decision is made here.
"""

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Iterable

WILDCARD = "*"


class DependentKeyNamespace(str, Enum):
    """Kinds of dependable records."""

    WASM_STATE_EVENT = "wasm_state"
    WASM_STATE_EVENT_TRANSFORMATION = "wasm_state_transformation"


class DependentKeyKind(str, Enum):
    """How a dependent key matches concrete keys."""

    EXACT = "exact"
    WILDCARD = "wildcard"
    PREFIX = "prefix"


def get_dependent_key(namespace: DependentKeyNamespace | str, *keys: str | None) -> str:
    """Join a namespace and key components, using the wildcard for empty components."""
    namespace_value = namespace.value if isinstance(namespace, DependentKeyNamespace) else namespace
    return ":".join(key or WILDCARD for key in (namespace_value, *keys))


@lru_cache(maxsize=4096)
def _compile_pattern(key: str, prefix: bool) -> re.Pattern:
    body = ".*".join(re.escape(part) for part in key.split(WILDCARD))
    return re.compile(body + (".*" if prefix else ""), re.DOTALL)


@dataclass(frozen=True)
class DependentKey:
    """A recorded dependency: an exact key, a wildcard pattern or a prefix."""

    key: str
    prefix: bool = False

    @classmethod
    def for_event(cls, contract_address: str | None, key: str, prefix: bool = False) -> "DependentKey":
        return cls(get_dependent_key(DependentKeyNamespace.WASM_STATE_EVENT, contract_address, key), prefix)

    @classmethod
    def for_transformation(
        cls, contract_address: str | None, name: str, prefix: bool = False
    ) -> "DependentKey":
        return cls(
            get_dependent_key(DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION, contract_address, name),
            prefix
        )

    @property
    def kind(self) -> DependentKeyKind:
        if self.prefix:
            return DependentKeyKind.PREFIX
        if WILDCARD in self.key:
            return DependentKeyKind.WILDCARD
        return DependentKeyKind.EXACT

    @property
    def namespace(self) -> str:
        return self.key.split(":", 1)[0]

    @property
    def contract_address(self) -> str | None:
        """Contract component, or None when the key applies to any contract."""
        parts = self.key.split(":", 2)
        if len(parts) < 2 or parts[1] == WILDCARD:
            return None
        return parts[1]

    @property
    def body(self) -> str:
        """Key (or name) component after the namespace and contract."""
        parts = self.key.split(":", 2)
        return parts[2] if len(parts) == 3 else ""

    def in_namespace(self, namespace: DependentKeyNamespace) -> bool:
        return self.namespace == namespace.value

    def matches(self, concrete_key: str) -> bool:
        """
        Check whether a concrete written key is covered by this dependency.

        Args:
            concrete_key: Dependent key string of a written record (no wildcards)

        Returns:
            True if a write to the concrete key may change what this dependency read
        """
        if self.kind is DependentKeyKind.EXACT:
            return concrete_key == self.key
        return _compile_pattern(self.key, self.prefix).fullmatch(concrete_key) is not None

    def to_dict(self) -> dict:
        return {"key": self.key, "prefix": self.prefix}

    @classmethod
    def from_dict(cls, data: dict) -> "DependentKey":
        return cls(key=data["key"], prefix=bool(data.get("prefix", False)))


def matches_any(dependent_keys: Iterable[DependentKey], concrete_keys: Iterable[str]) -> bool:
    """Return True if any dependent key covers any of the concrete keys."""
    concrete = set(concrete_keys)
    for dependent_key in dependent_keys:
        if dependent_key.kind is DependentKeyKind.EXACT:
            if dependent_key.key in concrete:
                return True
        elif any(dependent_key.matches(key) for key in concrete):
            return True
    return False


def unique_dependent_keys(dependent_keys: Iterable[DependentKey]) -> list[DependentKey]:
    """Deduplicate dependent keys preserving first-seen order."""
    seen: set[DependentKey] = set()
    unique = []
    for dependent_key in dependent_keys:
        if dependent_key not in seen:
            seen.add(dependent_key)
            unique.append(dependent_key)
    return unique


def group_by_contract(dependent_keys: Iterable[DependentKey]) -> dict[str | None, list[DependentKey]]:
    """Group dependent keys by contract address (None meaning any contract)."""
    groups: dict[str | None, list[DependentKey]] = {}
    for dependent_key in dependent_keys:
        groups.setdefault(dependent_key.contract_address, []).append(dependent_key)
    return groups
