"""
Transformer declarations.

A transformer turns contract storage events into named facts. It declares
which events it applies to (code ids, contract addresses, a predicate), how to
name the fact and how to compute its value, possibly from the fact's previous
value.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional, Union

from stateindex.core.types import WasmStateEvent


class _Unset:
    """Sentinel returned by a value function to skip saving a transformation."""

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()

GetLastValue = Callable[[], Any]
ValueFunction = Callable[[WasmStateEvent, GetLastValue], Any]
NameFunction = Callable[[WasmStateEvent], Optional[str]]


@dataclass(frozen=True)
class TransformerFilter:
    """
    Which events a transformer applies to.

    Attributes:
        code_ids_keys: Code-id keys the contract must belong to, or "any"
        contract_addresses: Exact contracts the transformer applies to
        matches: Predicate over the event
    """
    code_ids_keys: Union[list[str], Literal["any"], None] = None
    contract_addresses: Optional[list[str]] = None
    matches: Optional[Callable[[WasmStateEvent], bool]] = None

    def __post_init__(self):
        if self.code_ids_keys is None and not self.contract_addresses and self.matches is None:
            raise ValueError("TransformerFilter needs at least one constraint")


@dataclass(frozen=True)
class Transformer:
    """Turns matching events into a named fact."""
    filter: TransformerFilter
    name: Union[str, NameFunction]
    get_value: ValueFunction
    manually_transform_deletes: bool = False

    def name_for(self, event: WasmStateEvent) -> Optional[str]:
        return self.name if isinstance(self.name, str) else self.name(event)


@dataclass
class PendingTransformation:
    """A transformation evaluated in the current batch but not yet saved."""
    contract_address: str
    block_height: int
    block_time_unix_ms: int
    name: str
    value: Any = field(default=UNSET)
