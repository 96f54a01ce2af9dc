"""
Core record types for StateIndex.

Storage returns these plain records instead of live ORM instances so an
evaluation can hold on to them after its session has closed.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from stateindex.core.dependent_keys import DependentKey, DependentKeyNamespace, get_dependent_key


@dataclass(frozen=True, order=True)
class Block:
    """A chain block: height plus its time in unix milliseconds."""
    height: int
    time_unix_ms: int

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.time_unix_ms / 1000, tz=timezone.utc)

    def to_dict(self) -> dict[str, int]:
        return {"height": self.height, "timeUnixMs": self.time_unix_ms}


@dataclass(frozen=True)
class WasmStateEvent:
    """A single contract storage mutation at one block height."""
    contract_address: str
    block_height: int
    block_time_unix_ms: int
    key: str
    value: Optional[str]
    delete: bool = False

    @property
    def block(self) -> Block:
        return Block(self.block_height, self.block_time_unix_ms)

    @property
    def value_json(self) -> Any:
        """Parsed JSON value, None for deletes or unparseable values."""
        if self.delete or self.value is None:
            return None
        try:
            return json.loads(self.value)
        except ValueError:
            return None

    @property
    def dependent_key(self) -> str:
        return get_dependent_key(DependentKeyNamespace.WASM_STATE_EVENT, self.contract_address, self.key)


@dataclass(frozen=True)
class Transformation:
    """A named fact derived from one or more events."""
    contract_address: str
    block_height: int
    block_time_unix_ms: int
    name: str
    value: Any
    code_id: Optional[int] = None

    @property
    def block(self) -> Block:
        return Block(self.block_height, self.block_time_unix_ms)

    @property
    def dependent_key(self) -> str:
        return get_dependent_key(
            DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION, self.contract_address, self.name
        )


@dataclass(frozen=True)
class ContractInfo:
    """Known contract and the code id it was instantiated from."""
    address: str
    code_id: Optional[int] = None
    admin: Optional[str] = None
    creator: Optional[str] = None
    label: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "codeId": self.code_id,
            "admin": self.admin,
            "creator": self.creator,
            "label": self.label
        }


@dataclass
class Computation:
    """
    A memoized formula output with its validity window.

    The output is known correct for every height in
    [block_height, latest_block_height_valid].
    """
    target_address: str
    formula: str
    args: str
    block_height: int
    block_time_unix_ms: int
    latest_block_height_valid: int
    output: Any = None
    validity_extendable: bool = True
    dependent_events: list[DependentKey] = field(default_factory=list)
    dependent_transformations: list[DependentKey] = field(default_factory=list)
    id: Optional[int] = None

    @property
    def block(self) -> Optional[Block]:
        if self.block_height < 0:
            return None
        return Block(self.block_height, self.block_time_unix_ms)

    @property
    def dependent_keys(self) -> list[DependentKey]:
        return [*self.dependent_events, *self.dependent_transformations]

    @property
    def identity(self) -> tuple[str, str, str]:
        return self.target_address, self.formula, self.args


@dataclass
class ComputationOutput:
    """Result of evaluating a formula at one block."""
    block: Optional[Block]
    value: Any
    dependent_keys: list[DependentKey]
    latest_block_height_valid: Optional[int] = None


@dataclass(frozen=True)
class Formula:
    """
    A read-only query over historical state.

    Attributes:
        compute: Callable receiving the evaluation environment and the args
        dynamic: Output also depends on the current time, so block-height
            memoization alone is insufficient at the chain head
        docs: Human readable description
    """
    compute: Callable[..., Any]
    dynamic: bool = False
    docs: str = ""


def serialize_args(args: Optional[dict[str, Any]]) -> str:
    """Canonical JSON text for formula args, used as part of a computation identity."""
    return json.dumps(args or {}, sort_keys=True, separators=(",", ":"))


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality via canonical JSON serialization."""
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)
