"""
Formulas for cw20 token contracts.

Storage layout: "token_info" item, "balance" map keyed by address and
"allowance" map keyed by (owner, spender).
"""

from dataclasses import dataclass
from typing import Any, Optional, Union

from stateindex.core.env import Environment
from stateindex.core.types import Block, Formula


@dataclass(frozen=True)
class AtHeight:
    """Expires once the chain reaches this height."""
    height: int


@dataclass(frozen=True)
class AtTime:
    """Expires once block time reaches this many nanoseconds since the epoch."""
    time_nanos: int


@dataclass(frozen=True)
class Never:
    """Never expires."""


Expiration = Union[AtHeight, AtTime, Never]


def parse_expiration(raw: Any) -> Expiration:
    """
    Parse the on-chain expiration encoding.

    Raises:
        ValueError: If the value is not one of at_height, at_time or never
    """
    if not isinstance(raw, dict) or len(raw) != 1:
        raise ValueError(f"Invalid expiration: {raw!r}")
    if "at_height" in raw:
        return AtHeight(int(raw["at_height"]))
    if "at_time" in raw:
        return AtTime(int(raw["at_time"]))
    if "never" in raw:
        return Never()
    raise ValueError(f"Invalid expiration: {raw!r}")


def expiration_to_json(expiration: Expiration) -> dict[str, Any]:
    if isinstance(expiration, AtHeight):
        return {"at_height": expiration.height}
    if isinstance(expiration, AtTime):
        return {"at_time": str(expiration.time_nanos)}
    if isinstance(expiration, Never):
        return {"never": {}}
    raise TypeError(f"Unknown expiration: {expiration!r}")


def is_expired(expiration: Expiration, block: Block) -> bool:
    if isinstance(expiration, AtHeight):
        return block.height >= expiration.height
    if isinstance(expiration, AtTime):
        return block.time_unix_ms * 1_000_000 >= expiration.time_nanos
    if isinstance(expiration, Never):
        return False
    raise TypeError(f"Unknown expiration: {expiration!r}")


def _require(args: dict[str, Any], name: str) -> str:
    value = args.get(name)
    if not value:
        raise ValueError(f"missing `{name}`")
    return value


def balance(env: Environment, args: dict[str, Any]) -> str:
    address = _require(args, "address")
    return env.get(env.target_address, "balance", address) or "0"


def token_info(env: Environment, args: dict[str, Any]) -> Optional[dict[str, Any]]:
    return env.get(env.target_address, "token_info")


def allowance(env: Environment, args: dict[str, Any]) -> dict[str, Any]:
    """Allowance of spender over owner's tokens; expired allowances read as zero."""
    owner = _require(args, "owner")
    spender = _require(args, "spender")
    stored = env.get(env.target_address, "allowance", owner, spender)
    if not stored:
        return {"allowance": "0", "expires": {"never": {}}}

    expiration = parse_expiration(stored.get("expires", {"never": {}}))
    amount = "0" if is_expired(expiration, env.block) else str(stored.get("allowance", "0"))
    return {"allowance": amount, "expires": expiration_to_json(expiration)}


FORMULAS = {
    "balance": Formula(balance, docs="Token balance of an address. Args: address"),
    "tokenInfo": Formula(token_info, docs="Token name, symbol, decimals and supply"),
    # Expiry depends on the evaluation block, not only on stored state
    "allowance": Formula(
        allowance, dynamic=True, docs="Allowance granted by owner to spender. Args: owner, spender"
    ),
}
