"""
Generic formulas over any contract's storage and transformations.
"""

from datetime import datetime
from typing import Any, Optional

from stateindex.core.env import Environment
from stateindex.core.types import Formula


def _key_parts(args: dict[str, Any]) -> list:
    key = args.get("key")
    if key is None:
        raise ValueError("missing `key`")
    parts = key if isinstance(key, list) else [key]
    if args.get("numeric"):
        parts = [*parts[:-1], int(parts[-1])]
    return parts


def _unix_ms(date: Optional[datetime]) -> Optional[int]:
    return int(date.timestamp() * 1000) if date is not None else None


def item(env: Environment, args: dict[str, Any]) -> Any:
    return env.get(env.target_address, *_key_parts(args))


def map_(env: Environment, args: dict[str, Any]) -> Any:
    name = args.get("name")
    if name is None:
        raise ValueError("missing `name`")
    return env.get_map(env.target_address, name, key_type=args.get("keyType", "string")) or {}


def key_modified_at(env: Environment, args: dict[str, Any]) -> Optional[int]:
    return _unix_ms(env.get_date_key_modified(env.target_address, *_key_parts(args)))


def key_first_set_at(env: Environment, args: dict[str, Any]) -> Optional[int]:
    return _unix_ms(env.get_date_key_first_set(env.target_address, *_key_parts(args)))


def transformation(env: Environment, args: dict[str, Any]) -> Any:
    name = args.get("name")
    if name is None:
        raise ValueError("missing `name`")
    match = env.get_transformation_match(env.target_address, name)
    return match.value if match is not None else None


def transformation_map(env: Environment, args: dict[str, Any]) -> dict[str, Any]:
    name = args.get("name")
    if name is None:
        raise ValueError("missing `name`")
    return env.get_transformation_map(env.target_address, name) or {}


def block_height(env: Environment, args: dict[str, Any]) -> int:
    return env.block.height


FORMULAS = {
    "item": Formula(item, docs="Value of a storage item. Args: key (string or list), numeric"),
    "map": Formula(map_, docs="Entries of a storage map. Args: name, keyType"),
    "keyModifiedAt": Formula(key_modified_at, docs="Unix ms of the latest change to a key"),
    "keyFirstSetAt": Formula(key_first_set_at, docs="Unix ms a key was first set"),
    "transformation": Formula(transformation, docs="Latest value of a named transformation. Args: name"),
    "transformationMap": Formula(transformation_map, docs="Transformations under a name prefix. Args: name"),
    "blockHeight": Formula(block_height, dynamic=True, docs="Height of the evaluation block"),
}
