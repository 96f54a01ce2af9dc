"""
Helpers for declaring transformers over common storage layouts.
"""

from typing import Any, Callable, Literal, Optional, Sequence, Union

from stateindex.core.keys import KeyInput, KeyInputType, decode_keys, decode_keys_advanced, encode_keys, encode_map_prefix
from stateindex.core.types import WasmStateEvent
from stateindex.transformers.types import GetLastValue, Transformer, TransformerFilter, ValueFunction

CodeIdsKeys = Union[list[str], Literal["any"]]


def default_get_value(event: WasmStateEvent, get_last_value: GetLastValue) -> Any:
    """Event value; a null value that is not a delete becomes "" so it doesn't look like one."""
    if event.value_json is None and not event.delete:
        return ""
    return event.value_json


def make_transformer(
    code_ids_keys: CodeIdsKeys,
    name: str,
    key_or_keys: Union[str, Sequence[str], None] = None
) -> Transformer:
    """Transformer copying one storage item (or any of several keys) into a named fact."""
    keys = [key_or_keys or name] if isinstance(key_or_keys, (str, type(None))) else list(key_or_keys)
    db_keys = {encode_keys(key) for key in keys}

    return Transformer(
        filter=TransformerFilter(code_ids_keys=code_ids_keys, matches=lambda event: event.key in db_keys),
        name=name,
        get_value=default_get_value
    )


def make_address_transformer(
    contract_addresses: list[str],
    name: str,
    key_or_keys: Union[str, Sequence[str], None] = None
) -> Transformer:
    """Like make_transformer but restricted to specific contracts instead of code ids."""
    keys = [key_or_keys or name] if isinstance(key_or_keys, (str, type(None))) else list(key_or_keys)
    db_keys = {encode_keys(key) for key in keys}

    return Transformer(
        filter=TransformerFilter(contract_addresses=contract_addresses, matches=lambda event: event.key in db_keys),
        name=name,
        get_value=default_get_value
    )


def _default_namer_transform(keys: Sequence[KeyInput]) -> str:
    return ":".join(str(key) if not isinstance(key, bytes) else key.hex() for key in keys)


def make_transformer_for_map(
    code_ids_keys: CodeIdsKeys,
    map_prefix: str,
    key_prefix_or_prefixes: Union[str, Sequence[str]],
    namer_input: Union[KeyInputType, Sequence[KeyInputType]] = "string",
    namer_transform: Optional[Callable[[list[KeyInput]], str]] = None,
    get_value: Optional[ValueFunction] = None
) -> Transformer:
    """
    Transformer naming each map entry "<map_prefix>:<key>".

    Args:
        code_ids_keys: Code-id keys of the contracts holding the map
        map_prefix: Name prefix of the produced transformations
        key_prefix_or_prefixes: Storage name(s) of the map
        namer_input: Key part type(s) after the map namespace
        namer_transform: Turns the decoded key parts into the name suffix
        get_value: Value function, defaults to the event value
    """
    prefixes = [key_prefix_or_prefixes] if isinstance(key_prefix_or_prefixes, str) else list(key_prefix_or_prefixes)
    db_key_prefixes = [encode_map_prefix(prefix) for prefix in prefixes]
    input_types = [namer_input] if isinstance(namer_input, str) else list(namer_input)
    transform = namer_transform or _default_namer_transform

    def name(event: WasmStateEvent) -> str:
        # Drop the decoded map namespace
        keys = decode_keys_advanced(event.key, ["string", *input_types])[1:]
        return f"{map_prefix}:{transform(keys)}"

    return Transformer(
        filter=TransformerFilter(
            code_ids_keys=code_ids_keys,
            matches=lambda event: any(event.key.startswith(prefix) for prefix in db_key_prefixes)
        ),
        name=name,
        get_value=get_value or default_get_value
    )


def make_transformer_for_map_list(code_ids_keys: CodeIdsKeys, name: str, map_key: str) -> Transformer:
    """
    Fold a map of unit values (efficient set storage) into one list.

    Each set event appends its key to the previous list and each delete
    removes it.
    """
    prefix = encode_map_prefix(map_key)

    def get_value(event: WasmStateEvent, get_last_value: GetLastValue) -> list:
        value = get_last_value() or []
        if not isinstance(value, list):
            raise TypeError(f"Expected list, got {type(value).__name__}")

        _, key = decode_keys(event.key, [False, False])
        current = list(value)
        if event.delete:
            if key in current:
                current.remove(key)
        else:
            current.append(key)
        return current

    return Transformer(
        filter=TransformerFilter(code_ids_keys=code_ids_keys, matches=lambda event: event.key.startswith(prefix)),
        name=name,
        get_value=get_value,
        manually_transform_deletes=True
    )
