"""
Per-evaluation read environment.

An Environment is bound to one formula evaluation at one block. Every getter
reads state as of that block, records the dependent key it consumed (cache hit
or not) and reports the records it used to an optional `on_fetch` hook so the
caller can learn the latest block the output depends on.

The cache maps a dependent-key string to the records fetched for it. A missing
entry means "not fetched yet"; an entry holding None means "fetched, nothing
exists".
"""

import dataclasses
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Literal, Optional, Sequence, Union

from stateindex.config.settings import Settings
from stateindex.core.dependent_keys import DependentKey, DependentKeyNamespace, get_dependent_key, unique_dependent_keys
from stateindex.core.keys import KeyInput, decode_keys, encode_keys, encode_map_prefix
from stateindex.core.types import Block, ContractInfo, Transformation, WasmStateEvent
from stateindex.storage.stores import ContractStore, EventStore, TransformationStore, value_contains

logger = logging.getLogger(__name__)

MapKeyType = Literal["string", "number", "raw"]
KeySpec = Union[KeyInput, dict]
TransformationNameSpec = Union[str, dict]

OnFetch = Callable[[Sequence[Union[WasmStateEvent, Transformation]]], None]


def _to_date(block_time_unix_ms: int) -> datetime:
    return Block(0, block_time_unix_ms).timestamp


class Environment:
    """
    Read API handed to formulas.

    Args:
        events: Event store
        transformations: Transformation store
        contracts: Contract store
        settings: Settings used to resolve code-id keys
        block: Ceiling block; nothing newer is ever visible
        args: Formula arguments
        target_address: Address the formula is evaluated for
        on_fetch: Hook receiving every record a getter used
        cache: Pre-populated record cache (shared with the caller)
        contract_cache: Contract cache, may be shared across evaluations
    """

    def __init__(
        self,
        events: EventStore,
        transformations: TransformationStore,
        contracts: ContractStore,
        settings: Settings,
        block: Block,
        args: Optional[dict[str, Any]] = None,
        target_address: Optional[str] = None,
        on_fetch: Optional[OnFetch] = None,
        cache: Optional[dict[str, Optional[list]]] = None,
        contract_cache: Optional[dict[str, Optional[ContractInfo]]] = None
    ):
        self._events = events
        self._transformations = transformations
        self._contracts = contracts
        self.settings = settings
        self.block = block
        self.args = dict(args or {})
        self.target_address = target_address
        self._on_fetch = on_fetch
        self.cache: dict[str, Optional[list]] = cache if cache is not None else {}
        self.contract_cache: dict[str, Optional[ContractInfo]] = (
            contract_cache if contract_cache is not None else {}
        )
        self._dependent_keys: list[DependentKey] = []

    @property
    def date(self) -> datetime:
        return self.block.timestamp

    @property
    def dependent_keys(self) -> list[DependentKey]:
        """Every dependency recorded so far, deduplicated in first-use order."""
        return unique_dependent_keys(self._dependent_keys)

    def _record(self, namespace: DependentKeyNamespace, contract_address: Optional[str], body: str,
                prefix: bool = False) -> str:
        dependent_key = get_dependent_key(namespace, contract_address, body)
        self._dependent_keys.append(DependentKey(dependent_key, prefix))
        return dependent_key

    def _fetched(self, records: Sequence) -> None:
        if records and self._on_fetch is not None:
            self._on_fetch(records)

    # Contract storage

    def _latest_event(self, contract_address: str, key: str) -> Optional[WasmStateEvent]:
        dependent_key = self._record(DependentKeyNamespace.WASM_STATE_EVENT, contract_address, key)
        if dependent_key in self.cache:
            cached = self.cache[dependent_key]
            event = cached[0] if cached else None
        else:
            event = self._events.find_latest(contract_address, key, self.block.height)
            self.cache[dependent_key] = [event] if event is not None else None

        if event is not None:
            self._fetched([event])
        return event

    def get(self, contract_address: str, *keys: KeyInput) -> Any:
        """
        Value of a contract storage key as of this block.

        Returns:
            The parsed JSON value, or None if the key was never set or was deleted
        """
        event = self._latest_event(contract_address, encode_keys(*keys))
        if event is None or event.delete:
            return None
        return event.value_json

    def get_map(
        self,
        contract_address: str,
        name: Union[KeyInput, Sequence[KeyInput]],
        key_type: MapKeyType = "string"
    ) -> Optional[dict]:
        """
        Every entry of a storage map as of this block.

        Args:
            contract_address: Contract owning the map
            name: Map name, or the list of nested names for a multi-part prefix
            key_type: Decode the sub-keys as "string", "number" or leave them "raw"

        Returns:
            Mapping of decoded sub-key to value, or None if the map was never written
        """
        names = list(name) if isinstance(name, (list, tuple)) else [name]
        key_prefix = encode_map_prefix(*names)
        dependent_key = self._record(DependentKeyNamespace.WASM_STATE_EVENT, contract_address, key_prefix, prefix=True)

        if dependent_key in self.cache:
            events = self.cache[dependent_key] or []
        else:
            events = self._events.find_latest_by_prefix(contract_address, key_prefix, self.block.height)
            self.cache[dependent_key] = events or None

        if not events:
            return None
        self._fetched(events)

        result: dict = {}
        for event in events:
            if event.delete:
                continue
            suffix = event.key[len(key_prefix):]
            if key_type == "raw":
                map_key = suffix
            else:
                map_key = decode_keys(suffix, [key_type == "number"])[0]
            result[map_key] = event.value_json
        return result

    def get_date_key_modified(self, contract_address: str, *keys: KeyInput) -> Optional[datetime]:
        """Time of the latest change to a key, None if it is unset or deleted as of this block."""
        event = self._latest_event(contract_address, encode_keys(*keys))
        if event is None or event.delete:
            return None
        return _to_date(event.block_time_unix_ms)

    def get_date_key_first_set(self, contract_address: str, *keys: KeyInput) -> Optional[datetime]:
        """Time a key was first given a value. Not cached: the cache holds latest values only."""
        key = encode_keys(*keys)
        self._record(DependentKeyNamespace.WASM_STATE_EVENT, contract_address, key)
        event = self._events.find_first_set(contract_address, key, self.block.height)
        if event is None:
            return None
        self._fetched([event])
        return _to_date(event.block_time_unix_ms)

    def get_date_key_first_set_with_value_match(
        self,
        contract_address: str,
        keys: Sequence[KeyInput],
        where: Any
    ) -> Optional[datetime]:
        """Time a key was first set to a value containing `where`."""
        key = encode_keys(*keys)
        self._record(DependentKeyNamespace.WASM_STATE_EVENT, contract_address, key)
        event = self._events.find_first_set(contract_address, key, self.block.height, where=where)
        if event is None:
            return None
        self._fetched([event])
        return _to_date(event.block_time_unix_ms)

    def prefetch(self, contract_address: str, *key_specs: KeySpec) -> None:
        """
        Warm the cache for several keys and maps of one contract in a single query.

        Each spec is a single key part, or a dict {"keys": [...], "map": bool}.
        Later get/get_map calls for the same keys are served from the cache.
        """
        exact_keys: list[str] = []
        map_prefixes: list[str] = []
        for spec in key_specs:
            if isinstance(spec, dict):
                parts = list(spec.get("keys", []))
                if spec.get("map"):
                    prefix = encode_map_prefix(*parts)
                    map_prefixes.append(prefix)
                    self._record(DependentKeyNamespace.WASM_STATE_EVENT, contract_address, prefix, prefix=True)
                    continue
                key = encode_keys(*parts)
            else:
                key = encode_keys(spec)
            exact_keys.append(key)
            self._record(DependentKeyNamespace.WASM_STATE_EVENT, contract_address, key)

        events = self._events.find_latest_many(contract_address, exact_keys, map_prefixes, self.block.height)
        self._fetched(events)

        by_key = {event.key: event for event in events}
        for key in exact_keys:
            dependent_key = get_dependent_key(DependentKeyNamespace.WASM_STATE_EVENT, contract_address, key)
            event = by_key.get(key)
            self.cache[dependent_key] = [event] if event is not None else None
        for prefix in map_prefixes:
            under_prefix = [event for event in events if event.key.startswith(prefix)]
            dependent_key = get_dependent_key(DependentKeyNamespace.WASM_STATE_EVENT, contract_address, prefix)
            self.cache[dependent_key] = under_prefix or None
            for event in under_prefix:
                self.cache[event.dependent_key] = [event]

    # Transformations

    def _code_id_for(self, transformation: Transformation) -> Optional[int]:
        if transformation.code_id is not None:
            return transformation.code_id
        contract = self.get_contract(transformation.contract_address)
        return contract.code_id if contract else None

    def get_transformation_matches(
        self,
        contract_address: Optional[str],
        name_like: str,
        where: Any = None,
        where_code_id: Optional[Iterable[int]] = None,
        limit: Optional[int] = None
    ) -> Optional[list[Transformation]]:
        """
        Most recent transformation per (contract, name) whose name matches.

        Args:
            contract_address: Contract to search, or None for any contract
            name_like: Name, where "*" matches any run of characters
            where: Only keep transformations whose current value contains this
            where_code_id: Only keep transformations of contracts with these code ids
            limit: Maximum number of rows to fetch

        Returns:
            Matching transformations with their code ids, or None if nothing matches
        """
        dependent_key = self._record(
            DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION, contract_address, name_like
        )
        cache_key = dependent_key if limit is None else f"{dependent_key}#{limit}"

        if cache_key in self.cache:
            transformations = self.cache[cache_key] or []
        else:
            transformations = self._transformations.find_latest_matches(
                contract_address, name_like, self.block.height, limit=limit
            )
            self.cache[cache_key] = transformations or None

        if where is not None:
            transformations = [t for t in transformations if value_contains(t.value, where)]
        if where_code_id is not None:
            code_ids = set(where_code_id)
            transformations = [t for t in transformations if self._code_id_for(t) in code_ids]

        if not transformations:
            return None
        self._fetched(transformations)

        return [dataclasses.replace(t, code_id=self._code_id_for(t)) for t in transformations]

    def get_transformation_match(
        self,
        contract_address: Optional[str],
        name_like: str,
        where: Any = None,
        where_code_id: Optional[Iterable[int]] = None
    ) -> Optional[Transformation]:
        matches = self.get_transformation_matches(contract_address, name_like, where, where_code_id)
        return matches[0] if matches else None

    def get_transformation_map(self, contract_address: str, name_prefix: str) -> Optional[dict[str, Any]]:
        """
        Transformations named "<name_prefix>:<key>" as a mapping of key to value.

        Null values are excluded.
        """
        map_prefix = name_prefix + ":"
        dependent_key = self._record(
            DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION, contract_address, map_prefix, prefix=True
        )

        if dependent_key in self.cache:
            transformations = self.cache[dependent_key] or []
        else:
            transformations = self._transformations.find_latest_matches(
                contract_address, map_prefix, self.block.height, prefix=True
            )
            self.cache[dependent_key] = transformations or None

        if not transformations:
            return None
        self._fetched(transformations)

        return {
            transformation.name[len(map_prefix):]: transformation.value
            for transformation in transformations
            if transformation.value is not None
        }

    def prefetch_transformations(self, contract_address: str, names: Sequence[TransformationNameSpec]) -> None:
        """Warm the cache for several transformation names and maps ({"name": ..., "map": True})."""
        exact_names: list[str] = []
        map_prefixes: list[str] = []
        for spec in names:
            if isinstance(spec, dict) and spec.get("map"):
                prefix = spec["name"] + ":"
                map_prefixes.append(prefix)
                self._record(DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION, contract_address, prefix, True)
            else:
                name = spec["name"] if isinstance(spec, dict) else spec
                exact_names.append(name)
                self._record(DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION, contract_address, name)

        transformations = self._transformations.find_latest_many(
            contract_address, exact_names, map_prefixes, self.block.height
        )
        self._fetched(transformations)

        by_name = {transformation.name: transformation for transformation in transformations}
        for name in exact_names:
            dependent_key = get_dependent_key(
                DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION, contract_address, name
            )
            transformation = by_name.get(name)
            self.cache[dependent_key] = [transformation] if transformation is not None else None
        for prefix in map_prefixes:
            under_prefix = [t for t in transformations if t.name.startswith(prefix)]
            dependent_key = get_dependent_key(
                DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION, contract_address, prefix
            )
            self.cache[dependent_key] = under_prefix or None
            for transformation in under_prefix:
                self.cache[transformation.dependent_key] = [transformation]

    def get_date_first_transformed(
        self,
        contract_address: Optional[str],
        name_like: str,
        where: Any = None
    ) -> Optional[datetime]:
        """Time of the first transformation whose name matches. Not cached."""
        self._record(DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION, contract_address, name_like)
        transformation = self._transformations.find_first(
            contract_address, name_like, self.block.height, where=where
        )
        if transformation is None:
            return None
        self._fetched([transformation])
        return _to_date(transformation.block_time_unix_ms)

    # Contracts

    def get_contract(self, contract_address: str) -> Optional[ContractInfo]:
        """Contract info, cached; contracts are not dependencies."""
        if contract_address not in self.contract_cache:
            self.contract_cache[contract_address] = self._contracts.get(contract_address)
        return self.contract_cache[contract_address]

    def contract_matches_code_id_keys(self, contract_address: str, *code_ids_keys: str) -> bool:
        code_ids = self.settings.get_code_ids_for_keys(*code_ids_keys)
        contract = self.get_contract(contract_address)
        return contract is not None and contract.code_id is not None and contract.code_id in code_ids
