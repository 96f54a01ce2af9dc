"""
Stores implementing the query shapes the core needs on top of the SQL backend.

Every query returns plain records (see stateindex.core.types). The
"most recent row per key" shape is a group-by/max(block_height) subquery
joined back to the table, which works on every SQL dialect.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from sqlalchemy import and_, false, func, or_, true
from sqlalchemy.orm import Session

from stateindex.core.dependent_keys import WILDCARD, DependentKey, DependentKeyKind, DependentKeyNamespace
from stateindex.core.types import Computation, ContractInfo, Transformation, WasmStateEvent
from stateindex.storage.models import (
    ComputationDependencyModel,
    ComputationModel,
    ContractModel,
    WasmStateEventModel,
    WasmStateEventTransformationModel,
)
from stateindex.storage.sql_backend import SqlStorageBackend, like_pattern

logger = logging.getLogger(__name__)


def value_contains(value: Any, where: Any) -> bool:
    """
    Recursive subset match of a JSON value against a filter.

    Dicts match when every filter key is present and matches; any other
    filter must be equal.
    """
    if isinstance(where, dict):
        if not isinstance(value, dict):
            return False
        return all(key in value and value_contains(value[key], sub) for key, sub in where.items())
    return value == where


def _concrete_or_none(component: Optional[str]) -> Optional[str]:
    """A dependent key component usable in an equality filter, None if it is a pattern."""
    if not component or WILDCARD in component:
        return None
    return component


def _text_condition(column, text: str, prefix: bool):
    if prefix or "*" in text:
        return column.like(like_pattern(text, prefix), escape="\\")
    return column == text


def _dependent_key_condition(model, body_column, dependent_key: DependentKey):
    conditions = []
    parts = dependent_key.key.split(":", 2)
    contract_part = parts[1] if len(parts) > 1 else "*"
    if contract_part != "*":
        conditions.append(_text_condition(model.contract_address, contract_part, False))
    body = dependent_key.body
    if body != "*" or dependent_key.prefix:
        conditions.append(_text_condition(body_column, body, dependent_key.prefix))
    return and_(*conditions) if conditions else None


class _DependableStore:
    """Shared range queries for events and transformations, driven by dependent keys."""

    model: Any = None
    namespace: DependentKeyNamespace = None

    def __init__(self, backend: SqlStorageBackend):
        self.backend = backend

    def _body_column(self):
        raise NotImplementedError

    def _to_record(self, row: Any, code_id: Optional[int] = None):
        raise NotImplementedError

    def _dependency_filter(self, dependent_keys: Iterable[DependentKey]):
        keys = [key for key in dependent_keys if key.in_namespace(self.namespace)]
        if not keys:
            return None, []
        conditions = []
        for dependent_key in keys:
            condition = _dependent_key_condition(self.model, self._body_column(), dependent_key)
            if condition is None:
                # Matches every row in the namespace
                return None, keys
            conditions.append(condition)
        return or_(*conditions), keys

    def find_in_range(
        self,
        dependent_keys: Iterable[DependentKey],
        after_height: int,
        up_to_height: int
    ) -> list:
        """
        All rows covered by the dependent keys with after_height < height <= up_to_height.

        Returns:
            Records sorted ascending by block height
        """
        condition, keys = self._dependency_filter(dependent_keys)
        if not keys:
            return []

        with self.backend.session_scope() as session:
            query = session.query(self.model).filter(
                self.model.block_height > after_height,
                self.model.block_height <= up_to_height
            )
            if condition is not None:
                query = query.filter(condition)
            rows = query.order_by(self.model.block_height.asc()).all()
            records = [self._to_record(row) for row in rows]

        return [
            record for record in records
            if any(key.matches(record.dependent_key) for key in keys)
        ]

    def find_earliest_height_in_range(
        self,
        dependent_keys: Iterable[DependentKey],
        after_height: int,
        up_to_height: int
    ) -> Optional[int]:
        """Block height of the first row covered by the dependent keys in (after_height, up_to_height]."""
        condition, keys = self._dependency_filter(dependent_keys)
        if not keys:
            return None

        with self.backend.session_scope() as session:
            query = session.query(self.model).filter(
                self.model.block_height > after_height,
                self.model.block_height <= up_to_height
            )
            if condition is not None:
                query = query.filter(condition)
            for row in query.order_by(self.model.block_height.asc()).yield_per(self.backend.chunk_size):
                record = self._to_record(row)
                if any(key.matches(record.dependent_key) for key in keys):
                    return record.block_height
        return None


class EventStore(_DependableStore):
    """Contract storage events keyed by (contract_address, key, block_height)."""

    model = WasmStateEventModel
    namespace = DependentKeyNamespace.WASM_STATE_EVENT

    def _body_column(self):
        return WasmStateEventModel.key

    def _to_record(self, row: WasmStateEventModel, code_id: Optional[int] = None) -> WasmStateEvent:
        return WasmStateEvent(
            contract_address=row.contract_address,
            block_height=row.block_height,
            block_time_unix_ms=row.block_time_unix_ms,
            key=row.key,
            value=row.value,
            delete=bool(row.delete)
        )

    def find_latest(self, contract_address: str, key: str, max_height: int) -> Optional[WasmStateEvent]:
        """Most recent event for an exact key at or below a height, deletes included."""
        with self.backend.session_scope() as session:
            row = (
                session.query(WasmStateEventModel)
                .filter(
                    WasmStateEventModel.contract_address == contract_address,
                    WasmStateEventModel.key == key,
                    WasmStateEventModel.block_height <= max_height
                )
                .order_by(WasmStateEventModel.block_height.desc())
                .first()
            )
            return self._to_record(row) if row is not None else None

    def find_latest_many(
        self,
        contract_address: str,
        keys: Iterable[str],
        prefixes: Iterable[str],
        max_height: int
    ) -> list[WasmStateEvent]:
        """
        Most recent event per distinct key, for exact keys and keys under prefixes.

        Args:
            contract_address: Contract to scan
            keys: Exact encoded keys
            prefixes: Encoded map prefixes (each ending with the separator)
            max_height: Ceiling block height

        Returns:
            One record per distinct key, sorted by key
        """
        keys = list(keys)
        prefixes = list(prefixes)
        conditions = []
        if keys:
            conditions.append(WasmStateEventModel.key.in_(keys))
        conditions.extend(
            WasmStateEventModel.key.like(like_pattern(prefix, True), escape="\\") for prefix in prefixes
        )
        if not conditions:
            return []

        with self.backend.session_scope() as session:
            latest = (
                session.query(
                    WasmStateEventModel.key.label("key"),
                    func.max(WasmStateEventModel.block_height).label("max_height")
                )
                .filter(
                    WasmStateEventModel.contract_address == contract_address,
                    WasmStateEventModel.block_height <= max_height,
                    or_(*conditions)
                )
                .group_by(WasmStateEventModel.key)
                .subquery()
            )
            rows = (
                session.query(WasmStateEventModel)
                .join(latest, and_(
                    WasmStateEventModel.key == latest.c.key,
                    WasmStateEventModel.block_height == latest.c.max_height
                ))
                .filter(WasmStateEventModel.contract_address == contract_address)
                .order_by(WasmStateEventModel.key.asc())
                .all()
            )
            return [self._to_record(row) for row in rows]

    def find_latest_by_prefix(self, contract_address: str, prefix: str, max_height: int) -> list[WasmStateEvent]:
        return self.find_latest_many(contract_address, [], [prefix], max_height)

    def find_first_set(
        self,
        contract_address: str,
        key: str,
        max_height: int,
        where: Any = None
    ) -> Optional[WasmStateEvent]:
        """Earliest non-deleted event for a key, optionally whose value contains `where`."""
        with self.backend.session_scope() as session:
            query = (
                session.query(WasmStateEventModel)
                .filter(
                    WasmStateEventModel.contract_address == contract_address,
                    WasmStateEventModel.key == key,
                    WasmStateEventModel.delete == false(),
                    WasmStateEventModel.block_height <= max_height
                )
                .order_by(WasmStateEventModel.block_height.asc())
            )
            for row in query.yield_per(self.backend.chunk_size):
                record = self._to_record(row)
                if where is None or value_contains(record.value_json, where):
                    return record
        return None

    def upsert(self, session: Session, events: list[WasmStateEvent]) -> int:
        """Write events, correcting fields of rows whose natural key already exists."""
        rows = [
            {
                "contract_address": event.contract_address,
                "key": event.key,
                "block_height": event.block_height,
                "block_time_unix_ms": event.block_time_unix_ms,
                "value": event.value,
                "delete": event.delete
            }
            for event in events
        ]
        return self.backend.upsert(
            session,
            WasmStateEventModel,
            rows,
            index_elements=["contract_address", "key", "block_height"],
            update_columns=["block_time_unix_ms", "value", "delete"]
        )


class TransformationStore(_DependableStore):
    """Derived transformations keyed by (contract_address, name, block_height)."""

    model = WasmStateEventTransformationModel
    namespace = DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION

    def _body_column(self):
        return WasmStateEventTransformationModel.name

    def _to_record(self, row: WasmStateEventTransformationModel, code_id: Optional[int] = None) -> Transformation:
        return Transformation(
            contract_address=row.contract_address,
            block_height=row.block_height,
            block_time_unix_ms=row.block_time_unix_ms,
            name=row.name,
            value=row.value,
            code_id=code_id
        )

    def find_latest_matches(
        self,
        contract_address: Optional[str],
        name_like: str,
        max_height: int,
        prefix: bool = False,
        limit: Optional[int] = None
    ) -> list[Transformation]:
        """
        Most recent transformation per (contract, name) whose name matches.

        Args:
            contract_address: Contract to scan, or None for every contract
            name_like: Exact name, or a pattern where "*" matches any run of characters
            max_height: Ceiling block height
            prefix: Also match any name starting with name_like
            limit: Maximum number of records

        Returns:
            Records sorted by contract and name, with the contract's code id
        """
        return self._find_latest(
            contract_address,
            _text_condition(WasmStateEventTransformationModel.name, name_like, prefix),
            max_height,
            limit
        )

    def find_latest_many(
        self,
        contract_address: str,
        names: Iterable[str],
        prefixes: Iterable[str],
        max_height: int
    ) -> list[Transformation]:
        names = list(names)
        conditions = []
        if names:
            conditions.append(WasmStateEventTransformationModel.name.in_(names))
        conditions.extend(
            _text_condition(WasmStateEventTransformationModel.name, prefix, True) for prefix in prefixes
        )
        if not conditions:
            return []
        return self._find_latest(contract_address, or_(*conditions), max_height, None)

    def _find_latest(self, contract_address: Optional[str], name_condition, max_height: int,
                     limit: Optional[int]) -> list[Transformation]:
        M = WasmStateEventTransformationModel
        filters = [name_condition, M.block_height <= max_height]
        if contract_address is not None:
            filters.append(M.contract_address == contract_address)

        with self.backend.session_scope() as session:
            latest = (
                session.query(
                    M.contract_address.label("contract_address"),
                    M.name.label("name"),
                    func.max(M.block_height).label("max_height")
                )
                .filter(*filters)
                .group_by(M.contract_address, M.name)
                .subquery()
            )
            query = (
                session.query(M, ContractModel.code_id)
                .join(latest, and_(
                    M.contract_address == latest.c.contract_address,
                    M.name == latest.c.name,
                    M.block_height == latest.c.max_height
                ))
                .outerjoin(ContractModel, ContractModel.address == M.contract_address)
                .order_by(M.contract_address.asc(), M.name.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            return [self._to_record(row, code_id) for row, code_id in query.all()]

    def find_previous(self, contract_address: str, name: str, before_height: int) -> Optional[Transformation]:
        """Newest transformation for (contract, name) strictly below a height."""
        M = WasmStateEventTransformationModel
        with self.backend.session_scope() as session:
            row = (
                session.query(M)
                .filter(M.contract_address == contract_address, M.name == name, M.block_height < before_height)
                .order_by(M.block_height.desc())
                .first()
            )
            return self._to_record(row) if row is not None else None

    def find_first(
        self,
        contract_address: Optional[str],
        name_like: str,
        max_height: int,
        where: Any = None
    ) -> Optional[Transformation]:
        """Earliest transformation whose name matches, optionally whose value contains `where`."""
        M = WasmStateEventTransformationModel
        filters = [_text_condition(M.name, name_like, False), M.block_height <= max_height]
        if contract_address is not None:
            filters.append(M.contract_address == contract_address)

        with self.backend.session_scope() as session:
            query = session.query(M).filter(*filters).order_by(M.block_height.asc(), M.id.asc())
            for row in query.yield_per(self.backend.chunk_size):
                record = self._to_record(row)
                if where is None or value_contains(record.value, where):
                    return record
        return None

    def upsert(self, session: Session, transformations: list[Transformation]) -> int:
        """Write transformations, replacing the value on (contract, name, height) conflict."""
        rows = [
            {
                "contract_address": transformation.contract_address,
                "name": transformation.name,
                "block_height": transformation.block_height,
                "block_time_unix_ms": transformation.block_time_unix_ms,
                "value": transformation.value
            }
            for transformation in transformations
        ]
        return self.backend.upsert(
            session,
            WasmStateEventTransformationModel,
            rows,
            index_elements=["contract_address", "name", "block_height"],
            update_columns=["block_time_unix_ms", "value"]
        )


class ContractStore:
    """Known contracts and their code ids."""

    def __init__(self, backend: SqlStorageBackend):
        self.backend = backend

    def get(self, address: str) -> Optional[ContractInfo]:
        with self.backend.session_scope() as session:
            row = session.get(ContractModel, address)
            if row is None:
                return None
            return ContractInfo(
                address=row.address,
                code_id=row.code_id,
                admin=row.admin,
                creator=row.creator,
                label=row.label
            )

    def ensure(self, session: Session, code_ids: dict[str, Optional[int]]) -> int:
        """
        Make sure every address exists, setting code ids where known.

        Args:
            session: Active session
            code_ids: Address to code id (None when unknown)

        Returns:
            Number of contracts written
        """
        known = [{"address": address, "code_id": code_id} for address, code_id in code_ids.items()
                 if code_id is not None]
        written = self.backend.upsert(session, ContractModel, known, ["address"], ["code_id"])

        unknown = [address for address, code_id in code_ids.items() if code_id is None]
        if unknown:
            existing = {
                address for (address,) in
                session.query(ContractModel.address).filter(ContractModel.address.in_(unknown)).all()
            }
            for address in unknown:
                if address not in existing:
                    session.add(ContractModel(address=address))
                    written += 1
            session.flush()
        return written


class ComputationStore:
    """Memoized computations keyed by (target_address, formula, args, block_height)."""

    def __init__(self, backend: SqlStorageBackend):
        self.backend = backend

    @staticmethod
    def _to_record(row: ComputationModel) -> Computation:
        events, transformations = [], []
        for dependency in sorted(row.dependencies, key=lambda d: d.id or 0):
            dependent_key = DependentKey(dependency.key, bool(dependency.prefix))
            if dependent_key.in_namespace(DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION):
                transformations.append(dependent_key)
            else:
                events.append(dependent_key)
        return Computation(
            id=row.id,
            target_address=row.target_address,
            formula=row.formula,
            args=row.args,
            block_height=row.block_height,
            block_time_unix_ms=row.block_time_unix_ms,
            latest_block_height_valid=row.latest_block_height_valid,
            validity_extendable=bool(row.validity_extendable),
            output=row.output,
            dependent_events=events,
            dependent_transformations=transformations
        )

    def get(self, computation_id: int) -> Optional[Computation]:
        with self.backend.session_scope() as session:
            row = session.get(ComputationModel, computation_id)
            return self._to_record(row) if row is not None else None

    def find_latest_at_or_below(
        self,
        target_address: str,
        formula: str,
        args: str,
        height: int
    ) -> Optional[Computation]:
        """Most recent computation starting at or below a height."""
        with self.backend.session_scope() as session:
            row = (
                session.query(ComputationModel)
                .filter(
                    ComputationModel.target_address == target_address,
                    ComputationModel.formula == formula,
                    ComputationModel.args == args,
                    ComputationModel.block_height <= height
                )
                .order_by(ComputationModel.block_height.desc(), ComputationModel.id.desc())
                .first()
            )
            return self._to_record(row) if row is not None else None

    def find_between(
        self,
        target_address: str,
        formula: str,
        args: str,
        start_height: int,
        end_height: int
    ) -> list[Computation]:
        """Computations starting in (start_height, end_height], ascending."""
        with self.backend.session_scope() as session:
            rows = (
                session.query(ComputationModel)
                .filter(
                    ComputationModel.target_address == target_address,
                    ComputationModel.formula == formula,
                    ComputationModel.args == args,
                    ComputationModel.block_height > start_height,
                    ComputationModel.block_height <= end_height
                )
                .order_by(ComputationModel.block_height.asc())
                .all()
            )
            return [self._to_record(row) for row in rows]

    def save(self, computation: Computation) -> Computation:
        """
        Upsert a computation by identity and reconcile its dependency rows.

        Returns:
            The stored computation with its id
        """
        with self.backend.session_scope() as session:
            row = (
                session.query(ComputationModel)
                .filter(
                    ComputationModel.target_address == computation.target_address,
                    ComputationModel.formula == computation.formula,
                    ComputationModel.args == computation.args,
                    ComputationModel.block_height == computation.block_height
                )
                .first()
            )
            if row is None:
                row = ComputationModel(
                    target_address=computation.target_address,
                    formula=computation.formula,
                    args=computation.args,
                    block_height=computation.block_height
                )
                session.add(row)

            row.block_time_unix_ms = computation.block_time_unix_ms
            row.latest_block_height_valid = computation.latest_block_height_valid
            row.validity_extendable = computation.validity_extendable
            row.output = computation.output

            wanted = {(key.key, key.prefix): key for key in computation.dependent_keys}
            for dependency in list(row.dependencies):
                if (dependency.key, bool(dependency.prefix)) not in wanted:
                    row.dependencies.remove(dependency)
            existing = {(dependency.key, bool(dependency.prefix)) for dependency in row.dependencies}
            for identity, key in wanted.items():
                if identity not in existing:
                    row.dependencies.append(ComputationDependencyModel(
                        key=key.key,
                        prefix=key.prefix,
                        exact=key.kind is DependentKeyKind.EXACT,
                        namespace=_concrete_or_none(key.namespace),
                        contract_address=_concrete_or_none(key.contract_address)
                    ))

            session.flush()
            return self._to_record(row)

    def update_latest_valid(self, computation_id: int, latest_block_height_valid: int) -> None:
        with self.backend.session_scope() as session:
            session.query(ComputationModel).filter(ComputationModel.id == computation_id).update(
                {ComputationModel.latest_block_height_valid: latest_block_height_valid},
                synchronize_session=False
            )

    def delete(self, computation_ids: Iterable[int]) -> int:
        """Delete computations and their dependency rows."""
        ids = list(computation_ids)
        if not ids:
            return 0
        deleted = 0
        with self.backend.session_scope() as session:
            for start in range(0, len(ids), self.backend.chunk_size):
                chunk = ids[start:start + self.backend.chunk_size]
                session.query(ComputationDependencyModel).filter(
                    ComputationDependencyModel.computation_id.in_(chunk)
                ).delete(synchronize_session=False)
                deleted += session.query(ComputationModel).filter(
                    ComputationModel.id.in_(chunk)
                ).delete(synchronize_session=False)
        logger.debug(f"Deleted {deleted} computations")
        return deleted

    def delete_all(self) -> int:
        with self.backend.session_scope() as session:
            session.query(ComputationDependencyModel).delete(synchronize_session=False)
            return session.query(ComputationModel).delete(synchronize_session=False)

    def find_dependent_on(self, written_keys: Iterable[str]) -> list[Computation]:
        """
        Computations whose recorded dependencies cover any written key.

        Exact dependencies are matched in SQL against the written keys.
        Wildcard and prefix dependencies are narrowed in SQL to the written
        namespaces and contracts (or any-contract patterns), and the final
        decision is made by DependentKey.matches.
        """
        written = sorted(set(written_keys))
        if not written:
            return []

        written_dependent_keys = [DependentKey(key) for key in written]
        namespaces = sorted({key.namespace for key in written_dependent_keys})
        contracts = sorted({key.contract_address for key in written_dependent_keys if key.contract_address})

        with self.backend.session_scope() as session:
            candidate_ids: set[int] = set()
            for start in range(0, len(written), self.backend.chunk_size):
                chunk = written[start:start + self.backend.chunk_size]
                candidate_ids.update(
                    computation_id for (computation_id,) in
                    session.query(ComputationDependencyModel.computation_id)
                    .filter(
                        ComputationDependencyModel.exact == true(),
                        ComputationDependencyModel.key.in_(chunk)
                    )
                    .distinct()
                    .all()
                )
            namespace_condition = or_(
                ComputationDependencyModel.namespace.is_(None),
                ComputationDependencyModel.namespace.in_(namespaces)
            )
            contract_chunks = [
                contracts[start:start + self.backend.chunk_size]
                for start in range(0, len(contracts), self.backend.chunk_size)
            ] or [[]]
            for chunk in contract_chunks:
                candidate_ids.update(
                    computation_id for (computation_id,) in
                    session.query(ComputationDependencyModel.computation_id)
                    .filter(
                        ComputationDependencyModel.exact == false(),
                        namespace_condition,
                        or_(
                            ComputationDependencyModel.contract_address.is_(None),
                            ComputationDependencyModel.contract_address.in_(chunk)
                        )
                    )
                    .distinct()
                    .all()
                )
            if not candidate_ids:
                return []

            ids = sorted(candidate_ids)
            rows = []
            for start in range(0, len(ids), self.backend.chunk_size):
                rows.extend(
                    session.query(ComputationModel)
                    .filter(ComputationModel.id.in_(ids[start:start + self.backend.chunk_size]))
                    .all()
                )
            computations = [self._to_record(row) for row in rows]

        written_set = set(written)
        matched = []
        for computation in computations:
            for dependent_key in computation.dependent_keys:
                if dependent_key.kind is DependentKeyKind.EXACT:
                    hit = dependent_key.key in written_set
                else:
                    hit = any(dependent_key.matches(key) for key in written)
                if hit:
                    matched.append(computation)
                    break
        return sorted(matched, key=lambda c: (c.block_height, c.id or 0))


@dataclass(frozen=True)
class Stores:
    """All stores bound to one backend."""
    backend: SqlStorageBackend
    events: EventStore
    transformations: TransformationStore
    contracts: ContractStore
    computations: ComputationStore

    @classmethod
    def from_backend(cls, backend: SqlStorageBackend) -> "Stores":
        return cls(
            backend=backend,
            events=EventStore(backend),
            transformations=TransformationStore(backend),
            contracts=ContractStore(backend),
            computations=ComputationStore(backend)
        )
