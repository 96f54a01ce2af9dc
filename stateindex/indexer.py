"""
StateIndexer application context.

Owns the storage backend, stores, transformation pipeline, computation cache
and formula registry for one database, with an explicit open/close lifecycle.
It exposes the ingestion entrypoint (submit_batch) and the query entrypoints
(evaluate, evaluate_range).
"""

import logging
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError

from stateindex.config.settings import Settings, configure_logging
from stateindex.core.compute import RangeComputer, compute
from stateindex.core.computation import ComputationCache
from stateindex.core.schemas import BatchResult, EvaluationResult, RangeEntry, RawStateEvent
from stateindex.core.types import Block, Computation, ComputationOutput, WasmStateEvent, serialize_args, values_equal
from stateindex.formulas.registry import FormulaRegistry
from stateindex.storage.sql_backend import SqlStorageBackend
from stateindex.storage.stores import Stores
from stateindex.transformers.pipeline import TransformationPipeline
from stateindex.transformers.registry import TransformerRegistry
from stateindex.transformers.types import Transformer

logger = logging.getLogger(__name__)

BlockInput = Union[Block, int, None]


class IngestionError(ValueError):
    """Raised when a raw event batch fails validation"""
    pass


class InvalidRangeError(ValueError):
    """Raised for inverted ranges or range queries over dynamic formulas"""
    pass


class StateNotInitializedError(RuntimeError):
    """Raised when a query needs the latest block but nothing was ingested"""
    pass


class StateIndexer:
    """
    Indexer application context.

    Args:
        settings: Settings; a fresh Settings() is created when omitted
        formulas: Formula registry; the shipped formulas when omitted
        transformers: Transformers; the shipped transformers when omitted
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        formulas: Optional[FormulaRegistry] = None,
        transformers: Optional[Iterable[Transformer]] = None
    ):
        self.settings = settings or Settings()
        self.formulas = formulas or FormulaRegistry()
        self.transformer_registry = TransformerRegistry(self.settings, transformers)

        self.backend: Optional[SqlStorageBackend] = None
        self.stores: Optional[Stores] = None
        self.pipeline: Optional[TransformationPipeline] = None
        self.cache: Optional[ComputationCache] = None

    @property
    def is_open(self) -> bool:
        return self.backend is not None

    def open(self) -> "StateIndexer":
        """Configure logging, connect to the database and build the components."""
        if self.is_open:
            return self

        configure_logging(self.settings)
        database = self.settings.get_database_config()
        self.backend = SqlStorageBackend(database["url"], echo=database["echo"], chunk_size=database["chunk_size"])
        self.stores = Stores.from_backend(self.backend)
        self.pipeline = TransformationPipeline(self.transformer_registry, self.stores.transformations)
        self.cache = ComputationCache(self.stores, self.settings)

        logger.info(
            f"StateIndexer opened for chain '{self.settings.CHAIN_ID}' "
            f"with {len(self.transformer_registry)} transformers"
        )
        return self

    def close(self) -> None:
        if not self.is_open:
            return
        self.backend.close()
        self.backend = None
        self.stores = None
        self.pipeline = None
        self.cache = None

    def __enter__(self) -> "StateIndexer":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self.is_open:
            raise RuntimeError("StateIndexer is not open")

    # Ingestion

    def submit_batch(self, raw_events: Iterable[Union[RawStateEvent, dict[str, Any]]]) -> BatchResult:
        """
        Ingest a batch of contract storage events.

        Events are upserted, transformed, and every affected computation is
        invalidated or destroyed. Re-delivered events overwrite their rows.

        Raises:
            IngestionError: If any raw event fails validation
        """
        self._require_open()

        try:
            parsed = [
                raw if isinstance(raw, RawStateEvent) else RawStateEvent.model_validate(raw)
                for raw in raw_events
            ]
        except ValidationError as e:
            raise IngestionError(f"Invalid event batch: {e}") from e

        if not parsed:
            return BatchResult()

        # Last delivery of a natural key wins; sorting keeps the original order within a height
        by_identity: dict[tuple[str, str, int], WasmStateEvent] = {}
        code_ids: dict[str, Optional[int]] = {}
        for raw in sorted(parsed, key=lambda r: r.block_height):
            by_identity[(raw.contract_address, raw.key, raw.block_height)] = WasmStateEvent(
                contract_address=raw.contract_address,
                block_height=raw.block_height,
                block_time_unix_ms=raw.block_time_unix_ms,
                key=raw.key,
                value=None if raw.delete else raw.value,
                delete=raw.delete
            )
            code_ids.setdefault(raw.contract_address, None)
            if raw.code_id is not None:
                code_ids[raw.contract_address] = raw.code_id
        events = list(by_identity.values())
        latest_block = max((event.block for event in events), key=lambda block: block.height)

        with self.backend.session_scope() as session:
            self.stores.contracts.ensure(session, code_ids)
            new_event_count = self.stores.events.upsert(session, events)
            self.backend.update_state(session, self.settings.CHAIN_ID, latest_block)

        for address, code_id in code_ids.items():
            if code_id is None:
                contract = self.stores.contracts.get(address)
                code_ids[address] = contract.code_id if contract is not None else None

        with self.backend.session_scope() as session:
            transformations = self.pipeline.run(session, events, code_ids)

        invalidated, destroyed = self.cache.invalidate_dependent_on_changes(events, transformations)

        result = BatchResult(
            new_event_count=new_event_count,
            new_transformation_count=len(transformations),
            computations_invalidated=invalidated,
            computations_destroyed=destroyed
        )
        logger.info(
            f"Ingested {result.new_event_count} events up to block {latest_block.height}: "
            f"{result.new_transformation_count} transformations, "
            f"{result.computations_invalidated} computations invalidated, "
            f"{result.computations_destroyed} destroyed"
        )
        return result

    # Queries

    def latest_block(self) -> Optional[Block]:
        self._require_open()
        return self.backend.get_latest_block()

    def _resolve_block(self, block: BlockInput) -> Block:
        if isinstance(block, Block):
            return block
        if block is None:
            latest = self.backend.get_latest_block()
            if latest is None:
                raise StateNotInitializedError("No blocks ingested yet")
            return latest
        resolved = self.backend.get_block_for_height(block)
        return resolved if resolved is not None else Block(block, 0)

    def evaluate(
        self,
        formula_name: str,
        target_address: str,
        args: Optional[dict[str, Any]] = None,
        block: BlockInput = None
    ) -> EvaluationResult:
        """
        Evaluate a formula as of a block (default: the latest ingested block).

        A cached computation is reused when it is still valid at the block;
        otherwise the formula is computed and cached. Dynamic formulas are
        never cached.

        Raises:
            FormulaNotFoundError: If the formula is not registered
            StateNotInitializedError: If no block is given and nothing was ingested
        """
        self._require_open()
        formula = self.formulas.get(formula_name)
        block = self._resolve_block(block)

        if not formula.dynamic:
            existing = self.stores.computations.find_latest_at_or_below(
                target_address, formula_name, serialize_args(args), block.height
            )
            if existing is not None and self.cache.update_validity_up_to_block_height(existing, block.height):
                logger.debug(f"Cache hit for {formula_name} on {target_address} at {block.height}")
                return EvaluationResult(
                    value=existing.output,
                    block_height=existing.block_height,
                    block_time_unix_ms=existing.block_time_unix_ms
                )

        output = compute(self.stores, self.settings, formula, target_address, args, block)

        if not formula.dynamic:
            output.latest_block_height_valid = block.height
            self.cache.create_from_outputs(target_address, formula_name, formula, args, [output])

        return EvaluationResult(
            value=output.value,
            block_height=output.block.height if output.block is not None else -1,
            block_time_unix_ms=output.block.time_unix_ms if output.block is not None else 0
        )

    def _cached_chain(self, formula_name: str, target_address: str, args: str, start: Block,
                      end: Block) -> list[Computation]:
        """Cached computations covering the range contiguously from its start."""
        first = self.stores.computations.find_latest_at_or_below(target_address, formula_name, args, start.height)
        if first is None or not self.cache.update_validity_up_to_block_height(first, start.height):
            return []

        chain = [first]
        for following in self.stores.computations.find_between(
            target_address, formula_name, args, first.block_height, end.height
        ):
            current = chain[-1]
            if current.latest_block_height_valid >= end.height:
                break
            if not self.cache.update_validity_up_to_block_height(current, following.block_height - 1):
                break
            chain.append(following)

        self.cache.update_validity_up_to_block_height(chain[-1], end.height)
        return chain

    def evaluate_range(
        self,
        formula_name: str,
        target_address: str,
        args: Optional[dict[str, Any]],
        block_start: BlockInput,
        block_end: BlockInput = None,
        block_step: Optional[int] = None,
        time_unix_ms_step: Optional[int] = None
    ) -> list[RangeEntry]:
        """
        Every distinct value of a formula over a block range.

        The end is capped at the latest ingested block. Cached computations
        are reused when they cover the start contiguously; only the missing
        tail is computed. With a block or time step the formula is sampled
        at that interval and the computation cache is neither read nor written.

        Raises:
            InvalidRangeError: If the formula is dynamic, the range is inverted
                or a step is not a positive integer
        """
        self._require_open()
        formula = self.formulas.get(formula_name)
        if formula.dynamic:
            raise InvalidRangeError(f"Formula '{formula_name}' is dynamic and cannot be computed over a range")
        for step in (block_step, time_unix_ms_step):
            if step is not None and (isinstance(step, bool) or not isinstance(step, int) or step <= 0):
                raise InvalidRangeError(f"Range step must be a positive integer, got {step!r}")
        if block_step is not None and time_unix_ms_step is not None:
            raise InvalidRangeError("Only one of block_step and time_unix_ms_step may be set")

        start = self._resolve_block(block_start)
        end = self._resolve_block(block_end)
        if start.height > end.height:
            raise InvalidRangeError(f"Range start {start.height} is after end {end.height}")

        latest = self.backend.get_latest_block()
        if latest is not None and end.height > latest.height:
            end = latest
        if start.height > end.height:
            return []

        if block_step is not None or time_unix_ms_step is not None:
            computer = RangeComputer(self.stores, self.settings, formula, target_address, args)
            sampled = computer.compute_range(start, end, block_step, time_unix_ms_step)
            logger.debug(
                f"Sampled {formula_name} on {target_address} over {start.height}-{end.height} "
                f"in {computer.evaluations} evaluations"
            )
            return self._range_entries((output.block, output.value) for output in sampled)

        serialized_args = serialize_args(args)
        chain = self._cached_chain(formula_name, target_address, serialized_args, start, end)

        tail: list[ComputationOutput] = []
        tail_start: Optional[Block] = None
        if not chain:
            tail_start = start
        elif chain[-1].latest_block_height_valid < end.height:
            tail_start = self._resolve_block(chain[-1].latest_block_height_valid + 1)

        if tail_start is not None:
            computer = RangeComputer(self.stores, self.settings, formula, target_address, args)
            tail = computer.compute_range(tail_start, end)
            logger.debug(
                f"Computed {formula_name} on {target_address} over {tail_start.height}-{end.height} "
                f"in {computer.evaluations} evaluations"
            )
            # A tail entry may not start inside the cached chain
            if chain and tail and (tail[0].block is None or tail[0].block.height < tail_start.height):
                tail[0].block = tail_start
            self.cache.create_from_outputs(target_address, formula_name, formula, args, tail)

        pieces = [(computation.block, computation.output) for computation in chain]
        pieces.extend((output.block, output.value) for output in tail)
        return self._range_entries(pieces)

    @staticmethod
    def _range_entries(pieces: Iterable[tuple[Optional[Block], Any]]) -> list[RangeEntry]:
        """Collapse consecutive equal values into range entries."""
        entries: list[RangeEntry] = []
        for piece_block, value in pieces:
            if entries and values_equal(entries[-1].value, value):
                continue
            entries.append(RangeEntry(
                value=value,
                block_height=piece_block.height if piece_block is not None else -1,
                block_time_unix_ms=piece_block.time_unix_ms if piece_block is not None else 0
            ))
        return entries

    # Cache maintenance

    def revalidate(self, computation_id: int) -> Optional[Computation]:
        """Recompute a cached computation and reconcile it; None if it was deleted."""
        self._require_open()
        computation = self.stores.computations.get(computation_id)
        if computation is None:
            return None
        return self.cache.revalidate(computation, self.formulas.get(computation.formula))

    def clear_cache(self) -> int:
        self._require_open()
        return self.cache.clear()
