"""
Formula evaluation at a single block and over a block range.

A single evaluation reports the latest block among all records it read: the
earliest block at which the same output could have been computed. Range
evaluation replays the formula only at blocks where one of its dependencies
changes, reusing records already loaded through a pre-filled cache.
"""

import logging
from typing import Any, Optional, Union

from stateindex.config.settings import Settings
from stateindex.core.dependent_keys import DependentKey, DependentKeyKind, unique_dependent_keys
from stateindex.core.env import Environment
from stateindex.core.types import Block, ComputationOutput, Formula, Transformation, WasmStateEvent, values_equal
from stateindex.storage.stores import Stores

logger = logging.getLogger(__name__)

Record = Union[WasmStateEvent, Transformation]


class _LatestBlockTracker:
    """on_fetch hook remembering the newest block among fetched records."""

    def __init__(self, initial: Optional[Block] = None):
        self.latest = initial
        self.records: list[Record] = []

    def __call__(self, records) -> None:
        self.records.extend(records)
        newest = max(records, key=lambda record: record.block_height)
        if self.latest is None or newest.block_height > self.latest.height:
            self.latest = newest.block


def compute(
    stores: Stores,
    settings: Settings,
    formula: Formula,
    target_address: str,
    args: Optional[dict[str, Any]],
    block: Block
) -> ComputationOutput:
    """
    Evaluate a formula as of one block.

    Args:
        stores: Storage access
        settings: Indexer settings
        formula: Formula to evaluate
        target_address: Address the formula is evaluated for
        args: Formula arguments
        block: Ceiling block

    Returns:
        Output whose block is the latest block the value depends on (the
        evaluation block for dynamic formulas, None if nothing was read)
    """
    tracker = _LatestBlockTracker(block if formula.dynamic else None)
    env = Environment(
        stores.events,
        stores.transformations,
        stores.contracts,
        settings,
        block,
        args=args,
        target_address=target_address,
        on_fetch=tracker
    )
    value = formula.compute(env, env.args)

    return ComputationOutput(block=tracker.latest, value=value, dependent_keys=env.dependent_keys)


def _current_record(records: list[Record], height: int) -> Optional[Record]:
    """Newest record at or below height in an ascending list."""
    current = None
    for record in records:
        if record.block_height > height:
            break
        current = record
    return current


class RangeComputer:
    """
    Reconstructs a formula's output history over a block range.

    The formula is evaluated at the start block, then only at the next block
    where a recorded dependency changes, so the number of evaluations is
    bounded by the number of distinct dependency changes plus one.
    """

    def __init__(
        self,
        stores: Stores,
        settings: Settings,
        formula: Formula,
        target_address: str,
        args: Optional[dict[str, Any]] = None
    ):
        self.stores = stores
        self.settings = settings
        self.formula = formula
        self.target_address = target_address
        self.args = dict(args or {})
        self.evaluations = 0

        self._dependent_keys: list[DependentKey] = []
        # Dependent keys whose current records were read into the cache at least once
        self._loaded: set[str] = set()
        # Concrete dependent key -> records ascending by block height
        self._records: dict[str, list[Record]] = {}
        self._contract_cache: dict = {}

    def _remember(self, records: list[Record]) -> None:
        for record in sorted(records, key=lambda r: r.block_height):
            known = self._records.setdefault(record.dependent_key, [])
            if record not in known:
                known.append(record)
                known.sort(key=lambda r: r.block_height)

    def _matching_records(self, dependent_key: DependentKey) -> list[tuple[str, list[Record]]]:
        if dependent_key.kind is DependentKeyKind.EXACT:
            records = self._records.get(dependent_key.key)
            return [(dependent_key.key, records)] if records else []
        return [(key, records) for key, records in self._records.items() if dependent_key.matches(key)]

    def _fill_cache(self, cache: dict, block: Block) -> None:
        """
        Cache what each known dependency looked like at the block, from loaded records.

        Keys only ever read through the first-set getters are skipped: their
        remembered records are the first write, not the latest one.
        """
        for dependent_key in self._dependent_keys:
            if dependent_key.key not in self._loaded:
                continue
            if dependent_key.kind is DependentKeyKind.EXACT:
                current = _current_record(self._records.get(dependent_key.key, []), block.height)
                cache[dependent_key.key] = [current] if current is not None else None
                continue

            current_records = []
            for key, records in sorted(self._matching_records(dependent_key)):
                current = _current_record(records, block.height)
                if current is not None:
                    current_records.append(current)
            cache[dependent_key.key] = current_records or None

    def _load_future(self, dependent_keys: list[DependentKey], after: Block, end: Block) -> None:
        """Load every record for new dependencies after the block, up to the end."""
        new_keys = [key for key in dependent_keys if key not in set(self._dependent_keys)]
        if not new_keys:
            return
        future = [
            *self.stores.events.find_in_range(new_keys, after.height, end.height),
            *self.stores.transformations.find_in_range(new_keys, after.height, end.height),
        ]
        self._remember(future)
        self._dependent_keys.extend(new_keys)

    def _next_potential_block(self, dependent_keys: list[DependentKey], current: Block) -> Optional[Block]:
        """Earliest block after the current one where any dependency changes."""
        next_block = None
        for dependent_key in dependent_keys:
            for _, records in self._matching_records(dependent_key):
                upcoming = next((r for r in records if r.block_height > current.height), None)
                if upcoming is not None and (next_block is None or upcoming.block_height < next_block.height):
                    next_block = upcoming.block
        return next_block

    def _evaluate_at(
        self, block: Block, preload: bool = True
    ) -> tuple[Any, Optional[Block], list[DependentKey], list[Record]]:
        cache: dict = {}
        if preload and self._dependent_keys:
            self._fill_cache(cache, block)

        tracker = _LatestBlockTracker(block if self.formula.dynamic else None)
        env = Environment(
            self.stores.events,
            self.stores.transformations,
            self.stores.contracts,
            self.settings,
            block,
            args=self.args,
            target_address=self.target_address,
            on_fetch=tracker,
            cache=cache,
            contract_cache=self._contract_cache
        )
        value = self.formula.compute(env, env.args)
        self.evaluations += 1
        dependent_keys = env.dependent_keys
        self._loaded.update(key.key for key in dependent_keys if key.key in cache)
        return value, tracker.latest, dependent_keys, tracker.records

    def _next_step_block(self, cursor: Block, block_step: Optional[int],
                         time_unix_ms_step: Optional[int]) -> Optional[Block]:
        backend = self.stores.backend
        if block_step:
            height = cursor.height + block_step
            return backend.get_block_for_height(height) or Block(height, 0)

        target_time = cursor.time_unix_ms + time_unix_ms_step
        next_block = (
            backend.get_block_for_time(target_time, after=cursor.time_unix_ms)
            or backend.get_next_block_for_time(target_time)
        )
        # Stored times can decrease with height; never step backwards
        if next_block is None or next_block.height <= cursor.height:
            return None
        return next_block

    def compute_range(
        self,
        block_start: Block,
        block_end: Block,
        block_step: Optional[int] = None,
        time_unix_ms_step: Optional[int] = None
    ) -> list[ComputationOutput]:
        """
        Evaluate the formula over [block_start, block_end].

        With a block or time step the formula is sampled at fixed intervals
        instead: nothing is preloaded, a new output is kept only when it
        depends on a newer block than the previous one, and the windows
        only cover the sampled blocks.

        Args:
            block_start: First block evaluated
            block_end: Last block that may be evaluated
            block_step: Sample every this many blocks
            time_unix_ms_step: Sample the first stored block every this many milliseconds

        Returns:
            One output per distinct value in block order, each with the window
            it is known valid for

        Raises:
            ValueError: If a step is not a positive integer or both are given
        """
        for step in (block_step, time_unix_ms_step):
            if step is not None and (isinstance(step, bool) or not isinstance(step, int) or step <= 0):
                raise ValueError(f"Range step must be a positive integer, got {step!r}")
        if block_step and time_unix_ms_step:
            raise ValueError("Only one of block_step and time_unix_ms_step may be set")
        stepped = bool(block_step or time_unix_ms_step)

        results: list[ComputationOutput] = []
        cursor: Optional[Block] = block_start

        while cursor is not None and cursor.height <= block_end.height:
            value, latest, dependent_keys, used = self._evaluate_at(cursor, preload=not stepped)
            previous = results[-1] if results else None

            if stepped:
                newer = previous is None or (
                    latest is not None and (previous.block is None or latest.height > previous.block.height)
                )
                if newer:
                    results.append(ComputationOutput(
                        block=latest,
                        value=value,
                        dependent_keys=dependent_keys,
                        latest_block_height_valid=cursor.height
                    ))
                else:
                    # Same latest block, so the sampled value still holds here
                    previous.latest_block_height_valid = cursor.height
                cursor = self._next_step_block(cursor, block_step, time_unix_ms_step)
                continue

            self._remember(used)
            self._load_future(dependent_keys, cursor, block_end)

            if previous is None or not values_equal(previous.value, value):
                emitted = latest
                if previous is not None:
                    previous.latest_block_height_valid = cursor.height - 1
                    # Windows must not overlap the previous entry
                    if emitted is None or emitted.height < cursor.height:
                        emitted = cursor
                results.append(ComputationOutput(
                    block=emitted,
                    value=value,
                    dependent_keys=dependent_keys,
                    latest_block_height_valid=cursor.height
                ))
            else:
                previous.dependent_keys = unique_dependent_keys([*previous.dependent_keys, *dependent_keys])
                previous.latest_block_height_valid = cursor.height

            logger.debug(
                f"Range step for {self.target_address} at {cursor.height}: "
                f"{len(dependent_keys)} dependencies, {len(results)} outputs"
            )
            cursor = self._next_potential_block(dependent_keys, cursor)

        # Nothing the formula depends on changes after the last evaluation
        if results and not stepped:
            results[-1].latest_block_height_valid = block_end.height
        return results
