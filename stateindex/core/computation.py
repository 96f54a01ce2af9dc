"""
Computation cache.

Memoized formula outputs are stored with the dependent keys they read and a
contiguous validity window [block_height, latest_block_height_valid]. New
writes either destroy a computation (it starts at or after the write), shrink
or extend its window, or leave it alone.
"""

import json
import logging
from typing import Iterable, Optional, Sequence

from stateindex.config.settings import Settings
from stateindex.core.compute import compute
from stateindex.core.dependent_keys import DependentKeyNamespace
from stateindex.core.types import (
    Computation, ComputationOutput, Formula, Transformation, WasmStateEvent, serialize_args, values_equal
)
from stateindex.storage.stores import Stores

logger = logging.getLogger(__name__)


class ComputationCache:
    """
    Creates, validates and invalidates memoized computations.
    """

    def __init__(self, stores: Stores, settings: Settings):
        self.stores = stores
        self.settings = settings

    def _earliest_change(self, computation: Computation, after_height: int, up_to: int) -> Optional[int]:
        heights = [
            self.stores.events.find_earliest_height_in_range(computation.dependent_events, after_height, up_to),
            self.stores.transformations.find_earliest_height_in_range(
                computation.dependent_transformations, after_height, up_to
            ),
        ]
        heights = [height for height in heights if height is not None]
        return min(heights) if heights else None

    def update_validity_up_to_block_height(
        self,
        computation: Computation,
        up_to: int,
        start_from: Optional[int] = None
    ) -> bool:
        """
        Check (and record) whether a computation is still valid at a height.

        Args:
            computation: Computation to check; its window is updated in place and persisted
            up_to: Height the computation should be valid at
            start_from: Re-check from this height even if the window already covers it

        Returns:
            True if the computation's output holds at up_to
        """
        if up_to < computation.block_height:
            return False
        if start_from is None and computation.latest_block_height_valid >= up_to:
            return True
        if not computation.validity_extendable:
            return False

        next_unchecked = computation.latest_block_height_valid + 1
        lower = max(
            computation.block_height + 1,
            next_unchecked if start_from is None else min(start_from, next_unchecked)
        )

        earliest = self._earliest_change(computation, lower - 1, up_to) if lower <= up_to else None
        latest_valid = up_to if earliest is None else earliest - 1

        if latest_valid != computation.latest_block_height_valid:
            computation.latest_block_height_valid = latest_valid
            if computation.id is not None:
                self.stores.computations.update_latest_valid(computation.id, latest_valid)

        return earliest is None

    def create_from_outputs(
        self,
        target_address: str,
        formula_name: str,
        formula: Formula,
        args: Optional[dict],
        outputs: Sequence[ComputationOutput]
    ) -> list[Computation]:
        """
        Persist outputs as computations, upserting by identity.

        An output without a block is stored at height -1 so it never gates
        the validity of later computations.
        """
        serialized_args = serialize_args(args)
        computations = []
        for output in outputs:
            block_height = output.block.height if output.block is not None else -1
            latest_valid = output.latest_block_height_valid
            if latest_valid is None:
                latest_valid = block_height
            computation = Computation(
                target_address=target_address,
                formula=formula_name,
                args=serialized_args,
                block_height=block_height,
                block_time_unix_ms=output.block.time_unix_ms if output.block is not None else 0,
                latest_block_height_valid=max(latest_valid, block_height),
                output=output.value,
                validity_extendable=not formula.dynamic,
                dependent_events=[
                    key for key in output.dependent_keys if key.in_namespace(DependentKeyNamespace.WASM_STATE_EVENT)
                ],
                dependent_transformations=[
                    key for key in output.dependent_keys
                    if key.in_namespace(DependentKeyNamespace.WASM_STATE_EVENT_TRANSFORMATION)
                ]
            )
            computations.append(self.stores.computations.save(computation))
        return computations

    def revalidate(self, computation: Computation, formula: Formula) -> Optional[Computation]:
        """
        Recompute at the computation's block and reconcile.

        Returns:
            The computation (replaced if its output, block or dependencies
            changed), or None if the formula now fails and it was deleted
        """
        block = computation.block
        if block is None:
            return computation

        try:
            output = compute(
                self.stores, self.settings, formula, computation.target_address,
                json.loads(computation.args), block
            )
        except Exception as e:
            logger.warning(f"Deleting computation {computation.id} ({computation.formula}) that no longer computes: {e}")
            self.stores.computations.delete([computation.id])
            return None

        output_block_height = output.block.height if output.block is not None else -1
        changed = (
            not values_equal(output.value, computation.output)
            or output_block_height != computation.block_height
            or set(output.dependent_keys) != set(computation.dependent_keys)
        )
        if changed:
            self.stores.computations.delete([computation.id])
            output.latest_block_height_valid = computation.block_height
            return self.create_from_outputs(
                computation.target_address, computation.formula, formula, json.loads(computation.args), [output]
            )[0]

        self.update_validity_up_to_block_height(
            computation, computation.latest_block_height_valid, start_from=computation.block_height + 1
        )
        return computation

    def invalidate_dependent_on_changes(
        self,
        events: Iterable[WasmStateEvent],
        transformations: Iterable[Transformation]
    ) -> tuple[int, int]:
        """
        Reconcile stored computations with newly written events and transformations.

        Returns:
            (computations invalidated, computations destroyed)
        """
        events = list(events)
        transformations = list(transformations)
        heights = [record.block_height for record in [*events, *transformations]]
        if not heights:
            return 0, 0
        earliest, latest = min(heights), max(heights)

        written_keys = {record.dependent_key for record in [*events, *transformations]}
        candidates = self.stores.computations.find_dependent_on(written_keys)
        if not candidates:
            return 0, 0

        # Block-scoped identities cannot be patched; they are recomputed on demand
        destroyed = self.stores.computations.delete(
            computation.id for computation in candidates if computation.block_height >= earliest
        )
        remaining = [computation for computation in candidates if computation.block_height < earliest]
        behind = {
            computation.id for computation in remaining
            if computation.latest_block_height_valid < earliest and computation.validity_extendable
        }

        invalidated = 0
        for computation in remaining:
            if computation.latest_block_height_valid < earliest:
                continue
            if computation.validity_extendable:
                self.update_validity_up_to_block_height(
                    computation, max(computation.latest_block_height_valid, latest), start_from=earliest
                )
            else:
                computation.latest_block_height_valid = earliest - 1
                self.stores.computations.update_latest_valid(computation.id, earliest - 1)
            invalidated += 1

        if self.settings.INVALIDATION_EXTEND_LATEST:
            most_recent: dict[tuple[str, str, str], Computation] = {}
            for computation in remaining:
                current = most_recent.get(computation.identity)
                if current is None or (computation.block_height, computation.id or 0) > (
                    current.block_height, current.id or 0
                ):
                    most_recent[computation.identity] = computation
            # Only the newest computation of an identity may grow towards the head
            for computation in most_recent.values():
                if computation.id in behind:
                    self.update_validity_up_to_block_height(computation, latest)
                    invalidated += 1

        if invalidated or destroyed:
            logger.info(
                f"Invalidation for heights {earliest}-{latest}: "
                f"{invalidated} revalidated, {destroyed} destroyed"
            )
        return invalidated, destroyed

    def clear(self) -> int:
        """Remove every computation."""
        cleared = self.stores.computations.delete_all()
        logger.info(f"Cleared {cleared} computations")
        return cleared
