"""
Transformation pipeline.

Turns a batch of events into transformations. Value functions may ask for the
transformation's previous value, which can be an item evaluated earlier in the
same uncommitted batch, so items are evaluated strictly in order against an
in-memory accumulator before falling back to the store.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from stateindex.core.types import Transformation, WasmStateEvent
from stateindex.storage.stores import TransformationStore
from stateindex.transformers.registry import TransformerRegistry
from stateindex.transformers.types import UNSET, PendingTransformation, Transformer

logger = logging.getLogger(__name__)


@dataclass
class _WorkItem:
    event: WasmStateEvent
    transformer: Transformer
    pending: PendingTransformation


class TransformationPipeline:
    """
    Evaluates transformers over event batches and persists the results.
    """

    def __init__(self, registry: TransformerRegistry, store: TransformationStore):
        self.registry = registry
        self.store = store

    def _build_work_list(self, events: Sequence[WasmStateEvent], code_ids: dict[str, Optional[int]]) -> list[_WorkItem]:
        items = []
        for event in events:
            for transformer in self.registry.for_event(event, code_ids.get(event.contract_address)):
                try:
                    name = transformer.name_for(event)
                except Exception as e:
                    logger.error(
                        f"Error getting transformation name for event "
                        f"{event.block_height}/{event.contract_address}/{event.key}: {e}",
                        exc_info=True
                    )
                    continue

                # Nothing to transform without a name
                if not name:
                    continue

                items.append(_WorkItem(
                    event=event,
                    transformer=transformer,
                    pending=PendingTransformation(
                        contract_address=event.contract_address,
                        block_height=event.block_height,
                        block_time_unix_ms=event.block_time_unix_ms,
                        name=name
                    )
                ))
        return items

    def evaluate(
        self,
        events: Sequence[WasmStateEvent],
        code_ids: Optional[dict[str, Optional[int]]] = None
    ) -> list[PendingTransformation]:
        """
        Evaluate every applicable transformer over the events, in event order.

        Args:
            events: Events in ingestion order
            code_ids: Contract address to code id

        Returns:
            Finalized transformations, one per (contract, name, height)
        """
        code_ids = code_ids or {}
        evaluated: list[PendingTransformation] = []
        # (contract, name) -> latest evaluated item; (contract, name, height) -> item
        latest_by_name: dict[tuple[str, str], PendingTransformation] = {}
        by_identity: dict[tuple[str, str, int], PendingTransformation] = {}

        for item in self._build_work_list(events, code_ids):
            event, transformer, pending = item.event, item.transformer, item.pending
            name_key = (pending.contract_address, pending.name)

            def get_last_value() -> Any:
                previous = latest_by_name.get(name_key)
                if previous is not None:
                    return previous.value
                stored = self.store.find_previous(event.contract_address, pending.name, event.block_height)
                return stored.value if stored is not None else None

            try:
                if event.delete and not transformer.manually_transform_deletes:
                    value = None
                else:
                    value = transformer.get_value(event, get_last_value)
            except Exception as e:
                logger.error(
                    f"Error transforming event {event.block_height}/{event.contract_address}/{event.key}: {e}",
                    exc_info=True
                )
                continue

            if value is UNSET:
                continue
            pending.value = value

            # One transformation per (contract, name, height): the later one wins
            identity = (pending.contract_address, pending.name, pending.block_height)
            existing = by_identity.get(identity)
            if existing is not None:
                existing.value = pending.value
                latest_by_name[name_key] = existing
            else:
                by_identity[identity] = pending
                evaluated.append(pending)
                latest_by_name[name_key] = pending

        return evaluated

    def run(
        self,
        session: Session,
        events: Sequence[WasmStateEvent],
        code_ids: Optional[dict[str, Optional[int]]] = None
    ) -> list[Transformation]:
        """Evaluate the batch and upsert the results in the given session."""
        if not events or not len(self.registry):
            return []

        evaluated = self.evaluate(events, code_ids)
        if not evaluated:
            return []

        transformations = [
            Transformation(
                contract_address=pending.contract_address,
                block_height=pending.block_height,
                block_time_unix_ms=pending.block_time_unix_ms,
                name=pending.name,
                value=pending.value,
                code_id=(code_ids or {}).get(pending.contract_address)
            )
            for pending in evaluated
        ]
        self.store.upsert(session, transformations)
        logger.debug(f"Transformed {len(events)} events into {len(transformations)} transformations")
        return transformations
