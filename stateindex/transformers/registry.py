"""
Registry of transformers and the filter that decides which apply to an event.
"""

import logging
from typing import Iterable, Optional

from stateindex.config.settings import Settings
from stateindex.core.types import WasmStateEvent
from stateindex.transformers import dao, proposals
from stateindex.transformers.types import Transformer

logger = logging.getLogger(__name__)


def default_transformers() -> list[Transformer]:
    """Transformers shipped with the indexer."""
    return [*dao.TRANSFORMERS, *proposals.TRANSFORMERS]


class TransformerRegistry:
    """
    Holds transformers and resolves their code-id filters against settings.
    """

    def __init__(self, settings: Settings, transformers: Optional[Iterable[Transformer]] = None):
        self.settings = settings
        self.transformers: list[Transformer] = list(
            default_transformers() if transformers is None else transformers
        )

    def register(self, transformer: Transformer) -> None:
        self.transformers.append(transformer)

    def __len__(self) -> int:
        return len(self.transformers)

    def applies(self, transformer: Transformer, event: WasmStateEvent, code_id: Optional[int]) -> bool:
        """
        Check a transformer's filter against an event.

        Code-id keys other than "any" must resolve to at least one code id that
        includes the event's contract. A predicate that raises does not match.
        """
        event_filter = transformer.filter

        if event_filter.code_ids_keys is not None and event_filter.code_ids_keys != "any":
            code_ids = self.settings.get_code_ids_for_keys(*event_filter.code_ids_keys)
            if code_id is None or code_id not in code_ids:
                return False

        if event_filter.contract_addresses and event.contract_address not in event_filter.contract_addresses:
            return False

        if event_filter.matches is not None:
            try:
                return bool(event_filter.matches(event))
            except Exception as e:
                logger.error(
                    f"Error matching transformer for event "
                    f"{event.block_height}/{event.contract_address}/{event.key}: {e}",
                    exc_info=True
                )
                return False

        return True

    def for_event(self, event: WasmStateEvent, code_id: Optional[int]) -> list[Transformer]:
        return [transformer for transformer in self.transformers if self.applies(transformer, event, code_id)]
