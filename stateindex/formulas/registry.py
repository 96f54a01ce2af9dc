"""
Formula registry.

Resolves a formula identifier such as "cw20/balance" to its Formula.
"""

import logging
from typing import Iterable, Optional

from stateindex.core.types import Formula

logger = logging.getLogger(__name__)


class FormulaNotFoundError(KeyError):
    """Raised when a formula identifier is not registered"""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self):
        return f"Formula '{self.name}' not found"


class FormulaRegistry:
    """Maps formula identifiers to formulas."""

    def __init__(self, formulas: Optional[dict[str, Formula]] = None):
        self._formulas: dict[str, Formula] = {}
        if formulas is None:
            formulas = default_formulas()
        for name, formula in formulas.items():
            self.register(name, formula)

    def register(self, name: str, formula: Formula) -> None:
        if name in self._formulas:
            logger.warning(f"Replacing formula '{name}'")
        self._formulas[name] = formula

    def get(self, name: str) -> Formula:
        """
        Resolve a formula.

        Raises:
            FormulaNotFoundError: If nothing is registered under the name
        """
        try:
            return self._formulas[name]
        except KeyError:
            raise FormulaNotFoundError(name) from None

    def names(self) -> Iterable[str]:
        return sorted(self._formulas)

    def __contains__(self, name: str) -> bool:
        return name in self._formulas


def default_formulas() -> dict[str, Formula]:
    """Formulas shipped with the indexer, keyed by identifier."""
    from stateindex.formulas import cw20, dao, generic

    formulas: dict[str, Formula] = {}
    for module, namespace in ((generic, None), (cw20, "cw20"), (dao, None)):
        for name, formula in module.FORMULAS.items():
            formulas[f"{namespace}/{name}" if namespace else name] = formula
    return formulas
