"""
Formulas: read-only queries over historical contract state.
"""

from stateindex.formulas.registry import FormulaNotFoundError, FormulaRegistry, default_formulas

__all__ = [
    "FormulaNotFoundError",
    "FormulaRegistry",
    "default_formulas",
]
