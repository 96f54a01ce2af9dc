"""
Transformers derive named, queryable facts from contract storage events.
"""

from stateindex.transformers.types import UNSET, PendingTransformation, Transformer, TransformerFilter

__all__ = [
    "UNSET",
    "PendingTransformation",
    "Transformer",
    "TransformerFilter",
]
