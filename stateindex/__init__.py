"""
StateIndex
==========

Indexes smart-contract storage mutations into a relational store and serves
memoized, block-height-aware formula queries over historical on-chain state.
"""

from stateindex.units.version import get_version

VERSION = (0, 1, 0, "dev", 1)

__version__ = get_version(VERSION)

__all__ = ["VERSION", "__version__"]
