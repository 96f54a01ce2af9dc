"""
StateIndex: a historical state indexer for smart-contract chains

StateIndex ingests contract storage mutations, derives named transformations from them, and serves
memoized, block-height-aware formula queries over historical on-chain state.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh.readlines() if line.strip() and not line.startswith("#")]

# Get version from the package
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '.'))
from stateindex.units.version import get_version
from stateindex import VERSION

setup(
    name="stateindex",
    version=get_version(VERSION),
    description="Historical state indexer with memoized formula queries",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=['stateindex', 'stateindex.*'], exclude=['tests*']),
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0", "hypothesis>=6.0"],
    },
    python_requires=">=3.10",
    classifiers=[
        "Development Status :: 2 - Pre-Alpha",
        "Intended Audience :: Developers",
        "Topic :: Database :: Database Engines/Servers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="indexer, blockchain, cosmwasm, state, cache",
)
