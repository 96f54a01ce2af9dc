"""
Pytest configuration for StateIndex.

Ensures project root is on sys.path so test imports like `import stateindex`
resolve correctly during test collection, and provides a throwaway SQLite
database per test.
"""

import json
import os
import sys
import pytest

# Compute project root (parent of this tests directory)
_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from stateindex.config.settings import Settings
from stateindex.core.keys import encode_keys
from stateindex.core.types import Block, Transformation, WasmStateEvent
from stateindex.indexer import StateIndexer
from stateindex.storage.sql_backend import SqlStorageBackend
from stateindex.storage.stores import Stores

CODE_IDS = {
    "dao-core": [1],
    "dao-proposal-single": [2],
    "dao-proposal-multiple": [5],
    "cw20-base": [3],
}

BASE_TIME_MS = 1_700_000_000_000


def _block_at(height: int) -> Block:
    """Block with a deterministic time derived from its height."""
    return Block(height, BASE_TIME_MS + height * 1000)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep host environment variables from leaking into Settings."""
    for name in ("DATABASE_URL", "DATABASE_ECHO", "CHAIN_ID", "INVALIDATION_EXTEND_LATEST",
                 "BULK_CHUNK_SIZE", "LOG_LEVEL", "LOG_FORMAT", "CODE_IDS", "CODE_IDS_FILE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'stateindex.db'}",
        CHAIN_ID="testchain-1",
        CODE_IDS={key: list(code_ids) for key, code_ids in CODE_IDS.items()},
        LOG_LEVEL="WARNING"
    )


@pytest.fixture
def backend(settings):
    backend = SqlStorageBackend(settings.DATABASE_URL, chunk_size=settings.BULK_CHUNK_SIZE)
    yield backend
    backend.close()


@pytest.fixture
def stores(backend):
    return Stores.from_backend(backend)


@pytest.fixture
def indexer(settings):
    indexer = StateIndexer(settings).open()
    yield indexer
    indexer.close()


@pytest.fixture
def make_event():
    """Build a storage event from key parts and a JSON-serializable value."""
    def _make(contract_address, height, keys, value=None, delete=False):
        parts = keys if isinstance(keys, (list, tuple)) else [keys]
        return WasmStateEvent(
            contract_address=contract_address,
            block_height=height,
            block_time_unix_ms=_block_at(height).time_unix_ms,
            key=encode_keys(*parts),
            value=None if delete else json.dumps(value),
            delete=delete
        )
    return _make


@pytest.fixture
def raw_event():
    """Build a raw ingestion payload from key parts and a JSON-serializable value."""
    def _raw(contract_address, height, keys, value=None, delete=False, code_id=None):
        parts = keys if isinstance(keys, (list, tuple)) else [keys]
        return {
            "contract_address": contract_address,
            "block_height": height,
            "block_time_unix_ms": _block_at(height).time_unix_ms,
            "key": encode_keys(*parts),
            "value": None if delete else json.dumps(value),
            "delete": delete,
            "code_id": code_id,
        }
    return _raw


@pytest.fixture
def put_events(stores):
    """Write events straight to storage, bypassing transformers and invalidation."""
    def _put(*events):
        with stores.backend.session_scope() as session:
            stores.events.upsert(session, list(events))
            latest = max(events, key=lambda event: event.block_height)
            stores.backend.update_state(session, "testchain-1", latest.block)
    return _put


@pytest.fixture
def put_transformations(stores):
    """Write transformations straight to storage, registering code ids when given."""
    def _put(*transformations):
        code_ids = {}
        for transformation in transformations:
            if code_ids.get(transformation.contract_address) is None:
                code_ids[transformation.contract_address] = transformation.code_id
        with stores.backend.session_scope() as session:
            stores.contracts.ensure(session, code_ids)
            stores.transformations.upsert(session, list(transformations))
    return _put


@pytest.fixture
def make_transformation():
    def _make(contract_address, height, name, value, code_id=None):
        return Transformation(
            contract_address=contract_address,
            block_height=height,
            block_time_unix_ms=_block_at(height).time_unix_ms,
            name=name,
            value=value,
            code_id=code_id
        )
    return _make


@pytest.fixture
def block_at():
    """Block factory with deterministic times."""
    return _block_at
