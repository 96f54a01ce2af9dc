"""
Test suite for the SQL storage backend

Covers transactional session scopes and the block lookups used to step
through ranges.
"""

import pytest

from stateindex.core.types import Block

CONTRACT = "juno1contract"


def test_nested_scope_joins_outer_transaction(backend, stores, make_event):
    """Test a store call inside an open scope neither commits nor closes it"""
    event = make_event(CONTRACT, 10, "count", 1)
    with pytest.raises(RuntimeError):
        with backend.session_scope() as session:
            stores.events.upsert(session, [event])
            # find_latest opens and leaves its own scope on the same session
            latest = stores.events.find_latest(CONTRACT, event.key, 10)
            assert latest is not None and latest.value_json == 1
            assert session.is_active
            raise RuntimeError("abort")

    assert stores.events.find_latest(CONTRACT, event.key, 10) is None


def test_outer_scope_commits_nested_work(backend, stores, make_event):
    event = make_event(CONTRACT, 10, "count", 1)
    with backend.session_scope() as session:
        stores.events.upsert(session, [event])
        assert stores.events.find_latest(CONTRACT, event.key, 10) is not None
        backend.update_state(session, "testchain-1", event.block)

    assert stores.events.find_latest(CONTRACT, event.key, 10).value_json == 1
    assert backend.get_latest_block() == event.block


def test_get_block_for_height(backend, put_events, make_event, block_at):
    """Test heights resolve to the time of the nearest stored block at or below"""
    assert backend.get_block_for_height(10) is None
    put_events(make_event(CONTRACT, 10, "count", 1), make_event(CONTRACT, 20, "count", 2))

    assert backend.get_block_for_height(5) is None
    assert backend.get_block_for_height(10) == block_at(10)
    assert backend.get_block_for_height(15) == Block(15, block_at(10).time_unix_ms)
    assert backend.get_block_for_height(20) == block_at(20)


def test_block_for_time_lookups(backend, put_events, make_event, block_at):
    """Test time lookups return stored blocks within and after an interval"""
    put_events(
        make_event(CONTRACT, 10, "count", 1),
        make_event(CONTRACT, 12, "count", 2),
        make_event(CONTRACT, 30, "count", 3),
    )
    t10, t12, t30 = (block_at(height).time_unix_ms for height in (10, 12, 30))

    assert backend.get_block_for_time(t12) == block_at(12)
    assert backend.get_block_for_time(t30 - 1, after=t10) == block_at(12)
    assert backend.get_block_for_time(t30 - 1, after=t12) is None
    assert backend.get_block_for_time(t10 - 1) is None
    assert backend.get_next_block_for_time(t12) == block_at(30)
    assert backend.get_next_block_for_time(t30) is None
