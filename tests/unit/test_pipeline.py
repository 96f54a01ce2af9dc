"""
Test suite for transformers and the transformation pipeline

Covers filter resolution against the code-id registry, sequential evaluation
with previous values inside one batch, deletes, skipping and error handling,
plus the shipped DAO and proposal transformers.
"""

import logging

import pytest

from stateindex.core.keys import encode_keys
from stateindex.transformers.pipeline import TransformationPipeline
from stateindex.transformers.registry import TransformerRegistry
from stateindex.transformers.types import UNSET, Transformer, TransformerFilter
from stateindex.transformers.utils import make_transformer, make_transformer_for_map_list

CONTRACT = "juno1contract"


def _counter(code_ids_keys="any"):
    """Counts events on the "tick" key using the previous value."""
    return Transformer(
        filter=TransformerFilter(code_ids_keys=code_ids_keys, matches=lambda event: event.key == encode_keys("tick")),
        name="counter",
        get_value=lambda event, get_last_value: (get_last_value() or 0) + 1
    )


@pytest.fixture
def make_pipeline(settings, stores):
    def _make(*transformers):
        registry = TransformerRegistry(settings, list(transformers) if transformers else None)
        return TransformationPipeline(registry, stores.transformations)
    return _make


@pytest.fixture
def run(stores):
    def _run(pipeline, events, code_ids=None):
        with stores.backend.session_scope() as session:
            return pipeline.run(session, events, code_ids or {CONTRACT: 1})
    return _run


def test_filter_requires_a_constraint():
    """Test an unconstrained filter is rejected"""
    with pytest.raises(ValueError):
        TransformerFilter()


def test_registry_code_id_resolution(settings, make_event):
    """Test code-id keys resolve through settings"""
    registry = TransformerRegistry(settings, [])
    event = make_event(CONTRACT, 1, "tick", 1)

    assert registry.applies(_counter(["dao-core"]), event, 1)
    assert not registry.applies(_counter(["dao-core"]), event, 3)
    assert not registry.applies(_counter(["dao-core"]), event, None)
    # Keys that resolve to nothing never match
    assert not registry.applies(_counter(["unregistered"]), event, 1)
    assert registry.applies(_counter("any"), event, None)


def test_registry_contract_addresses_and_failing_predicate(settings, make_event, caplog):
    """Test address filters and predicates that raise"""
    registry = TransformerRegistry(settings, [])
    event = make_event(CONTRACT, 1, "tick", 1)

    by_address = Transformer(TransformerFilter(contract_addresses=[CONTRACT]), "x", lambda e, last: 1)
    assert registry.applies(by_address, event, None)
    assert not registry.applies(by_address, make_event("juno1other", 1, "tick", 1), None)

    def explode(event):
        raise RuntimeError("boom")

    failing = Transformer(TransformerFilter(matches=explode), "x", lambda e, last: 1)
    with caplog.at_level(logging.ERROR):
        assert not registry.applies(failing, event, None)
    assert "boom" in caplog.text


def test_sequential_previous_values_within_batch(make_pipeline, run, make_event):
    """Test each item sees the value produced by the previous item in the same batch"""
    pipeline = make_pipeline(_counter())
    transformations = run(pipeline, [
        make_event(CONTRACT, 1, "tick", "a"),
        make_event(CONTRACT, 2, "tick", "b"),
        make_event(CONTRACT, 3, "tick", "c"),
    ])
    assert [(t.block_height, t.value) for t in transformations] == [(1, 1), (2, 2), (3, 3)]


def test_previous_value_from_store(make_pipeline, run, make_event, stores):
    """Test the previous value falls back to stored transformations"""
    pipeline = make_pipeline(_counter())
    run(pipeline, [make_event(CONTRACT, 1, "tick", "a"), make_event(CONTRACT, 2, "tick", "b")])

    transformations = run(pipeline, [make_event(CONTRACT, 5, "tick", "c")])
    assert [t.value for t in transformations] == [3]
    assert stores.transformations.find_previous(CONTRACT, "counter", 6).value == 3


def test_same_name_and_height_keeps_later_value(make_pipeline, run, make_event):
    """Test two items for one (contract, name, height) collapse into the later one"""
    transformer = make_transformer("any", "setting", ["setting", "setting_v2"])
    pipeline = make_pipeline(transformer)

    transformations = run(pipeline, [
        make_event(CONTRACT, 4, "setting", "first"),
        make_event(CONTRACT, 4, "setting_v2", "second"),
    ])
    assert [(t.name, t.value) for t in transformations] == [("setting", "second")]


def test_delete_yields_null(make_pipeline, run, make_event):
    """Test deletes produce null values unless the transformer handles them"""
    pipeline = make_pipeline(make_transformer("any", "admin"))
    transformations = run(pipeline, [
        make_event(CONTRACT, 1, "admin", "juno1admin"),
        make_event(CONTRACT, 2, "admin", delete=True),
    ])
    assert [t.value for t in transformations] == ["juno1admin", None]


def test_null_value_is_not_a_delete(make_pipeline, run, make_event):
    """Test a stored JSON null becomes an empty string"""
    pipeline = make_pipeline(make_transformer("any", "admin"))
    transformations = run(pipeline, [make_event(CONTRACT, 1, "admin", None)])
    assert transformations[0].value == ""


def test_unset_skips(make_pipeline, run, make_event):
    """Test UNSET values are not saved"""
    only_even = Transformer(
        filter=TransformerFilter(code_ids_keys="any", matches=lambda event: event.key == encode_keys("n")),
        name="even",
        get_value=lambda event, last: event.value_json if event.value_json % 2 == 0 else UNSET
    )
    transformations = run(make_pipeline(only_even), [
        make_event(CONTRACT, 1, "n", 1),
        make_event(CONTRACT, 2, "n", 2),
    ])
    assert [(t.block_height, t.value) for t in transformations] == [(2, 2)]


def test_errors_skip_item(make_pipeline, run, make_event, caplog):
    """Test a failing value function is logged and skipped"""
    def get_value(event, last):
        if event.block_height == 2:
            raise ValueError("bad value")
        return event.value_json

    transformer = Transformer(
        filter=TransformerFilter(code_ids_keys="any", matches=lambda event: True),
        name="value",
        get_value=get_value
    )
    with caplog.at_level(logging.ERROR):
        transformations = run(make_pipeline(transformer), [
            make_event(CONTRACT, 1, "k", 1),
            make_event(CONTRACT, 2, "k", 2),
            make_event(CONTRACT, 3, "k", 3),
        ])
    assert [t.block_height for t in transformations] == [1, 3]
    assert "bad value" in caplog.text


def test_map_list_transformer(make_pipeline, run, make_event):
    """Test set-style maps fold into a list, removing deleted keys"""
    transformer = make_transformer_for_map_list("any", "members", "members")
    transformations = run(make_pipeline(transformer), [
        make_event(CONTRACT, 1, ["members", "alice"], {}),
        make_event(CONTRACT, 2, ["members", "bob"], {}),
        make_event(CONTRACT, 3, ["members", "alice"], delete=True),
    ])
    assert [t.value for t in transformations] == [["alice"], ["alice", "bob"], ["bob"]]


def test_dao_core_transformers(make_pipeline, run, make_event):
    """Test the shipped DAO core transformers"""
    pipeline = make_pipeline()
    transformations = run(pipeline, [
        make_event(CONTRACT, 1, "config_v2", {"name": "DAO"}),
        make_event(CONTRACT, 1, "paused", {"expiration": {"never": {}}}),
        make_event(CONTRACT, 2, ["proposal_modules", "juno1v1"], {}),
        make_event(CONTRACT, 3, ["proposal_modules_v2", "juno1v2"], {"address": "juno1v2", "prefix": "B"}),
        make_event(CONTRACT, 4, ["items", "website"], "https://example.org"),
    ], {CONTRACT: 1})

    by_name = {t.name: t.value for t in transformations}
    assert by_name["config"] == {"name": "DAO"}
    assert by_name["paused"] == {"expiration": {"never": {}}}
    assert by_name["proposalModule:juno1v1"] == {"address": "juno1v1", "prefix": "", "status": "Enabled"}
    assert by_name["proposalModule:juno1v2"] == {"address": "juno1v2", "prefix": "B"}
    assert by_name["item:website"] == "https://example.org"


def test_dao_transformers_ignore_other_code_ids(make_pipeline, run, make_event):
    """Test contracts outside the registered code ids are not transformed"""
    transformations = run(make_pipeline(), [make_event(CONTRACT, 1, "config_v2", {"name": "DAO"})], {CONTRACT: 3})
    assert transformations == []


def test_proposal_transformers(make_pipeline, run, make_event):
    """Test proposals, proposers, votes and the running proposal count"""
    proposal_module = "juno1proposals"
    pipeline = make_pipeline()
    transformations = run(pipeline, [
        make_event(proposal_module, 10, ["proposals", 1], {"proposer": "juno1alice", "status": "open"}),
        make_event(proposal_module, 11, ["ballots", 1, "juno1bob"], {"vote": "yes"}),
        make_event(proposal_module, 12, ["proposals_v2", 2], {"proposer": "juno1bob", "status": "open"}),
        make_event(proposal_module, 13, ["proposals", 1], {"proposer": "juno1alice", "status": "passed"}),
    ], {proposal_module: 2})

    names = [(t.name, t.block_height) for t in transformations]
    assert ("proposal:1", 10) in names
    assert ("proposed:juno1alice:1", 10) in names
    assert ("proposed:juno1bob:2", 12) in names
    assert ("voteCast:juno1bob:1", 11) in names
    # A status change is not a new proposal
    assert ("proposed:juno1alice:1", 13) not in names

    counts = [(t.block_height, t.value) for t in transformations if t.name == "proposalCount"]
    assert counts == [(10, 1), (12, 2), (13, 2)]

    vote = next(t.value for t in transformations if t.name == "voteCast:juno1bob:1")
    assert vote["proposalId"] == 1
    assert vote["voter"] == "juno1bob"
    assert vote["vote"] == {"vote": "yes"}


def test_evaluate_without_saving(make_pipeline, make_event, stores):
    """Test evaluate computes pending transformations without writing them"""
    pipeline = make_pipeline(_counter())
    pending = pipeline.evaluate([make_event(CONTRACT, 1, "tick", 1)], {CONTRACT: None})
    assert [(p.name, p.value) for p in pending] == [("counter", 1)]
    assert stores.transformations.find_previous(CONTRACT, "counter", 10) is None
