"""
Test suite for the formula registry and the shipped formulas
"""

import pytest

from stateindex.core.compute import compute
from stateindex.core.types import Block, Formula
from stateindex.formulas.cw20 import (
    AtHeight,
    AtTime,
    Never,
    expiration_to_json,
    is_expired,
    parse_expiration,
)
from stateindex.formulas.registry import FormulaNotFoundError, FormulaRegistry

TOKEN = "juno1token"
DAO = "juno1dao"


@pytest.fixture
def evaluate(stores, settings, block_at):
    registry = FormulaRegistry()

    def _evaluate(name, target, args=None, height=100):
        return compute(stores, settings, registry.get(name), target, args, block_at(height)).value
    return _evaluate


def test_registry_names():
    """Test shipped formula identifiers"""
    registry = FormulaRegistry()
    names = list(registry.names())
    for name in ("item", "map", "blockHeight", "cw20/balance", "cw20/allowance", "daoCore/config"):
        assert name in names
    assert "cw20/balance" in registry
    assert registry.get("blockHeight").dynamic
    assert registry.get("cw20/allowance").dynamic
    assert not registry.get("item").dynamic


def test_registry_unknown_formula():
    """Test unknown identifiers raise FormulaNotFoundError"""
    registry = FormulaRegistry({})
    with pytest.raises(FormulaNotFoundError) as exc_info:
        registry.get("nope")
    assert isinstance(exc_info.value, KeyError)
    assert exc_info.value.name == "nope"
    assert str(exc_info.value) == "Formula 'nope' not found"


def test_registry_register():
    """Test custom formulas can be registered"""
    registry = FormulaRegistry({})
    formula = Formula(lambda env, args: 1)
    registry.register("one", formula)
    assert registry.get("one") is formula
    assert list(registry.names()) == ["one"]


def test_parse_expiration():
    """Test the on-chain expiration encodings"""
    assert parse_expiration({"at_height": 10}) == AtHeight(10)
    assert parse_expiration({"at_time": "1000000000"}) == AtTime(1_000_000_000)
    assert parse_expiration({"never": {}}) == Never()
    for invalid in ({}, {"soon": 1}, "never", {"at_height": 1, "never": {}}):
        with pytest.raises(ValueError):
            parse_expiration(invalid)


def test_expiration_to_json():
    assert expiration_to_json(AtHeight(5)) == {"at_height": 5}
    assert expiration_to_json(AtTime(7)) == {"at_time": "7"}
    assert expiration_to_json(Never()) == {"never": {}}


def test_is_expired():
    """Test expiry against block height and block time"""
    block = Block(100, 5_000)
    assert is_expired(AtHeight(100), block)
    assert not is_expired(AtHeight(101), block)
    assert is_expired(AtTime(5_000 * 1_000_000), block)
    assert not is_expired(AtTime(5_001 * 1_000_000), block)
    assert not is_expired(Never(), block)


def test_generic_item_and_map(evaluate, make_event, put_events):
    """Test item reads with string and numeric keys, and map reads"""
    put_events(
        make_event(TOKEN, 10, "config", {"a": 1}),
        make_event(TOKEN, 10, ["proposals", 3], {"id": 3}),
        make_event(TOKEN, 10, ["balance", "alice"], "5"),
    )
    assert evaluate("item", TOKEN, {"key": "config"}) == {"a": 1}
    assert evaluate("item", TOKEN, {"key": ["proposals", "3"], "numeric": True}) == {"id": 3}
    assert evaluate("map", TOKEN, {"name": "balance"}) == {"alice": "5"}
    assert evaluate("map", TOKEN, {"name": "proposals", "keyType": "number"}) == {3: {"id": 3}}
    assert evaluate("map", TOKEN, {"name": "missing"}) == {}
    with pytest.raises(ValueError):
        evaluate("item", TOKEN, {})


def test_generic_dates(evaluate, make_event, put_events, block_at):
    """Test key dates are returned in unix milliseconds"""
    put_events(make_event(TOKEN, 10, "config", 1), make_event(TOKEN, 20, "config", 2))
    assert evaluate("keyFirstSetAt", TOKEN, {"key": "config"}) == block_at(10).time_unix_ms
    assert evaluate("keyModifiedAt", TOKEN, {"key": "config"}) == block_at(20).time_unix_ms
    assert evaluate("keyModifiedAt", TOKEN, {"key": "missing"}) is None


def test_block_height(evaluate):
    assert evaluate("blockHeight", TOKEN, height=77) == 77


def test_cw20_balance_and_token_info(evaluate, make_event, put_events):
    """Test balances default to zero"""
    put_events(
        make_event(TOKEN, 10, "token_info", {"name": "Token", "symbol": "TKN", "decimals": 6}),
        make_event(TOKEN, 10, ["balance", "juno1alice"], "100"),
    )
    assert evaluate("cw20/balance", TOKEN, {"address": "juno1alice"}) == "100"
    assert evaluate("cw20/balance", TOKEN, {"address": "juno1bob"}) == "0"
    assert evaluate("cw20/balance", TOKEN, {"address": "juno1alice"}, height=5) == "0"
    assert evaluate("cw20/tokenInfo", TOKEN)["symbol"] == "TKN"
    with pytest.raises(ValueError):
        evaluate("cw20/balance", TOKEN, {})


def test_cw20_allowance_expiry(evaluate, make_event, put_events):
    """Test allowances read as zero once expired"""
    put_events(make_event(
        TOKEN, 10, ["allowance", "juno1owner", "juno1spender"],
        {"allowance": "50", "expires": {"at_height": 20}}
    ))
    args = {"owner": "juno1owner", "spender": "juno1spender"}

    assert evaluate("cw20/allowance", TOKEN, args, height=15) == {
        "allowance": "50", "expires": {"at_height": 20}
    }
    assert evaluate("cw20/allowance", TOKEN, args, height=20)["allowance"] == "0"
    assert evaluate("cw20/allowance", TOKEN, {"owner": "juno1owner", "spender": "juno1other"}) == {
        "allowance": "0", "expires": {"never": {}}
    }


def test_dao_formulas(evaluate, make_event, put_events, make_transformation, put_transformations):
    """Test DAO formulas over transformations, with a raw storage fallback"""
    put_transformations(
        make_transformation(DAO, 10, "config", {"name": "DAO"}, code_id=1),
        make_transformation(DAO, 10, "proposalModule:juno1b", {"address": "juno1b"}),
        make_transformation(DAO, 11, "proposalModule:juno1a", {"address": "juno1a"}),
        make_transformation("juno1proposals", 12, "proposalCount", 4),
    )
    assert evaluate("daoCore/config", DAO) == {"name": "DAO"}
    assert evaluate("daoCore/proposalModules", DAO) == [{"address": "juno1a"}, {"address": "juno1b"}]
    assert evaluate("daoProposal/proposalCount", "juno1proposals") == 4
    assert evaluate("daoProposal/proposalCount", "juno1proposals", height=5) == 0

    put_events(make_event("juno1olddao", 10, "config", {"name": "Old"}))
    assert evaluate("daoCore/config", "juno1olddao") == {"name": "Old"}
