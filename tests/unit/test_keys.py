"""
Test suite for the storage key codec

Covers nested key encoding, map prefixes, decoding with explicit part types
and the base64 conversions used at ingestion.
"""

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from stateindex.core.keys import (
    KeyDecodeError,
    KeyEncodeError,
    base64_key_to_event_key,
    bytes_to_event_key,
    decode_keys,
    decode_keys_advanced,
    encode_keys,
    encode_map_prefix,
    event_key_to_base64,
    event_key_to_bytes,
    key_to_bytes,
)

key_parts = st.one_of(st.text(max_size=40), st.integers(min_value=0, max_value=2**64 - 1))
non_empty_key_parts = st.one_of(st.text(min_size=1, max_size=40), st.integers(min_value=0, max_value=2**64 - 1))
# The autouse environment fixture is function scoped and unrelated to the codec
codec_settings = settings(suppress_health_check=[HealthCheck.function_scoped_fixture])


def test_single_part_is_raw_bytes():
    """Test a lone key part is appended without a length prefix"""
    assert encode_keys("config") == "99,111,110,102,105,103"


def test_namespaces_are_length_prefixed():
    """Test every part but the last carries a 2-byte big-endian length"""
    assert encode_keys("balance", "ab") == "0,7,98,97,108,97,110,99,101,97,98"
    assert event_key_to_bytes(encode_keys("a", "b", "c")) == b"\x00\x01a\x00\x01bc"


def test_integers_are_u64_big_endian():
    """Test numeric parts encode as 8 bytes"""
    assert key_to_bytes(1) == b"\x00" * 7 + b"\x01"
    assert encode_keys("proposals", 258).endswith(",0,0,0,0,0,0,1,2")
    assert key_to_bytes(2 ** 64 - 1) == b"\xff" * 8


def test_bytes_parts_pass_through():
    """Test raw bytes are used as-is"""
    assert encode_keys(b"\x01\x02", b"\xff") == "0,2,1,2,255"


def test_encode_rejects_invalid_parts():
    """Test encoding errors for unsupported or out-of-range parts"""
    with pytest.raises(KeyEncodeError):
        encode_keys()
    with pytest.raises(KeyEncodeError):
        encode_keys(-1)
    with pytest.raises(KeyEncodeError):
        encode_keys(2 ** 64)
    with pytest.raises(KeyEncodeError):
        encode_keys(True)
    with pytest.raises(KeyEncodeError):
        encode_keys(1.5)


def test_map_prefix_selects_only_its_map():
    """Test keys of a map start with its prefix while similarly named maps don't"""
    prefix = encode_map_prefix("balance")
    assert prefix == "0,7,98,97,108,97,110,99,101,"
    assert encode_keys("balance", "alice").startswith(prefix)
    assert not encode_keys("balances", "alice").startswith(prefix)
    # The trailing separator stops a byte from matching a longer byte
    assert not encode_keys("balance").startswith(prefix)


def test_nested_map_prefix():
    """Test multi-part prefixes select entries of nested maps"""
    prefix = encode_map_prefix("allowance", "owner")
    assert encode_keys("allowance", "owner", "spender").startswith(prefix)
    assert not encode_keys("allowance", "other", "spender").startswith(prefix)


def test_decode_keys():
    """Test decoding back into strings and integers"""
    assert decode_keys(encode_keys("proposals", 7), [False, True]) == ["proposals", 7]
    assert decode_keys(encode_keys("ballots", 3, "voter"), [False, True, False]) == ["ballots", 3, "voter"]
    assert decode_keys(encode_keys("config"), [False]) == ["config"]


def test_decode_keys_advanced_bytes():
    """Test the bytes part type"""
    key = encode_keys("raw", b"\x00\xff")
    assert decode_keys_advanced(key, ["string", "bytes"]) == ["raw", b"\x00\xff"]


def test_decode_errors():
    """Test malformed and truncated keys raise KeyDecodeError"""
    # Length prefix claims 5 bytes but only 1 follows
    with pytest.raises(KeyDecodeError):
        decode_keys("0,5,97", [False, False])
    # Not even a full length prefix
    with pytest.raises(KeyDecodeError):
        decode_keys("0", [False, False])
    with pytest.raises(KeyDecodeError):
        decode_keys_advanced(encode_keys("x", b"\x01" * 9), ["string", "number"])
    with pytest.raises(KeyDecodeError):
        decode_keys_advanced(encode_keys("x", ""), ["string", "number"])
    with pytest.raises(KeyDecodeError):
        decode_keys_advanced("1", [])


def test_event_key_to_bytes_validation():
    """Test byte list parsing"""
    assert event_key_to_bytes("") == b""
    assert event_key_to_bytes("0,255") == b"\x00\xff"
    assert bytes_to_event_key(b"\x00\xff") == "0,255"
    with pytest.raises(KeyDecodeError):
        event_key_to_bytes("1,256")
    with pytest.raises(KeyDecodeError):
        event_key_to_bytes("a,b")
    with pytest.raises(KeyDecodeError):
        event_key_to_bytes("1,,2")


def test_base64_conversion():
    """Test conversion between base64 chain keys and stored keys"""
    assert event_key_to_base64(encode_keys("config")) == "Y29uZmln"
    assert base64_key_to_event_key("Y29uZmln") == encode_keys("config")
    with pytest.raises(KeyDecodeError):
        base64_key_to_event_key("not base64!")


@codec_settings
@given(st.lists(key_parts, min_size=1, max_size=5))
def test_encode_decode_round_trip(parts):
    """Property-based test: decoding with the part types recovers the encoded parts"""
    encoded = encode_keys(*parts)
    assert decode_keys(encoded, [isinstance(part, int) for part in parts]) == parts


@codec_settings
@given(st.lists(key_parts, min_size=1, max_size=4), non_empty_key_parts)
def test_map_entries_start_with_map_prefix(names, entry):
    """Property-based test: every non-empty entry key of a map carries the map prefix"""
    assert encode_keys(*names, entry).startswith(encode_map_prefix(*names))


@codec_settings
@given(st.one_of(st.integers(min_value=2**64), st.integers(max_value=-1)))
def test_out_of_range_integers_rejected(value):
    """Property-based test: integers outside the u64 range cannot be encoded"""
    with pytest.raises(KeyEncodeError):
        encode_keys(value)
    with pytest.raises(KeyEncodeError):
        encode_keys("namespace", value)
