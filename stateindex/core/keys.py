"""
Key codec for contract storage keys.

Contract storage keys are nested tuples: every part but the last is a
namespace prefixed with its 2-byte big-endian length, and the final part is
appended raw. Strings are UTF-8 bytes and integers are 8-byte big-endian.

The database stores the resulting byte sequence as a comma-separated list of
byte values (e.g. "0,6,99,111,110,102,105,103") rather than raw binary, so a
plain textual LIKE 'prefix%' can select every entry of a map.
"""

import base64
import binascii
from typing import Literal, Sequence, Union

KeyInput = Union[str, int, bytes]
KeyInputType = Literal["string", "number", "bytes"]

MAX_UINT64 = 2 ** 64 - 1
MAX_NAMESPACE_LENGTH = 2 ** 16 - 1


class KeyCodecError(ValueError):
    """Base class for key encoding and decoding failures"""
    pass


class KeyEncodeError(KeyCodecError):
    """Raised when a key part cannot be encoded"""
    pass


class KeyDecodeError(KeyCodecError):
    """Raised when an encoded key is malformed or truncated"""
    pass


def key_to_bytes(key: KeyInput) -> bytes:
    """
    Convert a single key part to bytes.

    Args:
        key: String, unsigned 64-bit integer or raw bytes

    Returns:
        Encoded bytes for the part

    Raises:
        KeyEncodeError: If the part has an unsupported type or the integer is out of range
    """
    if isinstance(key, str):
        return key.encode("utf-8")
    if isinstance(key, (bytes, bytearray, memoryview)):
        return bytes(key)
    if isinstance(key, bool) or not isinstance(key, int):
        raise KeyEncodeError(f"Unsupported key part type: {type(key).__name__}")
    if key < 0 or key > MAX_UINT64:
        raise KeyEncodeError(f"Integer key part out of range [0, 2^64-1]: {key}")
    return key.to_bytes(8, "big")


def bytes_to_event_key(data: bytes) -> str:
    """Render bytes as the comma-separated byte list stored in the database."""
    return ",".join(str(byte) for byte in data)


def event_key_to_bytes(key: str) -> bytes:
    """
    Parse a comma-separated byte list back into bytes.

    Raises:
        KeyDecodeError: If any element is not an integer in [0, 255]
    """
    if key == "":
        return b""

    values = []
    for part in key.split(","):
        if not (part.isascii() and part.isdigit()):
            raise KeyDecodeError(f"Invalid byte value '{part}' in key '{key}'")
        value = int(part)
        if value > 255:
            raise KeyDecodeError(f"Byte value out of range: {value}")
        values.append(value)
    return bytes(values)


def encode_keys(*keys: KeyInput) -> str:
    """
    Encode a tuple of key parts into the nested storage key format.

    Args:
        *keys: Key parts; all but the last are length-prefixed namespaces

    Returns:
        Comma-separated byte list

    Raises:
        KeyEncodeError: If no parts are given or a part cannot be encoded
    """
    if not keys:
        raise KeyEncodeError("At least one key part is required")

    buffers = [key_to_bytes(key) for key in keys]
    data = bytearray()
    for namespace in buffers[:-1]:
        if len(namespace) > MAX_NAMESPACE_LENGTH:
            raise KeyEncodeError(f"Namespace too long: {len(namespace)} bytes")
        data += len(namespace).to_bytes(2, "big")
        data += namespace
    data += buffers[-1]

    return bytes_to_event_key(bytes(data))


def encode_map_prefix(*names: KeyInput) -> str:
    """
    Encode the prefix shared by every entry of a map.

    An empty final part turns the names into length-prefixed namespaces, and
    the trailing separator keeps "1,2" from matching "1,23".
    """
    return encode_keys(*names, "") + ","


def _decode_part(data: bytes, key_type: KeyInputType) -> KeyInput:
    if key_type == "string":
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise KeyDecodeError(f"Key part is not valid UTF-8: {e}") from e
    if key_type == "number":
        if len(data) == 0:
            raise KeyDecodeError("Numeric key part is empty")
        if len(data) > 8:
            raise KeyDecodeError(f"Numeric key part exceeds 64 bits: {len(data)} bytes")
        return int.from_bytes(data, "big")
    if key_type == "bytes":
        return bytes(data)
    raise KeyDecodeError(f"Unknown key part type: {key_type}")


def decode_keys_advanced(key: str, types: Sequence[KeyInputType]) -> list[KeyInput]:
    """
    Decode an encoded key into its parts using an explicit type per part.

    Args:
        key: Comma-separated byte list
        types: One of "string", "number" or "bytes" per encoded part

    Returns:
        Decoded key parts

    Raises:
        KeyDecodeError: On malformed length prefixes, truncated input or bad part values
    """
    if not types:
        raise KeyDecodeError("At least one key part type is required")

    data = event_key_to_bytes(key)
    parts: list[KeyInput] = []
    offset = 0
    for key_type in types[:-1]:
        if offset + 2 > len(data):
            raise KeyDecodeError(f"Truncated length prefix at byte {offset} in key '{key}'")
        length = int.from_bytes(data[offset:offset + 2], "big")
        offset += 2
        if offset + length > len(data):
            raise KeyDecodeError(
                f"Namespace length {length} at byte {offset - 2} exceeds key length {len(data)}"
            )
        parts.append(_decode_part(data[offset:offset + length], key_type))
        offset += length

    parts.append(_decode_part(data[offset:], types[-1]))
    return parts


def decode_keys(key: str, with_numeric_keys: Sequence[bool]) -> list[Union[str, int]]:
    """
    Decode an encoded key into strings and integers.

    Args:
        key: Comma-separated byte list
        with_numeric_keys: Whether each part is numeric (True) or a string (False)

    Returns:
        Decoded key parts
    """
    return decode_keys_advanced(
        key, ["number" if numeric else "string" for numeric in with_numeric_keys]
    )


def base64_key_to_event_key(key: str) -> str:
    """Convert a base64 chain key to the comma-separated database format."""
    try:
        return bytes_to_event_key(base64.b64decode(key, validate=True))
    except binascii.Error as e:
        raise KeyDecodeError(f"Invalid base64 key '{key}': {e}") from e


def event_key_to_base64(key: str) -> str:
    """Convert a comma-separated database key to base64."""
    return base64.b64encode(event_key_to_bytes(key)).decode("ascii")
