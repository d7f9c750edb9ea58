"""Composite key codec for Chromium IndexedDB LevelDB keys.

A key is read as three base-128 varints (database id, object store id,
index id) followed by the user-key region. The user key has no
self-describing type, so it is interpreted by a fixed priority:

1. UTF-8 text, when the region is non-empty and does not start with 0x00
2. A big-endian IEEE-754 double, when the region is exactly 8 bytes
3. Raw bytes

Decoding never raises and never reads past the end of the buffer. A
varint cut off by the end of the buffer yields its partial value and
marks the key incomplete.
"""

from __future__ import annotations

import struct
from typing import Optional, Tuple, Union

from .exceptions import KeyDecodeError
from .models import CompositeKey, UserKey, UserKeyKind

DOUBLE_SIZE = 8
_KEY_FIELDS = 3


def read_varint(buffer: bytes, offset: int = 0) -> Tuple[int, int, bool]:
    """Read one little-endian base-128 varint.

    Args:
        buffer: Bytes to read from
        offset: Position of the first byte of the varint

    Returns:
        Tuple of (value, offset after the varint, terminated). ``terminated``
        is False when the buffer ended before a byte with the high bit clear.
    """
    value = 0
    shift = 0
    length = len(buffer)
    while offset < length:
        byte = buffer[offset]
        offset += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset, True
        shift += 7
    return value, offset, False


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as a little-endian base-128 varint."""
    if value < 0:
        raise ValueError(f"varint value must be non-negative, got {value}")

    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_user_key(remainder: bytes) -> Optional[UserKey]:
    """Interpret the bytes after the three identifiers.

    Returns:
        The decoded key, or None if there are no bytes left
    """
    if not remainder:
        return None

    if remainder[0] != 0:
        try:
            return UserKey(kind=UserKeyKind.TEXT, value=remainder.decode("utf-8"))
        except UnicodeDecodeError:
            pass

    if len(remainder) == DOUBLE_SIZE:
        (number,) = struct.unpack(">d", remainder)
        return UserKey(kind=UserKeyKind.NUMBER, value=number)

    return UserKey(kind=UserKeyKind.BYTES, value=bytes(remainder))


def decode_key(raw_key: bytes) -> CompositeKey:
    """Decode a raw LevelDB key into a CompositeKey.

    Args:
        raw_key: The key bytes exactly as stored in the source LevelDB

    Returns:
        The decoded key. ``complete`` is False if any identifier was cut off,
        in which case the remaining identifiers are 0 and the user key is None.
    """
    raw_key = bytes(raw_key)
    fields = [0] * _KEY_FIELDS
    offset = 0

    for index in range(_KEY_FIELDS):
        value, offset, terminated = read_varint(raw_key, offset)
        fields[index] = value
        if not terminated:
            return CompositeKey(
                database_id=fields[0],
                object_store_id=fields[1],
                index_id=fields[2],
                complete=False,
            )

    remainder = raw_key[offset:]
    return CompositeKey(
        database_id=fields[0],
        object_store_id=fields[1],
        index_id=fields[2],
        user_key=decode_user_key(remainder),
        raw_user_key=remainder,
    )


def encode_user_key(user_key: Union[str, float, bytes, None]) -> bytes:
    """Encode a user key the way decode_user_key reads it back."""
    if user_key is None:
        return b""
    if isinstance(user_key, str):
        return user_key.encode("utf-8")
    if isinstance(user_key, (bytes, bytearray)):
        return bytes(user_key)
    return struct.pack(">d", float(user_key))


def encode_key(
    database_id: int,
    object_store_id: int,
    index_id: int = 0,
    user_key: Union[str, float, bytes, None] = None,
) -> bytes:
    """Build a raw composite key from its parts."""
    return (
        encode_varint(database_id)
        + encode_varint(object_store_id)
        + encode_varint(index_id)
        + encode_user_key(user_key)
    )


class KeyCodec:
    """Injectable wrapper around the module-level key functions.

    With ``strict`` set, decode raises KeyDecodeError for truncated keys
    instead of returning them marked incomplete.
    """

    def __init__(self, strict: bool = False) -> None:
        self.strict = strict

    def decode(self, raw_key: bytes) -> CompositeKey:
        key = decode_key(raw_key)
        if self.strict and not key.complete:
            raise KeyDecodeError(f"Truncated key: {bytes(raw_key)[:20].hex()}")
        return key

    def encode(
        self,
        database_id: int,
        object_store_id: int,
        index_id: int = 0,
        user_key: Union[str, float, bytes, None] = None,
    ) -> bytes:
        return encode_key(database_id, object_store_id, index_id, user_key)
