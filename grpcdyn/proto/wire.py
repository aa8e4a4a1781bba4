"""Protobuf wire format primitives.

Varints, zigzag and fixed-width scalars, plus the two cursors the codec
works with: ``WireReader`` over an immutable buffer (with one-tag
lookahead for map runs) and ``WireWriter`` over a growing bytearray.
"""

import struct
from collections import deque
from enum import IntEnum

MAX_FIELD_NUMBER = 0x1FFFFFFF

_MASK32 = 0xFFFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF


class CodecError(RuntimeError):
    """Base exception for per-call codec failures."""


class DecodeError(CodecError):
    """Raised when wire bytes cannot be decoded against a schema."""


class EncodeError(CodecError):
    """Raised when a dynamic value cannot be encoded against a schema."""


class WireType(IntEnum):
    """Wire types as stored in the low three bits of a tag."""

    VARINT = 0
    FIXED64 = 1
    LENGTH_DELIMITED = 2
    START_GROUP = 3
    END_GROUP = 4
    FIXED32 = 5


def make_tag(number: int, wire_type: WireType) -> int:
    """Create a tag from a field number and wire type."""
    if not 1 <= number <= MAX_FIELD_NUMBER:
        raise ValueError(f"Invalid field number {number}")
    return (number << 3) | int(wire_type)


def tag_number(tag: int) -> int:
    return tag >> 3


def tag_wire_type(tag: int) -> int:
    return tag & 0x07


def end_group_tag(start_tag: int) -> int:
    """Return the END_GROUP tag matching a START_GROUP tag."""
    return make_tag(tag_number(start_tag), WireType.END_GROUP)


def encode_varint(value: int) -> bytes:
    """Encode an integer as a varint. Negatives are sign-extended to 64 bits."""
    if value < 0:
        value &= _MASK64
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def varint_size(value: int) -> int:
    """Number of bytes ``encode_varint`` produces for value."""
    if value < 0:
        return 10
    size = 1
    while value > 0x7F:
        value >>= 7
        size += 1
    return size


def zigzag_encode(value: int, bits: int) -> int:
    return ((value << 1) ^ (value >> (bits - 1))) & ((1 << bits) - 1)


def zigzag_decode(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


def to_signed(value: int, bits: int) -> int:
    """Reinterpret the low ``bits`` of value as a two's complement integer."""
    value &= (1 << bits) - 1
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def to_unsigned(value: int, bits: int) -> int:
    return value & ((1 << bits) - 1)


class WireReader:
    """Cursor over an immutable buffer with a small FIFO of peeked tags.

    The reader keeps a position and an end limit into the buffer. Nested
    length-delimited messages narrow the limit with ``push_limit`` and
    restore it with ``pop_limit``; ``read_tag`` returns 0 at the limit.

    Tags that were peeked but not consumed sit in the FIFO. Map decoding
    peeks one tag ahead to decide whether the next entry belongs to the
    same field; the peeked tag is then either dropped (consumed) or left
    for the next ``read_tag``.

    A reader is owned by a single decode call and must not be shared.
    """

    __slots__ = ("_data", "_pos", "_end", "_pending")

    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        self._data = memoryview(data).cast("B") if not isinstance(data, bytes) else data
        self._pos = 0
        self._end = len(data)
        self._pending: deque[int] = deque()

    @property
    def position(self) -> int:
        return self._pos

    @property
    def at_limit(self) -> bool:
        return not self._pending and self._pos >= self._end

    def push_limit(self, length: int) -> int:
        """Restrict reads to the next ``length`` bytes. Returns the old limit."""
        if self._pending:
            raise DecodeError("Cannot narrow the read limit with peeked tags pending")
        if length < 0 or self._pos + length > self._end:
            raise DecodeError(f"Length {length} exceeds the remaining {self._end - self._pos} bytes")
        old_end = self._end
        self._end = self._pos + length
        return old_end

    def pop_limit(self, old_end: int) -> None:
        """Restore a limit returned by ``push_limit``."""
        if self._pending:
            raise DecodeError("Cannot restore the read limit with peeked tags pending")
        self._pos = self._end
        self._end = old_end

    def read_tag(self) -> int:
        """Return the next tag, or 0 at the read limit."""
        if self._pending:
            return self._pending.popleft()
        if self._pos >= self._end:
            return 0
        tag = self.read_varint()
        if tag > _MASK32 or tag_number(tag) == 0:
            raise DecodeError(f"Invalid tag 0x{tag:x} at offset {self._pos}")
        return tag

    def peek_tag(self) -> int:
        """Return the next tag without consuming it."""
        if self._pending:
            return self._pending[0]
        tag = self.read_tag()
        self._pending.append(tag)
        return tag

    def drop_peeked(self) -> None:
        """Consume a tag previously returned by ``peek_tag``."""
        self._pending.popleft()

    def read_varint(self) -> int:
        result = 0
        shift = 0
        data = self._data
        pos = self._pos
        while True:
            if pos >= self._end:
                raise DecodeError("Truncated varint")
            byte = data[pos]
            pos += 1
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                break
            shift += 7
            if shift >= 70:
                raise DecodeError("Varint is longer than 10 bytes")
        self._pos = pos
        return result & _MASK64

    def read_fixed(self, fmt: str, size: int) -> int | float:
        if self._pos + size > self._end:
            raise DecodeError(f"Truncated {size}-byte fixed value")
        (value,) = struct.unpack_from(fmt, self._data, self._pos)
        self._pos += size
        return value

    def read_length(self) -> int:
        length = self.read_varint()
        if length > self._end - self._pos:
            raise DecodeError(f"Length {length} exceeds the remaining {self._end - self._pos} bytes")
        return length

    def read_raw(self, length: int) -> bytes:
        if self._pos + length > self._end:
            raise DecodeError(f"Truncated field: wanted {length} bytes")
        data = bytes(self._data[self._pos : self._pos + length])
        self._pos += length
        return data

    def read_bytes(self) -> bytes:
        return self.read_raw(self.read_length())


class WireWriter:
    """Append-only writer producing protobuf wire bytes."""

    __slots__ = ("_buf",)

    def __init__(self) -> None:
        self._buf = bytearray()

    def __len__(self) -> int:
        return len(self._buf)

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def write_tag(self, tag: int) -> None:
        self._buf.extend(encode_varint(tag))

    def write_varint(self, value: int) -> None:
        self._buf.extend(encode_varint(value))

    def write_fixed(self, fmt: str, value: int | float) -> None:
        self._buf.extend(struct.pack(fmt, value))

    def write_length(self, length: int) -> None:
        self._buf.extend(encode_varint(length))

    def write_raw(self, data: bytes | bytearray | memoryview) -> None:
        self._buf.extend(data)

    def write_bytes(self, data: bytes | bytearray | memoryview) -> None:
        self.write_length(len(data))
        self._buf.extend(data)
