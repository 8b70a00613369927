"""Wire encoding primitives shared by generated protocol modules.

All integers use host byte order. Every message starts with an 8-byte header
(object id, then size << 16 | opcode); arguments follow in 4-byte aligned
slots. File descriptors travel out of band and are consumed from an FdQueue
in declaration order.
"""

import struct
from collections import deque
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum, IntFlag
from typing import TypeVar

HEADER_SIZE = 8
MAX_MESSAGE_SIZE = 0xFFFF

_HEADER = struct.Struct("=II")
_UINT = struct.Struct("=I")

E = TypeVar("E", bound=Enum)


class WireError(RuntimeError):
    """Base exception for wire encoding and decoding failures."""


class EncodeError(WireError):
    """Raised when an outgoing message cannot be encoded."""


class DecodeError(WireError):
    """Raised when an incoming message cannot be decoded.

    Decode errors are fatal to the connection the message arrived on.
    """


class TruncatedMessage(DecodeError):
    """The buffer ended in the middle of a message."""


class UnknownOpcode(DecodeError):
    """The opcode names no message available at the object's version."""


class MalformedString(DecodeError):
    """A string is not NUL terminated, has embedded NULs or is not UTF-8."""


class InvalidEnumValue(DecodeError):
    """An enum-typed argument carries a value outside the declared set."""


class FdQueueExhausted(DecodeError):
    """A message expects a file descriptor but none is queued."""


class TypeMismatch(DecodeError):
    """An object id refers to an instance of an unexpected interface."""


class UnknownObject(DecodeError):
    """An object id refers to no live object."""


class NullValue(DecodeError):
    """A non-nullable argument arrived as null."""


class ExcessPayload(DecodeError):
    """A message carries more bytes than its arguments consume."""


class InvalidNewId(DecodeError):
    """A new_id is zero, already in use or outside the sender's id range."""


class InvalidVersion(DecodeError):
    """A generic new_id asks for a version the interface does not provide."""


@dataclass(frozen=True, slots=True)
class Fixed:
    """Signed 24.8 fixed-point number, kept as its raw 32-bit pattern."""

    raw: int

    def __post_init__(self) -> None:
        if not -0x80000000 <= self.raw <= 0x7FFFFFFF:
            raise EncodeError(f"fixed raw value {self.raw} does not fit in 32 bits")

    @classmethod
    def from_raw(cls, raw: int) -> "Fixed":
        """Build from any 32-bit pattern, signed or unsigned."""
        raw &= 0xFFFFFFFF
        return cls(raw - 0x100000000 if raw & 0x80000000 else raw)

    @classmethod
    def from_float(cls, value: float) -> "Fixed":
        return cls(round(value * 256))

    @classmethod
    def coerce(cls, value: "Fixed | float") -> "Fixed":
        if isinstance(value, Fixed):
            return value
        return cls.from_float(value)

    def __float__(self) -> float:
        return self.raw / 256

    def __int__(self) -> int:
        return int(self.raw / 256)


@dataclass(frozen=True, slots=True)
class WireMessage:
    """An encoded message: header plus payload, and its out-of-band fds."""

    object_id: int
    opcode: int
    data: bytes
    fds: tuple[int, ...] = ()


class FdQueue:
    """Queue of received file descriptors, consumed in arrival order."""

    def __init__(self, fds: Iterable[int] = ()) -> None:
        self._fds: deque[int] = deque(fds)

    def push(self, fds: Iterable[int]) -> None:
        self._fds.extend(fds)

    def take(self, where: str) -> int:
        if not self._fds:
            raise FdQueueExhausted(f"{where}: no file descriptor queued")
        return self._fds.popleft()

    def __len__(self) -> int:
        return len(self._fds)

    def __iter__(self) -> Iterator[int]:
        return iter(self._fds)


def pad(length: int) -> int:
    """Round a byte count up to the next 4-byte boundary."""
    return (length + 3) & ~3


def pack_header(object_id: int, opcode: int, size: int) -> bytes:
    return _HEADER.pack(object_id, (size << 16) | opcode)


def unpack_header(data: bytes | bytearray | memoryview, offset: int = 0) -> tuple[int, int, int]:
    """Return (object id, opcode, size) of the message at offset."""
    if len(data) - offset < HEADER_SIZE:
        raise TruncatedMessage("incomplete message header")
    object_id, word = _HEADER.unpack_from(data, offset)
    return object_id, word & 0xFFFF, word >> 16


def build_message(object_id: int, opcode: int, payload: bytes | bytearray, fds: Sequence[int] = ()) -> WireMessage:
    """Prefix a payload with its header."""
    size = HEADER_SIZE + len(payload)
    if size > MAX_MESSAGE_SIZE:
        raise EncodeError(f"message of {size} bytes exceeds {MAX_MESSAGE_SIZE}")
    return WireMessage(object_id, opcode, pack_header(object_id, opcode, size) + bytes(payload), tuple(fds))


def pack_slots(fmt: str, values: tuple, where: str) -> bytes:
    """Pack consecutive 4-byte slots."""
    try:
        return struct.pack(fmt, *values)
    except struct.error as exc:
        raise EncodeError(f"{where}: {exc}") from None


def unpack_slots(fmt: str, data: bytes | memoryview, offset: int, where: str) -> tuple:
    """Unpack consecutive 4-byte slots starting at offset."""
    if len(data) - offset < struct.calcsize(fmt):
        raise TruncatedMessage(f"{where}: message truncated")
    return struct.unpack_from(fmt, data, offset)


def put_string(buf: bytearray, value: str | None, nullable: bool, where: str) -> None:
    """Append a length-prefixed, NUL-terminated, padded UTF-8 string."""
    if value is None:
        if not nullable:
            raise EncodeError(f"{where}: string must not be None")
        buf += _UINT.pack(0)
        return

    encoded = value.encode("utf-8")
    if b"\x00" in encoded:
        raise EncodeError(f"{where}: string contains a NUL character")
    length = len(encoded) + 1
    buf += _UINT.pack(length)
    buf += encoded
    buf += b"\x00" * (pad(length) - len(encoded))


def get_string(data: bytes | memoryview, offset: int, nullable: bool, where: str) -> tuple[str | None, int]:
    """Read a string; return (value, new offset)."""
    (length,) = unpack_slots("=I", data, offset, where)
    offset += 4
    if length == 0:
        if not nullable:
            raise NullValue(f"{where}: null string for a non-nullable argument")
        return None, offset

    end = offset + pad(length)
    if end > len(data):
        raise TruncatedMessage(f"{where}: string truncated")
    raw = bytes(data[offset : offset + length])
    if raw[-1] != 0:
        raise MalformedString(f"{where}: string is not NUL terminated")
    if b"\x00" in raw[:-1]:
        raise MalformedString(f"{where}: string contains an embedded NUL")
    try:
        return raw[:-1].decode("utf-8"), end
    except UnicodeDecodeError as exc:
        raise MalformedString(f"{where}: {exc}") from None


def put_array(buf: bytearray, value: bytes | bytearray | memoryview, where: str) -> None:
    """Append a length-prefixed, padded byte array."""
    if value is None:
        raise EncodeError(f"{where}: array must not be None")
    length = len(value)
    buf += _UINT.pack(length)
    buf += value
    buf += b"\x00" * (pad(length) - length)


def get_array(data: bytes | memoryview, offset: int, where: str) -> tuple[bytes, int]:
    """Read a byte array; return (value, new offset)."""
    (length,) = unpack_slots("=I", data, offset, where)
    offset += 4
    end = offset + pad(length)
    if end > len(data):
        raise TruncatedMessage(f"{where}: array truncated")
    return bytes(data[offset : offset + length]), end


def enum_value(enum_cls: type[E], value: int, where: str) -> E:
    """Convert a wire integer into a member of a generated enum."""
    if issubclass(enum_cls, IntFlag):
        mask = 0
        for member in enum_cls.__members__.values():
            mask |= member.value
        if value & ~mask:
            raise InvalidEnumValue(f"{where}: {value:#x} has bits outside {enum_cls.__name__}")
        return enum_cls(value)
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidEnumValue(f"{where}: {value} is not a valid {enum_cls.__name__}") from None


def check_consumed(data: bytes | memoryview, offset: int, where: str) -> None:
    """Fail if a message payload has bytes left after its last argument."""
    if offset != len(data):
        raise ExcessPayload(f"{where}: {len(data) - offset} unexpected trailing byte(s)")
