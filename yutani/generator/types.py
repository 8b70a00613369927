"""Type definitions for protocol parsing."""

from dataclasses import dataclass, field
from enum import StrEnum

from dataclasses_json import DataClassJsonMixin


class ArgType(StrEnum):
    """Wire type of a message argument."""

    INT = "int"
    UINT = "uint"
    FIXED = "fixed"
    STRING = "string"
    OBJECT = "object"
    NEW_ID = "new_id"
    ARRAY = "array"
    FD = "fd"


@dataclass
class ProtoArg(DataClassJsonMixin):
    """Represents a message argument.

    ``interface`` is only meaningful for object/new_id arguments and ``enum``
    only for int/uint arguments; the resolver enforces both.
    """

    name: str
    type: ArgType
    interface: str | None = None
    enum: str | None = None
    nullable: bool = False
    summary: str | None = None
    line: int | None = None


@dataclass
class ProtoMessage(DataClassJsonMixin):
    """Represents a request or an event."""

    name: str
    args: list[ProtoArg] = field(default_factory=list)
    since: int | None = None
    destructor: bool = False
    summary: str | None = None
    description: str | None = None
    line: int | None = None


@dataclass
class ProtoEntry(DataClassJsonMixin):
    """Represents a single enum entry."""

    name: str
    value: int
    since: int | None = None
    alias: bool = False
    summary: str | None = None
    description: str | None = None
    line: int | None = None


@dataclass
class ProtoEnum(DataClassJsonMixin):
    """Represents an enum declared inside an interface."""

    name: str
    entries: list[ProtoEntry] = field(default_factory=list)
    bitfield: bool = False
    since: int | None = None
    summary: str | None = None
    description: str | None = None
    line: int | None = None


@dataclass
class ProtoInterface(DataClassJsonMixin):
    """Represents an interface definition."""

    name: str
    version: int
    requests: list[ProtoMessage] = field(default_factory=list)
    events: list[ProtoMessage] = field(default_factory=list)
    enums: list[ProtoEnum] = field(default_factory=list)
    summary: str | None = None
    description: str | None = None
    line: int | None = None


@dataclass
class Protocol(DataClassJsonMixin):
    """Represents a complete protocol definition."""

    name: str
    interfaces: list[ProtoInterface] = field(default_factory=list)
    copyright: str | None = None
    summary: str | None = None
    description: str | None = None


ARG_TYPES = frozenset(t.value for t in ArgType)
