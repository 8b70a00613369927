"""Resolved, immutable intermediate representation.

The resolver builds these once per compilation; nothing mutates them
afterwards. Collections are tuples and lookup tables are read-only mappings.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

from .types import ArgType


class Direction(StrEnum):
    """Direction of a message on the wire."""

    REQUEST = "request"
    EVENT = "event"


@dataclass(frozen=True)
class IrEntry:
    name: str
    value: int
    since: int
    alias: bool
    summary: str | None
    description: str | None = None


@dataclass(frozen=True)
class IrEnum:
    interface: str
    name: str
    bitfield: bool
    since: int
    entries: tuple[IrEntry, ...]
    summary: str | None = None
    description: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.interface}.{self.name}"


@dataclass(frozen=True)
class IrArg:
    name: str
    type: ArgType
    interface: str | None
    enum: str | None  # qualified "interface.enum" once resolved
    nullable: bool
    summary: str | None = None

    @property
    def is_generic(self) -> bool:
        """True for object/new_id arguments without a bound interface."""
        return self.type in (ArgType.OBJECT, ArgType.NEW_ID) and self.interface is None


@dataclass(frozen=True)
class IrMessage:
    interface: str
    name: str
    direction: Direction
    opcode: int
    since: int
    destructor: bool
    args: tuple[IrArg, ...]
    summary: str | None = None
    description: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.interface}.{self.name}"

    @property
    def fd_count(self) -> int:
        return sum(1 for arg in self.args if arg.type == ArgType.FD)


@dataclass(frozen=True)
class IrInterface:
    protocol: str
    name: str
    version: int
    requests: tuple[IrMessage, ...]
    events: tuple[IrMessage, ...]
    enums: tuple[IrEnum, ...]
    summary: str | None = None
    description: str | None = None

    def messages(self, direction: Direction) -> tuple[IrMessage, ...]:
        return self.requests if direction == Direction.REQUEST else self.events


@dataclass(frozen=True)
class IrProtocol:
    name: str
    interfaces: tuple[IrInterface, ...]
    copyright: str | None = None
    summary: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class ProtocolSet:
    """All protocols of one compilation.

    ``protocols`` are emitted; ``references`` were only used to bind names.
    """

    protocols: tuple[IrProtocol, ...]
    references: tuple[IrProtocol, ...] = ()
    _interfaces: Mapping[str, IrInterface] = field(init=False, repr=False, compare=False)
    _enums: Mapping[str, IrEnum] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        interfaces = {
            interface.name: interface
            for protocol in self.references + self.protocols
            for interface in protocol.interfaces
        }
        enums = {
            enum.qualified_name: enum
            for interface in interfaces.values()
            for enum in interface.enums
        }
        object.__setattr__(self, "_interfaces", MappingProxyType(interfaces))
        object.__setattr__(self, "_enums", MappingProxyType(enums))

    @property
    def interfaces(self) -> tuple[IrInterface, ...]:
        """Interfaces to emit, in caller order."""
        return tuple(i for protocol in self.protocols for i in protocol.interfaces)

    def interface(self, name: str) -> IrInterface:
        return self._interfaces[name]

    def enum(self, qualified_name: str) -> IrEnum:
        return self._enums[qualified_name]

    def is_local(self, interface_name: str) -> bool:
        """True if the interface is emitted by this compilation."""
        return any(i.name == interface_name for i in self.interfaces)
