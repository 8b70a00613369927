"""Semantic resolution of parsed protocols into the IR.

Resolution runs in two passes over one flat symbol table: the first collects
every interface and enum name of the compilation set, the second binds each
argument reference against it. Forward references inside the set therefore
work regardless of declaration order. Nothing is reordered: the IR keeps the
caller's protocol order and each message's opcode is its declaration index.
"""

import logging
from collections.abc import Sequence

from .errors import Location, SemanticConstraintError, UnresolvedReferenceError
from .ir import Direction, IrArg, IrEntry, IrEnum, IrInterface, IrMessage, IrProtocol, ProtocolSet
from .types import ArgType, ProtoArg, ProtoEnum, ProtoInterface, ProtoMessage, Protocol

logger = logging.getLogger(__name__)


def _is_power_of_two_or_zero(value: int) -> bool:
    return value & (value - 1) == 0


class Resolver:
    """Resolve a compilation set of protocols.

    A Resolver is single use: its symbol table lives only for one call to
    ``resolve()``.
    """

    def __init__(self, protocols: Sequence[Protocol], references: Sequence[Protocol] = ()) -> None:
        self.protocols = list(protocols)
        self.references = list(references)
        self._interfaces: dict[str, tuple[Protocol, ProtoInterface]] = {}
        self._enums: dict[str, ProtoEnum] = {}

    def resolve(self) -> ProtocolSet:
        """Run both passes and build the IR."""
        for protocol in self.references + self.protocols:
            self._collect(protocol)

        references = tuple(self._resolve_protocol(p) for p in self.references)
        protocols = tuple(self._resolve_protocol(p) for p in self.protocols)

        logger.debug(
            "resolved %d protocol(s), %d interface(s), %d reference protocol(s)",
            len(protocols),
            sum(len(p.interfaces) for p in protocols),
            len(references),
        )
        return ProtocolSet(protocols=protocols, references=references)

    def _collect(self, protocol: Protocol) -> None:
        for interface in protocol.interfaces:
            if interface.name in self._interfaces:
                other, _ = self._interfaces[interface.name]
                raise SemanticConstraintError(
                    f"interface '{interface.name}' is already declared by protocol '{other.name}'",
                    (("protocol", protocol.name), ("interface", interface.name)),
                    line=interface.line,
                )
            self._interfaces[interface.name] = (protocol, interface)
            for enum in interface.enums:
                self._enums[f"{interface.name}.{enum.name}"] = enum

    def _resolve_protocol(self, protocol: Protocol) -> IrProtocol:
        path: Location = (("protocol", protocol.name),)
        return IrProtocol(
            name=protocol.name,
            interfaces=tuple(self._resolve_interface(i, path) for i in protocol.interfaces),
            copyright=protocol.copyright,
            summary=protocol.summary,
            description=protocol.description,
        )

    def _resolve_interface(self, interface: ProtoInterface, path: Location) -> IrInterface:
        path = path + (("interface", interface.name),)
        protocol, _ = self._interfaces[interface.name]

        enums = tuple(self._resolve_enum(interface, e, path) for e in interface.enums)
        requests = tuple(
            self._resolve_message(interface, m, opcode, Direction.REQUEST, path)
            for opcode, m in enumerate(interface.requests)
        )
        events = tuple(
            self._resolve_message(interface, m, opcode, Direction.EVENT, path)
            for opcode, m in enumerate(interface.events)
        )

        return IrInterface(
            protocol=protocol.name,
            name=interface.name,
            version=interface.version,
            requests=requests,
            events=events,
            enums=enums,
            summary=interface.summary,
            description=interface.description,
        )

    def _check_since(
        self, since: int | None, floor: int, interface: ProtoInterface, path: Location, line: int | None
    ) -> int:
        if since is None:
            return floor
        if since > interface.version:
            raise SemanticConstraintError(
                f"since {since} exceeds interface version {interface.version}", path, line=line
            )
        if since < floor:
            raise SemanticConstraintError(
                f"since {since} is lower than the enclosing since {floor}", path, line=line
            )
        return since

    def _resolve_enum(self, interface: ProtoInterface, enum: ProtoEnum, path: Location) -> IrEnum:
        path = path + (("enum", enum.name),)
        enum_since = self._check_since(enum.since, 1, interface, path, enum.line)

        entries: list[IrEntry] = []
        seen_values: dict[int, str] = {}
        for entry in enum.entries:
            entry_path = path + (("entry", entry.name),)

            if enum.bitfield and not _is_power_of_two_or_zero(entry.value):
                raise SemanticConstraintError(
                    f"bitfield value {entry.value:#x} is neither zero nor a power of two",
                    entry_path,
                    line=entry.line,
                )

            if entry.value in seen_values:
                if not entry.alias and not enum.bitfield:
                    raise SemanticConstraintError(
                        f"value {entry.value} duplicates entry '{seen_values[entry.value]}'"
                        " and is not declared as an alias",
                        entry_path,
                        line=entry.line,
                    )
            elif entry.alias:
                raise SemanticConstraintError(
                    f"entry is declared as an alias but no earlier entry has value {entry.value}",
                    entry_path,
                    line=entry.line,
                )
            else:
                seen_values[entry.value] = entry.name

            entries.append(
                IrEntry(
                    name=entry.name,
                    value=entry.value,
                    since=self._check_since(entry.since, enum_since, interface, entry_path, entry.line),
                    alias=entry.alias,
                    summary=entry.summary,
                    description=entry.description,
                )
            )

        return IrEnum(
            interface=interface.name,
            name=enum.name,
            bitfield=enum.bitfield,
            since=enum_since,
            entries=tuple(entries),
            summary=enum.summary,
            description=enum.description,
        )

    def _resolve_message(
        self,
        interface: ProtoInterface,
        message: ProtoMessage,
        opcode: int,
        direction: Direction,
        path: Location,
    ) -> IrMessage:
        path = path + ((direction.value, message.name),)
        return IrMessage(
            interface=interface.name,
            name=message.name,
            direction=direction,
            opcode=opcode,
            since=self._check_since(message.since, 1, interface, path, message.line),
            destructor=message.destructor,
            args=tuple(self._resolve_arg(interface, a, path) for a in message.args),
            summary=message.summary,
            description=message.description,
        )

    def _resolve_arg(self, interface: ProtoInterface, arg: ProtoArg, path: Location) -> IrArg:
        path = path + (("arg", arg.name),)

        if arg.interface is not None:
            if arg.type not in (ArgType.OBJECT, ArgType.NEW_ID):
                raise SemanticConstraintError(
                    f"type '{arg.type}' cannot be bound to an interface", path, line=arg.line
                )
            if arg.interface not in self._interfaces:
                raise UnresolvedReferenceError(
                    f"unknown interface '{arg.interface}'", path, line=arg.line
                )

        if arg.nullable and arg.type not in (ArgType.STRING, ArgType.OBJECT):
            raise SemanticConstraintError(
                f"type '{arg.type}' cannot be nullable", path, line=arg.line
            )

        enum: str | None = None
        if arg.enum is not None:
            if arg.type not in (ArgType.INT, ArgType.UINT):
                raise SemanticConstraintError(
                    f"type '{arg.type}' cannot be bound to an enum", path, line=arg.line
                )
            enum = arg.enum if "." in arg.enum else f"{interface.name}.{arg.enum}"
            if enum not in self._enums:
                raise UnresolvedReferenceError(f"unknown enum '{arg.enum}'", path, line=arg.line)
            if self._enums[enum].bitfield and arg.type != ArgType.UINT:
                raise SemanticConstraintError(
                    f"bitfield enum '{enum}' requires a uint argument", path, line=arg.line
                )

        return IrArg(
            name=arg.name,
            type=arg.type,
            interface=arg.interface,
            enum=enum,
            nullable=arg.nullable,
            summary=arg.summary,
        )


def resolve(protocols: Sequence[Protocol], references: Sequence[Protocol] = ()) -> ProtocolSet:
    """Resolve protocols (emitted) and references (bound only) into the IR."""
    return Resolver(protocols, references).resolve()
