"""Wire size calculation for protocol messages."""

from dataclasses import dataclass
from enum import StrEnum, auto

from .codec import HEADER_SIZE, rule_for
from .ir import Direction, IrMessage, ProtocolSet


class SizeKind(StrEnum):
    """Classification of size characteristics."""

    FIXED = auto()  # Min == Max, no variable components
    UNBOUNDED = auto()  # Contains a string or array


@dataclass(frozen=True)
class SizeInfo:
    """Size information for one message, header included."""

    min_size: int
    max_size: int | None  # None means unbounded
    kind: SizeKind

    @property
    def is_fixed(self) -> bool:
        return self.kind == SizeKind.FIXED


@dataclass(frozen=True)
class MessageSizeInfo:
    """Complete wire information for a message."""

    interface: str
    name: str
    direction: Direction
    opcode: int
    since: int
    size: SizeInfo
    fd_count: int


@dataclass(frozen=True)
class ProtocolSizeInfo:
    """Size information for every emitted message."""

    messages: tuple[MessageSizeInfo, ...]

    # Calculated protocol-level info
    max_fixed_size: int  # Largest fixed-size message
    max_fd_count: int

    def for_interface(self, name: str) -> tuple[MessageSizeInfo, ...]:
        return tuple(m for m in self.messages if m.interface == name)


class SizeCalculator:
    """Calculate wire sizes for resolved messages."""

    def __init__(self, protocol_set: ProtocolSet):
        self.protocol_set = protocol_set

    def calc_message_size(self, message: IrMessage) -> SizeInfo:
        """Calculate the size of a message including its header."""
        total = HEADER_SIZE
        bounded = True

        for arg in message.args:
            rule = rule_for(arg)
            total += rule.min_size
            bounded = bounded and rule.bounded

        if bounded:
            return SizeInfo(total, total, SizeKind.FIXED)
        return SizeInfo(total, None, SizeKind.UNBOUNDED)

    def calc_message_info(self, message: IrMessage) -> MessageSizeInfo:
        return MessageSizeInfo(
            interface=message.interface,
            name=message.name,
            direction=message.direction,
            opcode=message.opcode,
            since=message.since,
            size=self.calc_message_size(message),
            fd_count=message.fd_count,
        )

    def calc_protocol_info(self) -> ProtocolSizeInfo:
        """Calculate size information for all emitted interfaces."""
        messages = tuple(
            self.calc_message_info(message)
            for interface in self.protocol_set.interfaces
            for message in interface.requests + interface.events
        )

        fixed = [m.size.min_size for m in messages if m.size.is_fixed]
        return ProtocolSizeInfo(
            messages=messages,
            max_fixed_size=max(fixed, default=0),
            max_fd_count=max((m.fd_count for m in messages), default=0),
        )


def calculate_sizes(protocol_set: ProtocolSet) -> ProtocolSizeInfo:
    """Calculate size information for a resolved protocol set."""
    calc = SizeCalculator(protocol_set)
    return calc.calc_protocol_info()
