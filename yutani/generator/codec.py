"""Wire codec rules: byte layout of every argument type.

This module is a pure table. The emitter uses it to choose how each argument
is packed and unpacked, and the size calculator uses it for wire sizes.
"""

from dataclasses import dataclass

from .ir import IrArg
from .types import ArgType

# Object id + (size << 16 | opcode)
HEADER_SIZE = 8
SLOT_SIZE = 4
MAX_MESSAGE_SIZE = 0xFFFF

# Smallest encodings of the variable-length layouts
MIN_STRING_SIZE = SLOT_SIZE  # length 0, only valid for nullable strings
MIN_NONNULL_STRING_SIZE = 2 * SLOT_SIZE  # length 1, terminator padded to 4
MIN_ARRAY_SIZE = SLOT_SIZE


@dataclass(frozen=True)
class WireRule:
    """How one argument type is laid out on the wire.

    slot_format is the struct format character for types that occupy a single
    4-byte slot, None for variable-length layouts and for fds.
    """

    layout: str
    slot_format: str | None
    min_size: int
    bounded: bool
    uses_fd: bool = False


RULES: dict[ArgType, WireRule] = {
    ArgType.INT: WireRule("slot", "i", SLOT_SIZE, True),
    ArgType.UINT: WireRule("slot", "I", SLOT_SIZE, True),
    ArgType.FIXED: WireRule("slot", "i", SLOT_SIZE, True),
    ArgType.OBJECT: WireRule("slot", "I", SLOT_SIZE, True),
    ArgType.NEW_ID: WireRule("slot", "I", SLOT_SIZE, True),
    ArgType.STRING: WireRule("string", None, MIN_NONNULL_STRING_SIZE, False),
    ArgType.ARRAY: WireRule("array", None, MIN_ARRAY_SIZE, False),
    ArgType.FD: WireRule("fd", None, 0, True, uses_fd=True),
}

# Generic new_id: interface name string, version uint, then the id slot
GENERIC_NEW_ID = WireRule("generic_new_id", None, MIN_NONNULL_STRING_SIZE + 2 * SLOT_SIZE, False)


def rule_for(arg: IrArg) -> WireRule:
    """Return the wire rule for an argument."""
    if arg.type == ArgType.NEW_ID and arg.interface is None:
        return GENERIC_NEW_ID
    rule = RULES[arg.type]
    if arg.type == ArgType.STRING and arg.nullable:
        return WireRule(rule.layout, None, MIN_STRING_SIZE, False)
    return rule
