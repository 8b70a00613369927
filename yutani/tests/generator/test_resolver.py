"""Tests for semantic resolution."""

import os

import pytest

from yutani.generator import parse, parse_toml, resolve
from yutani.generator.errors import SemanticConstraintError, UnresolvedReferenceError
from yutani.generator.ir import Direction

FILE_DIR = os.path.dirname(os.path.realpath(__file__))


def load(name):
    with open(f"{FILE_DIR}/{name}", encoding="utf-8") as f:
        return parse(f.read())


def resolve_text(*texts):
    return resolve([parse(text) for text in texts])


def enum_protocol(body, bitfield=False, arg_type="uint"):
    flag = "@bitfield" if bitfield else ""
    return f"""
        protocol p {{
            interface a: 3 {{
                request r {{ value: {arg_type}<e> }}
                {flag}
                enum e {{ {body} }}
            }}
        }}
    """


def describe_references():
    def resolves_core_file(expect):
        protocol_set = resolve([load("core.wlproto")])
        expect(len(protocol_set.interfaces)) == 7

        create_buffer = protocol_set.interface("core_shm_pool").requests[0]
        expect(create_buffer.args[-1].enum) == "core_shm.format"

        transform = protocol_set.interface("core_surface").requests[1].args[0]
        expect(transform.enum) == "core_surface.transform"

    def resolves_forward_references(expect):
        protocol_set = resolve_text(
            """
            protocol p {
                interface first: 1 { request make { child: new_id<second> } }
                interface second: 1 { request back { parent: object<first> } }
            }
        """
        )
        make = protocol_set.interface("first").requests[0]
        expect(make.args[0].interface) == "second"

    def resolves_cycles_across_protocols(expect):
        protocol_set = resolve_text(
            "protocol one { interface a: 1 { request r { x: object<b> } } }",
            "protocol two { interface b: 1 { request r { x: object<a> } } }",
        )
        expect([p.name for p in protocol_set.protocols]) == ["one", "two"]
        expect(protocol_set.interface("a").requests[0].args[0].interface) == "b"

    def fails_on_unknown_interface(expect):
        with pytest.raises(UnresolvedReferenceError) as exc:
            resolve_text("protocol p { interface a: 1 { request r { x: object<missing> } } }")
        expect(exc.value.message) == "unknown interface 'missing'"
        expect(exc.value.path) == (
            ("protocol", "p"),
            ("interface", "a"),
            ("request", "r"),
            ("arg", "x"),
        )
        expect(exc.value.line) == 1

    def fails_on_unknown_enum(expect):
        with pytest.raises(UnresolvedReferenceError) as exc:
            resolve_text("protocol p { interface a: 1 { request r { x: uint<missing> } } }")
        expect(exc.value.message) == "unknown enum 'missing'"

    def fails_on_unknown_qualified_enum(expect):
        with pytest.raises(UnresolvedReferenceError):
            resolve_text(
                "protocol p { interface a: 1 { request r { x: uint<b.e> } enum e { z = 0 } } }"
            )

    def resolves_against_references(expect):
        core = load("core.wlproto")
        ext = load("ext.wlproto")
        protocol_set = resolve([ext], [core])

        expect([i.name for i in protocol_set.interfaces]) == ["ext_window", "ext_popup"]
        expect(protocol_set.is_local("ext_window")) == True
        expect(protocol_set.is_local("core_surface")) == False
        expect(protocol_set.interface("core_surface").name) == "core_surface"

    def fails_without_references(expect):
        with pytest.raises(UnresolvedReferenceError):
            resolve([load("ext.wlproto")])

    def fails_on_duplicate_interface_across_protocols(expect):
        with pytest.raises(SemanticConstraintError) as exc:
            resolve_text(
                "protocol one { interface a: 1 {} }",
                "protocol two { interface a: 1 {} }",
            )
        expect(exc.value.message) == "interface 'a' is already declared by protocol 'one'"

    def fails_on_interface_for_plain_type(expect):
        protocol = parse_toml(
            'name = "p"\n[[interface]]\nname = "a"\nversion = 1\n'
            '[[interface.request]]\nname = "r"\n'
            '[[interface.request.arg]]\nname = "x"\ntype = "uint"\ninterface = "a"\n'
        )
        with pytest.raises(SemanticConstraintError) as exc:
            resolve([protocol])
        expect(exc.value.message) == "type 'uint' cannot be bound to an interface"


def describe_arg_rules():
    def allows_nullable_strings_and_objects(expect):
        protocol_set = resolve_text(
            "protocol p { interface a: 1 { request r { s: string? o: object<a>? } } }"
        )
        expect([arg.nullable for arg in protocol_set.interface("a").requests[0].args]) == [
            True,
            True,
        ]

    def fails_on_nullable_int(expect):
        with pytest.raises(SemanticConstraintError) as exc:
            resolve_text("protocol p { interface a: 1 { request r { x: int? } } }")
        expect(exc.value.message) == "type 'int' cannot be nullable"

    def fails_on_nullable_new_id(expect):
        with pytest.raises(SemanticConstraintError):
            resolve_text("protocol p { interface a: 1 { request r { x: new_id<a>? } } }")

    def fails_on_bitfield_with_int(expect):
        with pytest.raises(SemanticConstraintError) as exc:
            resolve_text(enum_protocol("a = 1", bitfield=True, arg_type="int"))
        expect(exc.value.message) == "bitfield enum 'a.e' requires a uint argument"

    def allows_plain_enum_with_int(expect):
        protocol_set = resolve_text(enum_protocol("a = 1", arg_type="int"))
        expect(protocol_set.interface("a").requests[0].args[0].enum) == "a.e"


def describe_enums():
    def rejects_non_power_of_two_bitfield(expect):
        with pytest.raises(SemanticConstraintError) as exc:
            resolve_text(enum_protocol("a = 3", bitfield=True))
        expect(exc.value.message) == "bitfield value 0x3 is neither zero nor a power of two"
        expect(exc.value.path[-1]) == ("entry", "a")

    def accepts_zero_and_powers_of_two(expect):
        protocol_set = resolve_text(enum_protocol("a = 0 b = 1 c = 2 d = 4", bitfield=True))
        enum = protocol_set.enum("a.e")
        expect([e.value for e in enum.entries]) == [0, 1, 2, 4]
        expect(enum.bitfield) == True

    def rejects_duplicate_values(expect):
        with pytest.raises(SemanticConstraintError) as exc:
            resolve_text(enum_protocol("a = 1 b = 1"))
        expect(exc.value.message).includes("duplicates entry 'a'")

    def accepts_declared_aliases(expect):
        protocol_set = resolve_text(enum_protocol("a = 1 @alias b = 1"))
        expect(protocol_set.enum("a.e").entries[1].alias) == True

    def rejects_alias_without_target(expect):
        with pytest.raises(SemanticConstraintError) as exc:
            resolve_text(enum_protocol("a = 1 @alias b = 2"))
        expect(exc.value.message).includes("no earlier entry has value 2")

    def inherits_enum_since(expect):
        protocol_set = resolve_text(
            """
            protocol p {
                interface a: 3 {
                    @since(2) enum e { x = 0 @since(3) y = 1 }
                }
            }
        """
        )
        enum = protocol_set.enum("a.e")
        expect(enum.since) == 2
        expect([e.since for e in enum.entries]) == [2, 3]

    def rejects_entry_older_than_enum(expect):
        with pytest.raises(SemanticConstraintError) as exc:
            resolve_text("protocol p { interface a: 3 { @since(2) enum e { @since(1) x = 0 } } }")
        expect(exc.value.message) == "since 1 is lower than the enclosing since 2"


def describe_messages():
    def assigns_opcodes_in_declaration_order(expect):
        protocol_set = resolve([load("core.wlproto")])
        for interface in protocol_set.interfaces:
            for direction in Direction:
                opcodes = [m.opcode for m in interface.messages(direction)]
                expect(opcodes) == list(range(len(opcodes)))

        surface = protocol_set.interface("core_surface")
        expect([m.name for m in surface.requests][:3]) == ["attach", "set_buffer_transform", "set_scale"]
        expect(surface.requests[2].opcode) == 2
        expect(surface.requests[2].direction) == Direction.REQUEST

    def defaults_since_to_one(expect):
        protocol_set = resolve([load("core.wlproto")])
        expect(protocol_set.interface("core_display").requests[0].since) == 1
        expect(protocol_set.interface("core_shm_pool").requests[2].since) == 2

    def rejects_since_above_version(expect):
        with pytest.raises(SemanticConstraintError) as exc:
            resolve_text("protocol p { interface a: 1 { @since(2) request r {} } }")
        expect(exc.value.message) == "since 2 exceeds interface version 1"

    def marks_destructors(expect):
        protocol_set = resolve([load("core.wlproto")])
        expect(protocol_set.interface("core_callback").events[0].destructor) == True
        expect(protocol_set.interface("core_callback").events[0].fd_count) == 0
        expect(protocol_set.interface("core_surface").requests[4].fd_count) == 2
