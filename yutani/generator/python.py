"""Python code generator for resolved protocols."""

import inspect
import logging
import re
import textwrap
from dataclasses import dataclass
from importlib import resources
from typing import Literal

from jinja2 import Environment, PackageLoader

from .codec import SLOT_SIZE, WireRule, rule_for
from .errors import EmissionError, Location, SemanticConstraintError
from .ir import Direction, IrArg, IrEnum, IrInterface, IrMessage, ProtocolSet
from .types import ArgType
from .util import safe_name, to_camel_case, to_constant

logger = logging.getLogger(__name__)

RUNTIME_FILES = [
    "__init__.py",
    "wire.py",
    "runtime.py",
]

env = Environment(
    loader=PackageLoader("yutani.generator", "templates"),
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
    line_comment_prefix="%%",
    line_statement_prefix="%",
)

template = env.get_template("python.py.j2")

Role = Literal["client", "server"]

MODULE_PATH_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*\Z")

# Names the generated module imports at top level
MODULE_NAMES = frozenset(
    [
        "ABC",
        "abstractmethod",
        "IntEnum",
        "IntFlag",
        "ClassVar",
        "Connection",
        "Handle",
        "handle_id",
        "FdQueue",
        "Fixed",
        "WireMessage",
        "INTERFACES",
    ]
)

# Attributes of the runtime Handle class that generated members must not shadow
HANDLE_ATTRIBUTES = frozenset(
    [
        "INTERFACE",
        "VERSION",
        "REQUESTS",
        "EVENTS",
        "connection",
        "id",
        "version",
        "listener",
        "alive",
        "interface",
        "downcast",
    ]
)

# Parameter names every generated method already uses
ARG_RESERVED = frozenset(["self", "this"])

PYTHON_TYPES = {
    ArgType.INT: "int",
    ArgType.UINT: "int",
    ArgType.FIXED: "Fixed",
    ArgType.STRING: "str",
    ArgType.ARRAY: "bytes",
    ArgType.FD: "int",
}


@dataclass(frozen=True)
class GeneratorOptions:
    """Options for the Python emitter.

    role: side of the connection the module is generated for. Clients send
        requests and receive events, servers send events and receive requests.
    runtime_import: module the generated code imports its runtime from.
    """

    role: Role = "client"
    runtime_import: str = "yutani_runtime"

    def __post_init__(self) -> None:
        if self.role not in ("client", "server"):
            raise ValueError(f"Unknown role {self.role}")
        if not MODULE_PATH_RE.match(self.runtime_import):
            raise ValueError(f"Invalid runtime import path {self.runtime_import!r}")

    @property
    def sends(self) -> Direction:
        return Direction.REQUEST if self.role == "client" else Direction.EVENT

    @property
    def receives(self) -> Direction:
        return Direction.EVENT if self.role == "client" else Direction.REQUEST


def _class_name(interface_name: str) -> str:
    return to_camel_case(interface_name)


def _arg_name(arg: IrArg) -> str:
    return safe_name(arg.name, ARG_RESERVED)


def _method_name(message: IrMessage) -> str:
    return safe_name(message.name, HANDLE_ATTRIBUTES)


def _listener_name(message: IrMessage) -> str:
    return safe_name(message.name)


def _where(message: IrMessage, arg: IrArg | None = None) -> str:
    """Python literal naming a message or argument in runtime error messages."""
    if arg is None:
        return f'"{message.qualified_name}"'
    return f'"{message.qualified_name}.{arg.name}"'


def _doc_text(text: str) -> str:
    text = text.replace("\\", "\\\\").replace('"""', '\\"\\"\\"')
    if text.endswith('"'):
        text += " "
    return text


def _docstring(*parts: str | None) -> str:
    """Build a docstring from summary and description text."""
    paragraphs = [inspect.cleandoc(part) for part in parts if part and part.strip()]
    text = _doc_text("\n\n".join(paragraphs))
    if "\n" not in text:
        return f'"""{text}"""'
    return f'"""{text}\n"""'


def _rule(message: IrMessage, arg: IrArg) -> WireRule:
    try:
        return rule_for(arg)
    except KeyError:
        raise EmissionError(
            f"no wire rule for type {arg.type}",
            (("message", message.qualified_name), ("arg", arg.name)),
        ) from None


class _Context:
    """Name lookups shared by the code generation helpers of one render."""

    def __init__(self, protocol_set: ProtocolSet, options: GeneratorOptions):
        self.protocol_set = protocol_set
        self.options = options
        self._local = frozenset(i.name for i in protocol_set.interfaces)

    def is_local(self, interface_name: str) -> bool:
        return interface_name in self._local

    def interface_ref(self, interface_name: str) -> str:
        """Expression for a new_id target: the class, or its name for referenced protocols."""
        if self.is_local(interface_name):
            return _class_name(interface_name)
        return f'"{interface_name}"'

    def enum(self, message: IrMessage, arg: IrArg) -> IrEnum | None:
        if arg.enum is None:
            return None
        try:
            return self.protocol_set.enum(arg.enum)
        except KeyError:
            raise EmissionError(
                f"unknown enum {arg.enum}",
                (("message", message.qualified_name), ("arg", arg.name)),
            ) from None

    def enum_ref(self, message: IrMessage, arg: IrArg) -> str | None:
        """Generated enum class for an argument, if the enum is emitted here."""
        enum = self.enum(message, arg)
        if enum is None or not self.is_local(enum.interface):
            return None
        return f"{_class_name(enum.interface)}.{to_camel_case(enum.name)}"

    def py_type(self, message: IrMessage, arg: IrArg) -> str:
        """Annotation for a decoded argument value."""
        if arg.type in (ArgType.OBJECT, ArgType.NEW_ID):
            if arg.interface is not None and self.is_local(arg.interface):
                name = _class_name(arg.interface)
            else:
                name = "Handle"
            return f"{name} | None" if arg.nullable else name

        name = self.enum_ref(message, arg) or PYTHON_TYPES[arg.type]
        if arg.type == ArgType.STRING and arg.nullable:
            return f"{name} | None"
        return name

    def param_type(self, message: IrMessage, arg: IrArg) -> str:
        """Annotation for an argument value passed to an encoder."""
        if arg.type == ArgType.FIXED:
            return "Fixed | float"
        if arg.enum is not None and self.enum_ref(message, arg) is not None:
            return f"{self.enum_ref(message, arg)} | int"
        return self.py_type(message, arg)


def _batch_args(message: IrMessage) -> list[tuple[str, list[IrArg]]]:
    """Group arguments into batches of adjacent 4-byte slots.

    Returns list of (batch_type, args) where batch_type is "slot" or "single".
    """
    batches: list[tuple[str, list[IrArg]]] = []
    current: list[IrArg] = []

    for arg in message.args:
        if _rule(message, arg).layout == "slot":
            current.append(arg)
        else:
            if current:
                batches.append(("slot", current))
                current = []
            batches.append(("single", [arg]))

    if current:
        batches.append(("slot", current))

    return batches


def _slot_format(message: IrMessage, args: list[IrArg]) -> str:
    return "=" + "".join(_rule(message, arg).slot_format or "" for arg in args)


def _gen_pack_value(ctx: _Context, message: IrMessage, arg: IrArg) -> str:
    """Expression producing the slot value of an argument."""
    name = _arg_name(arg)
    if arg.type == ArgType.FIXED:
        return f"Fixed.coerce({name}).raw"
    if arg.type in (ArgType.OBJECT, ArgType.NEW_ID):
        return f"handle_id({name}, {arg.nullable}, {_where(message, arg)})"
    if arg.enum is not None:
        return f"int({name})"
    return name


def _gen_marshal(ctx: _Context, message: IrMessage) -> str:
    """Generate the encoder staticmethod for a message."""
    where = _where(message)
    params = ["_sender_id: int"] + [f"{_arg_name(a)}: {ctx.param_type(message, a)}" for a in message.args]
    lines = [
        "@staticmethod",
        f"def {message.direction}_{message.name}_marshal({', '.join(params)}) -> WireMessage:",
        f"    {_docstring(f'Encode {message.qualified_name} (opcode {message.opcode}).')}",
        "    _buf = bytearray()",
    ]
    if message.fd_count:
        lines.append("    _fds: list[int] = []")

    for kind, args in _batch_args(message):
        if kind == "slot":
            values = ", ".join(_gen_pack_value(ctx, message, a) for a in args)
            if len(args) == 1:
                values += ","
            lines.append(f'    _buf += _wire.pack_slots("{_slot_format(message, args)}", ({values}), {where})')
            continue

        arg = args[0]
        name = _arg_name(arg)
        layout = _rule(message, arg).layout
        if layout == "string":
            lines.append(f"    _wire.put_string(_buf, {name}, {arg.nullable}, {_where(message, arg)})")
        elif layout == "array":
            lines.append(f"    _wire.put_array(_buf, {name}, {_where(message, arg)})")
        elif layout == "fd":
            lines.append(f"    _fds.append({name})")
        elif layout == "generic_new_id":
            lines.append(f"    _id_{name} = handle_id({name}, False, {_where(message, arg)})")
            lines.append(f"    _wire.put_string(_buf, {name}.interface, False, {_where(message, arg)})")
            lines.append(f'    _buf += _wire.pack_slots("=II", ({name}.version, _id_{name}), {where})')
        else:
            raise EmissionError(f"unknown wire layout {layout}", (("message", message.qualified_name),))

    fds = ", _fds" if message.fd_count else ""
    lines.append(f"    return _wire.build_message(_sender_id, {message.opcode}, _buf{fds})")
    return "\n".join(lines)


def _gen_unpack_slots(ctx: _Context, message: IrMessage, args: list[IrArg]) -> list[str]:
    """Generate decode code for a batch of slot arguments.

    Values needing conversion are unpacked into _raw_ temporaries first.
    Bound new_id arguments are left raw; they are adopted once the whole
    message has decoded.
    """
    targets: list[str] = []
    post: list[str] = []
    for arg in args:
        name = _arg_name(arg)
        raw = f"_raw_{name}"
        where = _where(message, arg)
        if arg.type == ArgType.FIXED:
            targets.append(raw)
            post.append(f"{name} = Fixed(_raw_{name})")
        elif arg.type == ArgType.OBJECT:
            iface = f'"{arg.interface}"' if arg.interface else "None"
            targets.append(raw)
            post.append(f"{name} = _conn.lookup({raw}, {iface}, {arg.nullable}, {where})")
        elif arg.type == ArgType.NEW_ID:
            targets.append(raw)
        elif ctx.enum_ref(message, arg) is not None:
            targets.append(raw)
            post.append(f"{name} = _wire.enum_value({ctx.enum_ref(message, arg)}, {raw}, {where})")
        else:
            targets.append(name)

    names = ", ".join(targets)
    # Trailing comma for single values so tuple unpacking works: val, = (1,)
    if len(args) == 1:
        names += ","
    fmt = _slot_format(message, args)
    return [
        f'{names} = _wire.unpack_slots("{fmt}", _data, _o, {_where(message)})',
        f"_o += {SLOT_SIZE * len(args)}",
        *post,
    ]


def _gen_demarshal(ctx: _Context, message: IrMessage) -> str:
    """Generate the decoder staticmethod for a message."""
    types = [ctx.py_type(message, a) for a in message.args]
    returns = f"tuple[{', '.join(types)}]" if types else "tuple[()]"
    lines = [
        "@staticmethod",
        f"def {message.direction}_{message.name}_demarshal(",
        "    _data: bytes | memoryview, _fds: FdQueue, _conn: Connection, _version: int",
        f") -> {returns}:",
        f"    {_docstring(f'Decode {message.qualified_name} (opcode {message.opcode}).')}",
    ]
    body = ["_o = 0"]
    adopt: list[str] = []

    for kind, args in _batch_args(message):
        if kind == "slot":
            body.extend(_gen_unpack_slots(ctx, message, args))
            for arg in args:
                if arg.type == ArgType.NEW_ID:
                    name = _arg_name(arg)
                    ref = ctx.interface_ref(arg.interface or "")
                    adopt.append(f"{name} = _conn.adopt({ref}, _raw_{name}, _version, {_where(message, arg)})")
            continue

        arg = args[0]
        name = _arg_name(arg)
        where = _where(message, arg)
        layout = _rule(message, arg).layout
        if layout == "string":
            body.append(f"{name}, _o = _wire.get_string(_data, _o, {arg.nullable}, {where})")
        elif layout == "array":
            body.append(f"{name}, _o = _wire.get_array(_data, _o, {where})")
        elif layout == "fd":
            body.append(f"{name} = _fds.take({where})")
        elif layout == "generic_new_id":
            body.append(f"_iface_{name}, _o = _wire.get_string(_data, _o, False, {where})")
            body.append(f'_version_{name}, _raw_{name} = _wire.unpack_slots("=II", _data, _o, {where})')
            body.append("_o += 8")
            adopt.append(f"{name} = _conn.bind(_iface_{name}, _raw_{name}, _version_{name}, {where})")
        else:
            raise EmissionError(f"unknown wire layout {layout}", (("message", message.qualified_name),))

    body.append(f"_wire.check_consumed(_data, _o, {_where(message)})")
    body.extend(adopt)

    names = [_arg_name(a) for a in message.args]
    if not names:
        body.append("return ()")
    elif len(names) == 1:
        body.append(f"return ({names[0]},)")
    else:
        body.append(f"return ({', '.join(names)})")

    lines.extend(f"    {line}" for line in body)
    return "\n".join(lines)


def _generic_params(message: IrMessage) -> tuple[str, str]:
    """Parameter names for the interface and version of a generic new_id."""
    taken = {_arg_name(a) for a in message.args}
    interface, version = "interface", "version"
    if interface in taken or version in taken:
        new_id = next(a for a in message.args if a.type == ArgType.NEW_ID and a.interface is None)
        interface, version = f"{new_id.name}_interface", f"{new_id.name}_version"
    return interface, version


def _gen_send_method(ctx: _Context, message: IrMessage) -> str:
    """Generate the handle method that sends a message."""
    codec = f"{_class_name(message.interface)}Codec"
    params = ["self"]
    body: list[str] = []
    created: list[tuple[str, str]] = []

    if message.since > 1:
        body.append(f'self._require({message.since}, "{message.name}")')

    for arg in message.args:
        name = _arg_name(arg)
        if arg.type != ArgType.NEW_ID:
            params.append(f"{name}: {ctx.param_type(message, arg)}")
            continue
        if arg.interface is None:
            interface, version = _generic_params(message)
            params.append(f"{interface}: type[Handle] | str")
            params.append(f"{version}: int")
            body.append(f"{name} = self.connection.create({interface}, {version})")
        else:
            body.append(f"{name} = self.connection.create({ctx.interface_ref(arg.interface)}, self.version)")
        created.append((name, ctx.py_type(message, arg)))

    call_args = ", ".join(["self.id"] + [_arg_name(a) for a in message.args])
    send = f"self._send({codec}.{message.direction}_{message.name}_marshal({call_args}))"
    if created:
        # Objects for a message that was never sent must not stay in the table
        body.append("try:")
        body.append(f"    {send}")
        body.append("except Exception:")
        body.extend(f"    self.connection.discard({name})" for name, _ in reversed(created))
        body.append("    raise")
    else:
        body.append(send)
    if message.destructor:
        body.append("self.connection.retire(self)")

    if not created:
        returns = "None"
    elif len(created) == 1:
        returns = created[0][1]
        body.append(f"return {created[0][0]}")
    else:
        returns = f"tuple[{', '.join(t for _, t in created)}]"
        body.append(f"return {', '.join(n for n, _ in created)}")

    since = f"Available since version {message.since}." if message.since > 1 else None
    doc = _docstring(message.summary or f"Send {message.qualified_name}.", message.description, since)
    lines = [f"def {_method_name(message)}({', '.join(params)}) -> {returns}:", textwrap.indent(doc, "    ")]
    lines.extend(f"    {line}" for line in body)
    return "\n".join(lines)


def _gen_listener_method(ctx: _Context, message: IrMessage) -> str:
    """Generate the abstract listener method for a received message."""
    params = ["self", f"this: {_class_name(message.interface)}"]
    params += [f"{_arg_name(a)}: {ctx.py_type(message, a)}" for a in message.args]
    arg_docs = [f"{a.name}: {a.summary}" for a in message.args if a.summary]
    doc = _docstring(
        message.summary or f"Handle {message.qualified_name}.",
        message.description,
        "\n".join(arg_docs) or None,
    )
    return "\n".join(
        [
            "@abstractmethod",
            f"def {_listener_name(message)}({', '.join(params)}) -> None:",
            textwrap.indent(doc, "    "),
        ]
    )


def _gen_dispatch(ctx: _Context, interface: IrInterface) -> str:
    """Generate the opcode dispatch method for received messages."""
    direction = ctx.options.receives
    codec = f"{_class_name(interface.name)}Codec"
    lines = ["def _dispatch(self, _opcode: int, _data: memoryview, _fds: FdQueue) -> None:"]

    for message in interface.messages(direction):
        names = [_arg_name(a) for a in message.args]
        call = f"{codec}.{direction}_{message.name}_demarshal(_data, _fds, self.connection, self.version)"
        lines.append(f"    if _opcode == {message.opcode}:")
        if message.since > 1:
            lines.append(f"        if self.version < {message.since}:")
            lines.append(
                '            raise _wire.UnknownOpcode(f"{self!r}: '
                f'{message.name} requires version {message.since}")'
            )
        if names:
            targets = ", ".join(names) + ("," if len(names) == 1 else "")
            lines.append(f"        {targets} = {call}")
        else:
            lines.append(f"        {call}")
        lines.append("        if self.alive and self.listener is not None:")
        lines.append(f"            self.listener.{_listener_name(message)}({', '.join(['self'] + names)})")
        if message.destructor:
            lines.append("        self.connection.destroy(self)")
        lines.append("        return")

    lines.append(f'    raise _wire.UnknownOpcode(f"{{self!r}}: unknown {direction} opcode {{_opcode}}")')
    return "\n".join(lines)


def _gen_enum(enum: IrEnum) -> str:
    """Generate a nested IntEnum or IntFlag class."""
    base = "IntFlag" if enum.bitfield else "IntEnum"
    lines = [
        f"class {to_camel_case(enum.name)}({base}):",
        textwrap.indent(_docstring(enum.summary or enum.name, enum.description), "    "),
        "",
    ]
    for entry in enum.entries:
        if entry.description:
            lines.extend(f"    # {line}".rstrip() for line in inspect.cleandoc(entry.description).splitlines())
        value = f"{entry.value:#x}" if enum.bitfield else str(entry.value)
        line = f"    {to_constant(entry.name, enum.name)} = {value}"
        notes = [" ".join(entry.summary.split())] if entry.summary else []
        if entry.since > enum.since:
            notes.append(f"since version {entry.since}")
        if notes:
            line += "  # " + ", ".join(notes)
        lines.append(line)
    return "\n".join(lines)


def _check_opcodes(interface: IrInterface) -> None:
    for direction in Direction:
        for index, message in enumerate(interface.messages(direction)):
            if message.opcode != index:
                raise EmissionError(
                    f"opcode {message.opcode} does not match declaration index {index}",
                    (("interface", interface.name), (str(direction), message.name)),
                )


def _check_unique(names: list[tuple[str, str]], reserved: frozenset[str], path: Location) -> None:
    """Fail when generated Python names collide.

    names are (python name, schema name) pairs.
    """
    seen: dict[str, str] = {}
    for python_name, schema_name in names:
        if python_name in reserved:
            raise SemanticConstraintError(
                f"'{schema_name}' generates the name {python_name}, which is reserved", path
            )
        if python_name in seen:
            raise SemanticConstraintError(
                f"'{schema_name}' and '{seen[python_name]}' both generate the name {python_name}", path
            )
        seen[python_name] = schema_name


def _check_names(ctx: _Context) -> None:
    """Reject schemas whose Python names would collide."""
    module_names: list[tuple[str, str]] = []
    for interface in ctx.protocol_set.interfaces:
        cls = _class_name(interface.name)
        module_names += [(cls, interface.name), (f"{cls}Codec", interface.name), (f"{cls}Listener", interface.name)]
    _check_unique(module_names, MODULE_NAMES, ())

    for interface in ctx.protocol_set.interfaces:
        path: Location = (("interface", interface.name),)
        members = [(to_camel_case(e.name), e.name) for e in interface.enums]
        members += [(_method_name(m), m.name) for m in interface.messages(ctx.options.sends)]
        _check_unique(members, HANDLE_ATTRIBUTES, path)
        _check_unique([(_listener_name(m), m.name) for m in interface.messages(ctx.options.receives)], frozenset(), path)

        for enum in interface.enums:
            entries = [(to_constant(e.name, enum.name), e.name) for e in enum.entries]
            _check_unique(entries, frozenset(), path + (("enum", enum.name),))

        for message in interface.requests + interface.events:
            args = [(_arg_name(a), a.name) for a in message.args]
            if any(a.type == ArgType.NEW_ID and a.interface is None for a in message.args):
                args += [(name, name) for name in _generic_params(message)]
            _check_unique(args, frozenset(), path + ((str(message.direction), message.name),))


def _header_comments(protocol_set: ProtocolSet) -> list[str]:
    """Copyright notices of the emitted protocols, as comment lines."""
    lines: list[str] = []
    for protocol in protocol_set.protocols:
        if not protocol.copyright:
            continue
        if lines:
            lines.append("#")
        lines.append(f"# Copyright notice of the {protocol.name} protocol:")
        lines.append("#")
        for line in inspect.cleandoc(protocol.copyright).splitlines():
            lines.append(f"# {line}".rstrip())
    return lines


def _module_doc(protocol_set: ProtocolSet, options: GeneratorOptions) -> str:
    names = ", ".join(p.name for p in protocol_set.protocols) or "no"
    lines = [f"Protocol bindings for {names} ({options.role} side)."]
    for protocol in protocol_set.protocols:
        if protocol.summary:
            lines.append(f"{protocol.name}: {' '.join(protocol.summary.split())}")
    lines += ["", "Generated by yutani. Do not edit."]
    return _doc_text("\n".join(lines))


def render(protocol_set: ProtocolSet, options: GeneratorOptions = GeneratorOptions()) -> str:
    """Render a resolved protocol set to Python source code."""
    ctx = _Context(protocol_set, options)
    for interface in protocol_set.interfaces:
        _check_opcodes(interface)
    _check_names(ctx)

    source = template.render(
        interfaces=protocol_set.interfaces,
        header_comments=_header_comments(protocol_set),
        module_doc=_module_doc(protocol_set, options),
        sends=options.sends,
        receives=options.receives,
        class_name=_class_name,
        docstring=_docstring,
        names=lambda messages: repr(tuple(m.name for m in messages)),
        gen_marshal=lambda m: _gen_marshal(ctx, m),
        gen_demarshal=lambda m: _gen_demarshal(ctx, m),
        gen_send_method=lambda m: _gen_send_method(ctx, m),
        gen_listener_method=lambda m: _gen_listener_method(ctx, m),
        gen_dispatch=lambda i: _gen_dispatch(ctx, i),
        gen_enum=_gen_enum,
        runtime_import=options.runtime_import,
        BLANK_LINE="",
    )
    logger.debug("rendered %d interface(s), %d bytes", len(protocol_set.interfaces), len(source))
    return source


def runtime() -> dict[str, str]:
    """Return the Python runtime files as a dict of filename -> content."""
    result: dict[str, str] = {}
    for filename in RUNTIME_FILES:
        content = resources.files("yutani.proto").joinpath(filename).read_text()
        result[filename] = content
    return result
