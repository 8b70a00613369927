"""Protocol definition parser using Lark (.wlproto) and tomllib (.toml).

Both front-ends produce the same nested-table shape, which is then checked
and converted into the AST by one structural validator. The parser never
resolves references between entities; that is the resolver's job.
"""

import logging
import os
import re
import tomllib
from dataclasses import dataclass
from typing import Any

from lark import Lark, Token
from lark.exceptions import UnexpectedEOF, UnexpectedInput, UnexpectedToken, VisitError
from lark.visitors import Transformer, v_args

from .errors import Location, SchemaSyntaxError
from .types import ARG_TYPES, ArgType, ProtoArg, ProtoEntry, ProtoEnum, ProtoInterface, ProtoMessage, Protocol

logger = logging.getLogger(__name__)

_g_parser: Lark | None = None

MAX_UINT = 0xFFFFFFFF

NAME_RE = re.compile(r"[A-Za-z][A-Za-z0-9_]*\Z")
ENTRY_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_]*\Z")
ENUM_REF_RE = re.compile(r"[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z][A-Za-z0-9_]*)?\Z")

# Key used to carry source line numbers from the text front-end
LINE_KEY = "__line__"

# Annotations accepted per element; None marks a flag without arguments
ANNOTATIONS: dict[str, dict[str, type | None]] = {
    "protocol": {"copyright": str, "summary": str, "description": str},
    "interface": {"summary": str, "description": str},
    "message": {"since": int, "destructor": None, "summary": str, "description": str},
    "arg": {"summary": str},
    "enum": {"bitfield": None, "since": int, "summary": str, "description": str},
    "entry": {"since": int, "alias": None, "summary": str, "description": str},
}


@dataclass
class _Annotation:
    name: str
    arguments: list[Any]
    line: int | None


def _number(token: Token) -> int:
    text = str(token)
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text)


def _string(token: Token) -> str:
    text = str(token)
    if text.startswith('"""'):
        return text[3:-3]
    return re.sub(r"\\(.)", lambda m: "\n" if m.group(1) == "n" else m.group(1), text[1:-1])


def _apply_annotations(node: dict[str, Any], annotations: list[_Annotation], scope: str) -> None:
    allowed = ANNOTATIONS[scope]
    for annotation in annotations:
        if annotation.name not in allowed:
            raise SchemaSyntaxError(
                f"unknown annotation @{annotation.name} on {scope}", line=annotation.line
            )
        if annotation.name in node:
            raise SchemaSyntaxError(f"duplicate annotation @{annotation.name}", line=annotation.line)

        kind = allowed[annotation.name]
        if kind is None:
            if annotation.arguments:
                raise SchemaSyntaxError(
                    f"@{annotation.name} takes no arguments", line=annotation.line
                )
            node[annotation.name] = True
            continue

        if len(annotation.arguments) != 1 or not isinstance(annotation.arguments[0], kind):
            raise SchemaSyntaxError(
                f"@{annotation.name} takes exactly one {kind.__name__} argument",
                line=annotation.line,
            )
        node[annotation.name] = annotation.arguments[0]


@v_args(meta=True)
class TreeTransformer(Transformer):
    """Transform the parse tree into plain schema tables."""

    def start(self, meta: Any, args: list[Any]) -> dict[str, Any]:
        annotations, name, *interfaces = args
        node: dict[str, Any] = {"name": str(name), "interface": interfaces}
        _apply_annotations(node, annotations, "protocol")
        return node

    def interface(self, meta: Any, args: list[Any]) -> dict[str, Any]:
        annotations, name, version, *members = args
        node: dict[str, Any] = {
            "name": str(name),
            "version": _number(version),
            "request": [],
            "event": [],
            "enum": [],
            LINE_KEY: meta.line,
        }
        for kind, member in members:
            node[kind].append(member)
        _apply_annotations(node, annotations, "interface")
        return node

    def request(self, meta: Any, args: list[Any]) -> tuple[str, dict[str, Any]]:
        return "request", self._message(meta, args)

    def event(self, meta: Any, args: list[Any]) -> tuple[str, dict[str, Any]]:
        return "event", self._message(meta, args)

    def _message(self, meta: Any, args: list[Any]) -> dict[str, Any]:
        annotations, name, *arguments = args
        node: dict[str, Any] = {"name": str(name), "arg": arguments, LINE_KEY: meta.line}
        _apply_annotations(node, annotations, "message")
        return node

    def arg(self, meta: Any, args: list[Any]) -> dict[str, Any]:
        annotations, name, (type_name, reference), *rest = args
        node: dict[str, Any] = {"name": str(name), "type": type_name, LINE_KEY: meta.line}
        _apply_annotations(node, annotations, "arg")

        for token in rest:
            if token.type == "NULLABLE":
                node["nullable"] = True
            elif "summary" in node:
                raise SchemaSyntaxError("duplicate summary", line=meta.line)
            else:
                node["summary"] = _string(token)

        if reference is not None:
            if type_name in (ArgType.OBJECT, ArgType.NEW_ID):
                node["interface"] = reference
            elif type_name in (ArgType.INT, ArgType.UINT):
                node["enum"] = reference
            else:
                raise SchemaSyntaxError(
                    f"type '{type_name}' does not take a reference", line=meta.line
                )
        return node

    def arg_type(self, meta: Any, args: list[Any]) -> tuple[str, str | None]:
        return str(args[0]), (args[1] if len(args) > 1 else None)

    def reference(self, meta: Any, args: list[Any]) -> str:
        return ".".join(str(a) for a in args)

    def enum(self, meta: Any, args: list[Any]) -> tuple[str, dict[str, Any]]:
        annotations, name, *entries = args
        node: dict[str, Any] = {"name": str(name), "entry": entries, LINE_KEY: meta.line}
        _apply_annotations(node, annotations, "enum")
        return "enum", node

    def entry(self, meta: Any, args: list[Any]) -> dict[str, Any]:
        annotations, name, value, *rest = args
        node: dict[str, Any] = {"name": name, "value": _number(value), LINE_KEY: meta.line}
        _apply_annotations(node, annotations, "entry")
        if rest:
            if "summary" in node:
                raise SchemaSyntaxError("duplicate summary", line=meta.line)
            node["summary"] = _string(rest[0])
        return node

    def entry_name(self, meta: Any, args: list[Any]) -> str:
        return str(args[0])

    def annotations(self, meta: Any, args: list[Any]) -> list[_Annotation]:
        return list(args)

    def annotation(self, meta: Any, args: list[Any]) -> _Annotation:
        return _Annotation(name=str(args[0]), arguments=list(args[1:]), line=meta.line)

    def annotation_arg(self, meta: Any, args: list[Any]) -> Any:
        token = args[0]
        if token.type == "NUMBER":
            return _number(token)
        return _string(token)


class _Table:
    """Typed, consuming view over one schema table."""

    def __init__(self, data: Any, path: Location, what: str) -> None:
        if not isinstance(data, dict):
            raise SchemaSyntaxError(f"{what} must be a table", path)
        self.data = dict(data)
        self.path = path
        self.line: int | None = self.data.pop(LINE_KEY, None)

    def error(self, message: str) -> SchemaSyntaxError:
        return SchemaSyntaxError(message, self.path, line=self.line)

    def _check(self, key: str, value: Any, kind: type) -> Any:
        if kind is int:
            valid = isinstance(value, int) and not isinstance(value, bool)
        else:
            valid = isinstance(value, kind)
        if not valid:
            raise self.error(f"'{key}' must be of type {kind.__name__}")
        return value

    def required(self, key: str, kind: type) -> Any:
        if key not in self.data:
            raise self.error(f"missing required field '{key}'")
        return self._check(key, self.data.pop(key), kind)

    def optional(self, key: str, kind: type, default: Any = None) -> Any:
        if key not in self.data:
            return default
        return self._check(key, self.data.pop(key), kind)

    def name(self, pattern: re.Pattern[str] = NAME_RE) -> str:
        name = self.required("name", str)
        if not pattern.match(name):
            raise self.error(f"invalid name '{name}'")
        return name

    def since(self) -> int | None:
        since = self.optional("since", int)
        if since is not None and since < 1:
            raise self.error("'since' must be at least 1")
        return since

    def tables(self, key: str) -> list[Any]:
        return self.optional(key, list, [])

    def finish(self) -> None:
        if self.data:
            unknown = ", ".join(sorted(self.data))
            raise self.error(f"unknown field(s): {unknown}")


def _check_unique(items: list[Any], kind: str, path: Location) -> None:
    seen: set[str] = set()
    for item in items:
        if item.name in seen:
            raise SchemaSyntaxError(
                f"duplicate {kind} '{item.name}'", path + ((kind, item.name),), line=item.line
            )
        seen.add(item.name)


def _build_arg(data: Any, path: Location) -> ProtoArg:
    table = _Table(data, path, "argument")
    name = table.name()
    table.path = path + (("arg", name),)

    type_name = table.required("type", str)
    if type_name not in ARG_TYPES:
        raise table.error(f"unknown type '{type_name}'")

    interface = table.optional("interface", str)
    if interface is not None and not NAME_RE.match(interface):
        raise table.error(f"invalid interface name '{interface}'")
    enum = table.optional("enum", str)
    if enum is not None and not ENUM_REF_RE.match(enum):
        raise table.error(f"invalid enum reference '{enum}'")

    nullable = table.optional("nullable", bool)
    allow_null = table.optional("allow-null", bool)
    if nullable is not None and allow_null is not None:
        raise table.error("both 'nullable' and 'allow-null' given")

    arg = ProtoArg(
        name=name,
        type=ArgType(type_name),
        interface=interface,
        enum=enum,
        nullable=bool(nullable or allow_null),
        summary=table.optional("summary", str),
        line=table.line,
    )
    table.finish()
    return arg


def _build_message(data: Any, path: Location, kind: str) -> ProtoMessage:
    table = _Table(data, path, kind)
    name = table.name()
    table.path = path + ((kind, name),)

    args = [_build_arg(a, table.path) for a in table.tables("arg")]
    _check_unique(args, "arg", table.path)

    message = ProtoMessage(
        name=name,
        args=args,
        since=table.since(),
        destructor=table.optional("destructor", bool, False),
        summary=table.optional("summary", str),
        description=table.optional("description", str),
        line=table.line,
    )
    table.finish()
    return message


def _build_entry(data: Any, path: Location) -> ProtoEntry:
    table = _Table(data, path, "entry")
    name = table.name(ENTRY_NAME_RE)
    table.path = path + (("entry", name),)

    value = table.required("value", int)
    if not 0 <= value <= MAX_UINT:
        raise table.error(f"value {value} does not fit in 32 bits")

    entry = ProtoEntry(
        name=name,
        value=value,
        since=table.since(),
        alias=table.optional("alias", bool, False),
        summary=table.optional("summary", str),
        description=table.optional("description", str),
        line=table.line,
    )
    table.finish()
    return entry


def _build_enum(data: Any, path: Location) -> ProtoEnum:
    table = _Table(data, path, "enum")
    name = table.name()
    table.path = path + (("enum", name),)

    entries = [_build_entry(e, table.path) for e in table.tables("entry")]
    if not entries:
        raise table.error("enum has no entries")
    _check_unique(entries, "entry", table.path)

    enum = ProtoEnum(
        name=name,
        entries=entries,
        bitfield=table.optional("bitfield", bool, False),
        since=table.since(),
        summary=table.optional("summary", str),
        description=table.optional("description", str),
        line=table.line,
    )
    table.finish()
    return enum


def _build_interface(data: Any, path: Location) -> ProtoInterface:
    table = _Table(data, path, "interface")
    name = table.name()
    table.path = path + (("interface", name),)

    version = table.required("version", int)
    if version < 1:
        raise table.error("'version' must be at least 1")

    requests = [_build_message(m, table.path, "request") for m in table.tables("request")]
    events = [_build_message(m, table.path, "event") for m in table.tables("event")]
    enums = [_build_enum(e, table.path) for e in table.tables("enum")]
    _check_unique(requests, "request", table.path)
    _check_unique(events, "event", table.path)
    _check_unique(enums, "enum", table.path)

    interface = ProtoInterface(
        name=name,
        version=version,
        requests=requests,
        events=events,
        enums=enums,
        summary=table.optional("summary", str),
        description=table.optional("description", str),
        line=table.line,
    )
    table.finish()
    return interface


def build(data: Any) -> Protocol:
    """Validate a schema table tree and convert it into a Protocol."""
    table = _Table(data, (), "protocol")
    name = table.name()
    table.path = (("protocol", name),)

    interfaces = [_build_interface(i, table.path) for i in table.tables("interface")]
    _check_unique(interfaces, "interface", table.path)

    protocol = Protocol(
        name=name,
        interfaces=interfaces,
        copyright=table.optional("copyright", str),
        summary=table.optional("summary", str),
        description=table.optional("description", str),
    )
    table.finish()
    logger.debug("parsed protocol %s with %d interface(s)", name, len(interfaces))
    return protocol


def _syntax_error(exc: UnexpectedInput, text: str) -> SchemaSyntaxError:
    if isinstance(exc, UnexpectedEOF) or (isinstance(exc, UnexpectedToken) and exc.token.type == "$END"):
        return SchemaSyntaxError("unexpected end of input")
    context = exc.get_context(text).rstrip()
    return SchemaSyntaxError(f"invalid syntax at column {exc.column}\n{context}", line=exc.line)


def parse(text: str) -> Protocol:
    """Parse a .wlproto protocol definition."""
    global _g_parser

    if not _g_parser:
        with open(f"{os.path.dirname(__file__)}/protocol.lark", encoding="utf-8") as f:
            grammar = f.read()

        _g_parser = Lark(grammar, parser="lalr", propagate_positions=True)

    try:
        tree = _g_parser.parse(text)
    except UnexpectedInput as exc:
        raise _syntax_error(exc, text) from None

    try:
        data = TreeTransformer().transform(tree)
    except VisitError as exc:
        if isinstance(exc.orig_exc, SchemaSyntaxError):
            raise exc.orig_exc from None
        raise

    return build(data)


def parse_toml(text: str) -> Protocol:
    """Parse a protocol definition in the TOML layout."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise SchemaSyntaxError(f"invalid TOML: {exc}") from None

    return build(data)
