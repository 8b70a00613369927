"""Compiler entry point: schema sources in, generated Python module out."""

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .errors import CompileError, SchemaSyntaxError
from .parser import parse, parse_toml
from .python import GeneratorOptions, render
from .resolver import resolve
from .types import Protocol

logger = logging.getLogger(__name__)

SchemaFormat = Literal["wlproto", "toml"]


@dataclass(frozen=True)
class SchemaSource:
    """Schema text held in memory, with its format and a name for error messages."""

    text: str
    format: SchemaFormat = "wlproto"
    name: str | None = None


Source = str | os.PathLike[str] | SchemaSource


def _read(source: Source) -> SchemaSource:
    if isinstance(source, SchemaSource):
        return source
    if isinstance(source, os.PathLike):
        path = Path(source)
        schema_format: SchemaFormat = "toml" if path.suffix == ".toml" else "wlproto"
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise SchemaSyntaxError(f"not valid UTF-8: {exc.reason} at byte {exc.start}", source=str(path)) from exc
        except OSError as exc:
            raise SchemaSyntaxError(f"cannot read file: {exc.strerror or exc}", source=str(path)) from exc
        return SchemaSource(text, schema_format, str(path))
    return SchemaSource(source)


def load(source: Source) -> Protocol:
    """Parse one schema source.

    Paths pick their format by suffix (``.toml`` or anything else for the
    .wlproto syntax); plain strings are .wlproto text.
    """
    schema = _read(source)
    try:
        if schema.format == "toml":
            return parse_toml(schema.text)
        return parse(schema.text)
    except CompileError as exc:
        if exc.source is None:
            exc.source = schema.name
        raise


def compile_protocols(
    sources: Iterable[Source],
    *,
    references: Iterable[Source] = (),
    options: GeneratorOptions = GeneratorOptions(),
) -> str:
    """Compile schemas into the source text of one Python module.

    All sources form a single set: interfaces may refer to each other in any
    order. ``references`` are parsed and used to bind names but generate no
    code. The first error aborts the compilation.
    """
    protocols = [load(source) for source in sources]
    referenced = [load(source) for source in references]
    logger.info(
        "compiling %s (%d reference(s)) for the %s role",
        ", ".join(p.name for p in protocols) or "nothing",
        len(referenced),
        options.role,
    )

    protocol_set = resolve(protocols, referenced)
    source = render(protocol_set, options)
    logger.info("generated %d interface(s)", len(protocol_set.interfaces))
    return source
