"""Command-line interface for yutani code generation."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from yutani.generator import python
from yutani.generator.compiler import compile_protocols, load
from yutani.generator.errors import CompileError
from yutani.generator.ir import ProtocolSet
from yutani.generator.python import GeneratorOptions
from yutani.generator.resolver import resolve
from yutani.generator.sizes import ProtocolSizeInfo, calculate_sizes

logger = logging.getLogger(__name__)

err_console = Console(stderr=True)


def _fail(exc: CompileError) -> NoReturn:
    err_console.print(f"[bold red]error:[/bold red] {escape(str(exc))}", highlight=False, soft_wrap=True)
    sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log compiler progress at debug level")
def cli(verbose: bool) -> None:
    """Yutani protocol code generator."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


@cli.command()
@click.option(
    "--input", "-i", "input_files", required=True, multiple=True, type=click.Path(exists=True), help="Protocol file"
)
@click.option(
    "--reference",
    "-r",
    "reference_files",
    multiple=True,
    type=click.Path(exists=True),
    help="Protocol file used to bind names only",
)
@click.option("--output", "-o", "output_file", required=True, help="Output file")
@click.option("--role", type=click.Choice(["client", "server"]), default="client", help="Side to generate")
@click.option(
    "--runtime-import",
    "runtime_import",
    is_flag=False,
    flag_value="yutani.proto",
    default=None,
    help="Import path for runtime. No value=yutani.proto, omit=yutani_runtime",
)
def gen(
    input_files: tuple[str, ...],
    reference_files: tuple[str, ...],
    output_file: str,
    role: str,
    runtime_import: str | None,
) -> None:
    """Generate Python protocol bindings from definition files."""
    # Default to "yutani_runtime", the folder written by `yutani runtime`
    import_path = runtime_import if runtime_import is not None else "yutani_runtime"
    try:
        options = GeneratorOptions(role=role, runtime_import=import_path)  # type: ignore[arg-type]
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--runtime-import") from None

    try:
        generated_file = compile_protocols(
            [Path(f) for f in input_files],
            references=[Path(f) for f in reference_files],
            options=options,
        )
    except CompileError as exc:
        _fail(exc)

    with open(output_file, "w", encoding="utf-8") as f:
        f.write(generated_file)
    logger.debug("wrote %s", output_file)


@cli.command()
@click.option("--output", "-o", "output_path", default=".", help="Output directory")
@click.option("--name", default="yutani_runtime", help="Runtime folder name")
def runtime(output_path: str, name: str) -> None:
    """Generate runtime support code."""
    runtime_dir = Path(output_path) / name
    runtime_dir.mkdir(parents=True, exist_ok=True)
    for filename, content in python.runtime().items():
        (runtime_dir / filename).write_text(content)
    print(f"Generated Python runtime in {runtime_dir}")


def _load_set(input_files: tuple[str, ...], reference_files: tuple[str, ...] = ()) -> ProtocolSet:
    protocols = [load(Path(f)) for f in input_files]
    references = [load(Path(f)) for f in reference_files]
    return resolve(protocols, references)


@cli.command()
@click.option(
    "--input", "-i", "input_files", required=True, multiple=True, type=click.Path(exists=True), help="Protocol file"
)
@click.option(
    "--reference", "-r", "reference_files", multiple=True, type=click.Path(exists=True), help="Referenced file"
)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def info(input_files: tuple[str, ...], reference_files: tuple[str, ...], output_json: bool) -> None:
    """Display interfaces, opcodes and wire sizes."""
    try:
        protocol_set = _load_set(input_files, reference_files)
    except CompileError as exc:
        _fail(exc)

    size_info = calculate_sizes(protocol_set)

    if output_json:
        _output_json(size_info, protocol_set)
    else:
        _output_plain(size_info, protocol_set)


@cli.command()
@click.option("--input", "-i", "input_file", required=True, type=click.Path(exists=True), help="Protocol file")
def dump(input_file: str) -> None:
    """Print the parsed protocol as JSON."""
    try:
        protocol = load(Path(input_file))
    except CompileError as exc:
        _fail(exc)

    print(protocol.to_json(indent=2))


def _format_size(size: int | None) -> str:
    """Format a size value, handling None for unbounded."""
    return "unbounded" if size is None else str(size)


def _output_json(size_info: ProtocolSizeInfo, protocol_set: ProtocolSet) -> None:
    """Output protocol info as JSON."""
    data: dict = {
        "protocols": [p.name for p in protocol_set.protocols],
        "interfaces": {},
        "max_fixed_size": size_info.max_fixed_size,
        "max_fd_count": size_info.max_fd_count,
    }

    for interface in protocol_set.interfaces:
        messages = []
        for message_info in size_info.for_interface(interface.name):
            messages.append(
                {
                    "name": message_info.name,
                    "direction": message_info.direction.value,
                    "opcode": message_info.opcode,
                    "since": message_info.since,
                    "min_size": message_info.size.min_size,
                    "max_size": message_info.size.max_size,
                    "kind": message_info.size.kind.value,
                    "fds": message_info.fd_count,
                }
            )
        data["interfaces"][interface.name] = {
            "version": interface.version,
            "protocol": interface.protocol,
            "messages": messages,
            "enums": [enum.name for enum in interface.enums],
        }

    print(json.dumps(data, indent=2))


def _output_plain(size_info: ProtocolSizeInfo, protocol_set: ProtocolSet) -> None:
    """Output protocol info using rich text formatting."""
    console = Console()

    for interface in protocol_set.interfaces:
        console.print(f"[bold cyan]{interface.name}[/bold cyan] [dim]version {interface.version}[/dim]")

        table = Table(show_header=True, box=None, padding=(0, 2, 0, 0))
        table.add_column("Opcode", style="green", justify="right")
        table.add_column("Message", style="white")
        table.add_column("Dir", style="dim")
        table.add_column("Since", style="dim", justify="right")
        table.add_column("Size", style="yellow", justify="right")
        table.add_column("Fds", style="magenta", justify="right")

        for message_info in size_info.for_interface(interface.name):
            min_size = message_info.size.min_size
            max_size = message_info.size.max_size
            if min_size == max_size:
                size_str = f"{min_size} bytes"
            else:
                size_str = f"{min_size}-{_format_size(max_size)} bytes"

            table.add_row(
                str(message_info.opcode),
                message_info.name,
                message_info.direction.value,
                str(message_info.since),
                size_str,
                str(message_info.fd_count) if message_info.fd_count else "",
            )

        console.print(table)
        if interface.enums:
            names = ", ".join(enum.name for enum in interface.enums)
            console.print(f"  [dim]enums:[/dim] {names}")
        console.print()

    summary = Table(show_header=False, box=None, padding=(0, 2, 0, 2))
    summary.add_column("Label", style="dim")
    summary.add_column("Value", style="white")
    summary.add_row("Largest fixed message", f"{size_info.max_fixed_size} bytes")
    summary.add_row("Most fds per message", str(size_info.max_fd_count))
    console.print(summary)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
