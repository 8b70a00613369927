"""Naming helpers for code generation."""

import keyword


def to_camel_case(name: str) -> str:
    """Convert snake_case to CamelCase: core_display -> CoreDisplay."""
    return "".join(part[:1].upper() + part[1:] for part in name.split("_") if part)


def to_constant(name: str, prefix: str) -> str:
    """Convert an enum entry name to an UPPER_CASE constant.

    Names that are not valid identifiers on their own (such as ``90``) are
    prefixed: ``to_constant("90", "transform") -> "TRANSFORM_90"``.
    """
    if name[:1].isdigit():
        name = f"{prefix}_{name}"
    return name.upper()


def safe_name(name: str, reserved: frozenset[str] = frozenset()) -> str:
    """Return a Python identifier for a schema name, escaping keywords."""
    if keyword.iskeyword(name) or name in reserved:
        return f"{name}_"
    return name
