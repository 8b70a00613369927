"""Error taxonomy for the protocol compiler."""

Location = tuple[tuple[str, str], ...]


class CompileError(RuntimeError):
    """Base class for every error raised while compiling a protocol.

    ``path`` is a chain of (kind, name) pairs such as
    ``(("protocol", "core"), ("interface", "core_display"), ("request", "sync"))``
    pointing at the offending schema entry.
    """

    def __init__(
        self,
        message: str,
        path: Location = (),
        *,
        line: int | None = None,
        source: str | None = None,
    ) -> None:
        self.message = message
        self.path = path
        self.line = line
        self.source = source
        super().__init__(message)

    @property
    def location(self) -> str:
        """Human readable location of the error."""
        parts: list[str] = []
        if self.source:
            parts.append(self.source if self.line is None else f"{self.source}:{self.line}")
        elif self.line is not None:
            parts.append(f"line {self.line}")
        if self.path:
            parts.append(" > ".join(f"{kind} '{name}'" for kind, name in self.path))
        return ", ".join(parts)

    def __str__(self) -> str:
        location = self.location
        if location:
            return f"{location}: {self.message}"
        return self.message


class SchemaSyntaxError(CompileError):
    """Raised when a schema is structurally malformed."""


class UnresolvedReferenceError(CompileError):
    """Raised when an interface or enum reference names nothing known."""


class SemanticConstraintError(CompileError):
    """Raised when a schema violates a bitfield, version or uniqueness rule."""


class EmissionError(CompileError):
    """Raised when the emitter finds a broken IR invariant.

    The resolver never produces such an IR, so this always indicates a defect.
    """
