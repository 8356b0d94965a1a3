"""Error kinds raised while compiling a tape program.

Every failure aborts the whole compilation.  Lower layers raise without a
source position; the driver fills in ``lineno``/``source_name`` before the
exception leaves ``TapeCompiler.compile``.
"""

from __future__ import annotations

from typing import Optional


class CompilerError(RuntimeError):
    """Raised for user-facing compilation errors."""

    def __init__(self, message: str, lineno: Optional[int] = None,
                 source_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.lineno = lineno
        self.source_name = source_name

    def locate(self, lineno: int, source_name: str) -> "CompilerError":
        if self.lineno is None:
            self.lineno = lineno
        if self.source_name is None:
            self.source_name = source_name
        return self

    def __str__(self) -> str:
        if self.lineno is None:
            return self.message
        return f"{self.source_name or '<string>'}:{self.lineno}: {self.message}"


class AddressResolutionError(CompilerError):
    """An operand could not be parsed or names an unbound variable."""


class DuplicateDefinition(CompilerError):
    """A DEF name or scope name is already taken."""


class UnknownDefinition(CompilerError):
    """CALL references a name that was never defined."""


class NoOpenConstruct(CompilerError):
    """ENDDEF/ENDIF/ENDWHILE without a matching opener."""


class IllegalNestedConstruct(CompilerError):
    """A keyword was used where the nesting rules forbid it."""


class OutOfMemory(CompilerError):
    """The RAM cell pool has no free cell left."""


class MalformedStatement(CompilerError):
    """Unknown keyword or wrong number of arguments."""


class UnclosedConstruct(CompilerError):
    """Input ended while a DEF, IF or WHILE block was still open."""
