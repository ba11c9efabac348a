"""Error hierarchy for the tmtk build pipeline.

Individual findings are exceptions carrying the details needed to act on
them (file, line, symbol, offset).  Each pipeline stage gathers its findings
and raises one ``BuildFailure`` subclass so the caller sees every problem of
the first failing stage at once.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence


class TmtkError(Exception):
    """Base class for all tmtk failures."""


class ConfigError(TmtkError):
    """Invalid or inconsistent build configuration."""


def _where(path: Optional[Path], line_number: Optional[int] = None) -> str:
    location = str(path) if path is not None else "<input>"
    if line_number is not None:
        location = f"{location}:{line_number}"
    return location


# --------------------------------------------------------------------- loading


class LoadError(TmtkError):
    """Link table / symbol table could not be loaded."""


class TableIOError(LoadError):
    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{_where(path)}: cannot read table: {reason}")


class MalformedLine(LoadError):
    def __init__(self, path: Optional[Path], line_number: int, raw_line: str) -> None:
        self.path = path
        self.line_number = line_number
        self.raw_line = raw_line
        super().__init__(f"{_where(path, line_number)}: malformed line {raw_line!r} (expected ADDRESS:NAME)")


class InvalidAddress(LoadError):
    def __init__(self, path: Optional[Path], line_number: int, raw_value: str) -> None:
        self.path = path
        self.line_number = line_number
        self.raw_value = raw_value
        super().__init__(f"{_where(path, line_number)}: invalid address {raw_value!r}")


class DuplicateLinkName(LoadError):
    def __init__(self, path: Optional[Path], name: str, line_number: Optional[int] = None) -> None:
        self.path = path
        self.name = name
        self.line_number = line_number
        super().__init__(f"{_where(path, line_number)}: duplicate link table name '{name}'")


class DuplicateSymbol(LoadError):
    def __init__(self, path: Optional[Path], name: str, line_number: Optional[int] = None) -> None:
        self.path = path
        self.name = name
        self.line_number = line_number
        super().__init__(f"{_where(path, line_number)}: duplicate symbol '{name}'")


class BuildDirError(LoadError):
    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"cannot create build directory {path}: {reason}")


# ------------------------------------------------------------------- compiling


class CompileError(TmtkError):
    """A source file could not be turned into a usable object."""


class UnsupportedInput(CompileError):
    def __init__(self, path: Path, expected_suffix: str) -> None:
        self.path = path
        self.expected_suffix = expected_suffix
        super().__init__(f"{path}: unsupported input (expected a '{expected_suffix}' source file)")


class DuplicateOutput(CompileError):
    def __init__(self, path: Path, sources: Sequence[Path]) -> None:
        self.path = path
        self.sources = tuple(sources)
        names = ", ".join(str(src) for src in self.sources)
        super().__init__(f"{path}: object path produced by more than one input ({names})")


class ToolchainError(CompileError):
    def __init__(self, path: Path, exit_info: str, *, terminal: bool = False) -> None:
        self.path = path
        self.exit_info = exit_info
        self.terminal = terminal
        super().__init__(f"{path}: {exit_info}")


class ObjectFormatError(CompileError):
    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: unusable object file: {reason}")


# ------------------------------------------------------------------- resolving


class ResolveError(TmtkError):
    """A symbol or reference could not be tied to the fixed address space."""


class UndefinedSymbol(ResolveError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"symbol '{name}' is not defined by any compiled source")


class DuplicateDefinition(ResolveError):
    def __init__(self, name: str, sources: Sequence[Path]) -> None:
        self.name = name
        self.sources = tuple(sources)
        names = ", ".join(str(src) for src in self.sources)
        super().__init__(f"symbol '{name}' is defined more than once ({names})")


class InvalidDefinition(ResolveError):
    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"symbol '{name}' cannot be patched: {reason}")


class UnplacedSymbol(ResolveError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"symbol '{name}' has no target address in the link table")


class UnresolvedReference(ResolveError):
    def __init__(self, referencing_symbol: str, referenced_name: str) -> None:
        self.referencing_symbol = referencing_symbol
        self.referenced_name = referenced_name
        super().__init__(f"'{referencing_symbol}' references unresolved name '{referenced_name}'")


class UnsupportedRelocation(ResolveError):
    def __init__(self, symbol: str, reloc_type: int, offset: int) -> None:
        self.symbol = symbol
        self.reloc_type = reloc_type
        self.offset = offset
        super().__init__(f"'{symbol}'+0x{offset:X}: unsupported relocation type {reloc_type}")


class RelocationOverflow(ResolveError):
    def __init__(self, symbol: str, referenced_name: str, reloc_type: int, reason: str) -> None:
        self.symbol = symbol
        self.referenced_name = referenced_name
        self.reloc_type = reloc_type
        self.reason = reason
        super().__init__(f"'{symbol}' -> '{referenced_name}': {reason}")


# -------------------------------------------------------------------- patching


class PatchError(TmtkError):
    """A resolved patch cannot be written into the target image."""


class ImageIOError(PatchError):
    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class OutOfBounds(PatchError):
    def __init__(self, symbol: str, offset: Optional[int], length: int, reason: Optional[str] = None) -> None:
        self.symbol = symbol
        self.offset = offset
        self.length = length
        self.reason = reason
        where = "unmapped address" if offset is None else f"offset 0x{offset:X}"
        message = f"patch '{symbol}' ({length} bytes at {where}) falls outside the image"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class OverlappingPatch(PatchError):
    def __init__(self, symbol_a: str, symbol_b: str) -> None:
        self.symbol_a = symbol_a
        self.symbol_b = symbol_b
        super().__init__(f"patches '{symbol_a}' and '{symbol_b}' write overlapping bytes")


# ------------------------------------------------------------- stage failures


class BuildFailure(TmtkError):
    """Aggregate of every finding raised by one pipeline stage."""

    stage = "build"
    exit_code = 1

    def __init__(self, errors: Iterable[TmtkError]) -> None:
        self.errors: List[TmtkError] = list(errors)
        count = len(self.errors)
        noun = "error" if count == 1 else "errors"
        summary = f"{self.stage} failed with {count} {noun}"
        if count:
            summary = f"{summary}; first: {self.errors[0]}"
        super().__init__(summary)

    def details(self) -> Iterator[str]:
        for error in self.errors:
            yield str(error)

    def of_type(self, kind: type) -> List[TmtkError]:
        return [error for error in self.errors if isinstance(error, kind)]


class LoadFailures(BuildFailure):
    stage = "load"
    exit_code = 2


class CompileFailures(BuildFailure):
    stage = "compile"
    exit_code = 3

    def __init__(self, errors: Iterable[TmtkError], skipped: Iterable[Path] = ()) -> None:
        self.skipped: List[Path] = list(skipped)
        super().__init__(errors)

    def details(self) -> Iterator[str]:
        yield from super().details()
        for path in self.skipped:
            yield f"{path}: not compiled (build stopped scheduling after a toolchain failure)"


class ResolveFailures(BuildFailure):
    stage = "resolve"
    exit_code = 4


class PatchFailures(BuildFailure):
    stage = "patch"
    exit_code = 5


__all__ = [
    "BuildDirError",
    "BuildFailure",
    "CompileError",
    "CompileFailures",
    "ConfigError",
    "DuplicateDefinition",
    "DuplicateLinkName",
    "DuplicateOutput",
    "DuplicateSymbol",
    "ImageIOError",
    "InvalidAddress",
    "InvalidDefinition",
    "LoadError",
    "LoadFailures",
    "MalformedLine",
    "ObjectFormatError",
    "OutOfBounds",
    "OverlappingPatch",
    "PatchError",
    "PatchFailures",
    "RelocationOverflow",
    "ResolveError",
    "ResolveFailures",
    "TableIOError",
    "TmtkError",
    "ToolchainError",
    "UndefinedSymbol",
    "UnplacedSymbol",
    "UnresolvedReference",
    "UnsupportedInput",
    "UnsupportedRelocation",
]
