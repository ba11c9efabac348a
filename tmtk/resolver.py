"""Resolve compiled symbols against the frozen address space.

Every symbol the build is responsible for is cut out of its object, placed
at the address the link table gives for its name, and has each relocation
inside it fixed up to a literal final address.  The output bytes carry no
relocations; nothing runs after this on the target side.

References are satisfied in this order:

* absolute symbols use their value;
* targets inside another patched symbol of the same object use that symbol's
  placed address (this covers section-relative references);
* undefined names use the entry address (for the entry symbol) or the link
  table.

Anything else is an ``UnresolvedReference``.  All findings are gathered
before ``ResolveFailures`` is raised so a single run reports every problem.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from . import ppc
from .compiler import SourceUnit
from .errors import (
    DuplicateDefinition,
    InvalidDefinition,
    RelocationOverflow,
    ResolveError,
    ResolveFailures,
    UndefinedSymbol,
    UnplacedSymbol,
    UnresolvedReference,
    UnsupportedRelocation,
)
from .linktable import LinkTable
from .objfile import ObjSymbol
from .symtable import SymbolTable

LOGGER = logging.getLogger("tmtk.resolver")


@dataclass(frozen=True)
class ResolvedPatch:
    target_address: int
    data: bytes
    source_symbol: str
    slot: Optional[int] = None
    source: Optional[Path] = None

    def __post_init__(self) -> None:
        if not self.data:
            raise ValueError(f"patch for '{self.source_symbol}' carries no bytes")
        if not 0 <= self.target_address <= 0xFFFFFFFF:
            raise ValueError(f"patch address 0x{self.target_address:X} is not a 32-bit address")

    @property
    def end_address(self) -> int:
        return self.target_address + len(self.data)


@dataclass
class _Export:
    name: str
    slot: Optional[int]
    unit: SourceUnit
    symbol: ObjSymbol
    start: int
    end: int
    address: Optional[int]

    @property
    def section(self) -> int:
        return self.symbol.section


class SymbolResolver:
    def __init__(
        self,
        link_table: LinkTable,
        symbol_table: SymbolTable,
        entry_symbol: Optional[str] = None,
        entry_address: Optional[int] = None,
    ) -> None:
        self.link_table = link_table
        self.symbol_table = symbol_table
        self.entry_symbol = entry_symbol or None
        self.entry_address = entry_address

    def wanted(self) -> List[Tuple[str, Optional[int]]]:
        """Symbols to patch with their dispatch slot, in output order."""
        names: List[Tuple[str, Optional[int]]] = []
        if self.entry_symbol and self.entry_symbol not in self.symbol_table:
            names.append((self.entry_symbol, None))
        names.extend((name, slot) for slot, name in enumerate(self.symbol_table))
        return names

    def placement(self, name: str) -> Optional[int]:
        if name == self.entry_symbol and self.entry_address is not None:
            return self.entry_address
        return self.link_table.lookup(name)

    def resolve(self, units: Sequence[SourceUnit]) -> List[ResolvedPatch]:
        errors: List[ResolveError] = []
        exports = self._collect_exports(units, errors)

        by_section: Dict[Tuple[int, int], List[_Export]] = {}
        for export in exports:
            by_section.setdefault((id(export.unit), export.section), []).append(export)

        unresolved = set()
        patches: List[ResolvedPatch] = []
        for export in exports:
            data = self._fix_up(export, by_section, errors, unresolved)
            if data is not None and export.address is not None:
                patches.append(
                    ResolvedPatch(
                        target_address=export.address,
                        data=data,
                        source_symbol=export.name,
                        slot=export.slot,
                        source=export.unit.source,
                    )
                )

        if errors:
            raise ResolveFailures(errors)
        for patch in patches:
            LOGGER.debug(
                "Resolved %s -> 0x%08X (%d bytes)", patch.source_symbol, patch.target_address, len(patch.data)
            )
        return patches

    # ----------------------------------------------------------------- helpers

    def _collect_exports(self, units: Sequence[SourceUnit], errors: List[ResolveError]) -> List[_Export]:
        definitions: Dict[str, List[Tuple[SourceUnit, ObjSymbol]]] = {}
        for unit in units:
            for name, symbol in unit.obj.defined_globals().items():
                definitions.setdefault(name, []).append((unit, symbol))

        exports: List[_Export] = []
        for name, slot in self.wanted():
            found = definitions.get(name, [])
            if not found:
                errors.append(UndefinedSymbol(name))
                continue
            if len(found) > 1:
                errors.append(DuplicateDefinition(name, [unit.source for unit, _ in found]))
                continue
            unit, symbol = found[0]
            section = unit.obj.sections[symbol.section]
            size = unit.obj.extent(symbol)
            if size <= 0:
                errors.append(InvalidDefinition(name, "definition is empty"))
                continue
            if symbol.value + size > len(section.data):
                errors.append(
                    InvalidDefinition(name, f"extends past the end of {section.name} in {unit.object_path}")
                )
                continue
            address = self.placement(name)
            if address is None:
                errors.append(UnplacedSymbol(name))
            exports.append(
                _Export(
                    name=name,
                    slot=slot,
                    unit=unit,
                    symbol=symbol,
                    start=symbol.value,
                    end=symbol.value + size,
                    address=address,
                )
            )
        return exports

    def _target_value(
        self,
        export: _Export,
        target: ObjSymbol,
        addend: int,
        by_section: Dict[Tuple[int, int], List[_Export]],
    ) -> Tuple[Optional[int], str]:
        """Return (S + A, display name); the value is None when it cannot be resolved."""
        if target.absolute:
            return (target.value + addend) & 0xFFFFFFFF, target.name
        if target.defined:
            offset = target.value + addend
            label = target.name if not target.is_section else f"{target.name}+0x{offset:X}"
            for owner in by_section.get((id(export.unit), target.section), []):
                if owner.start <= offset < owner.end:
                    if owner.address is None:
                        return None, label
                    return (owner.address + offset - owner.start) & 0xFFFFFFFF, label
            return None, label
        base = self.placement(target.name) if target.name else None
        if base is None:
            return None, target.name or "<anonymous>"
        return (base + addend) & 0xFFFFFFFF, target.name

    def _fix_up(
        self,
        export: _Export,
        by_section: Dict[Tuple[int, int], List[_Export]],
        errors: List[ResolveError],
        unresolved: set,
    ) -> Optional[bytes]:
        obj = export.unit.obj
        buf = bytearray(obj.sections[export.section].data[export.start:export.end])
        ok = export.address is not None
        for reloc in obj.relocations.get(export.section, []):
            if not export.start <= reloc.offset < export.end:
                continue
            if reloc.type == ppc.R_PPC_NONE:
                continue
            local_offset = reloc.offset - export.start
            if reloc.type not in ppc.RELOC_WIDTH:
                errors.append(UnsupportedRelocation(export.name, reloc.type, local_offset))
                ok = False
                continue
            target = obj.symbols[reloc.symbol]
            value, label = self._target_value(export, target, reloc.addend or 0, by_section)
            if value is None:
                key = (export.name, label)
                if key not in unresolved:
                    unresolved.add(key)
                    if not self._reported_elsewhere(export, target, reloc.addend or 0, by_section):
                        errors.append(UnresolvedReference(export.name, label))
                ok = False
                continue
            if export.address is None:
                continue
            place = export.address + local_offset
            try:
                ppc.apply_relocation(buf, local_offset, reloc.type, value, place)
            except ppc.RelocationRangeError as exc:
                errors.append(RelocationOverflow(export.name, label, reloc.type, str(exc)))
                ok = False
        return bytes(buf) if ok else None

    def _reported_elsewhere(
        self,
        export: _Export,
        target: ObjSymbol,
        addend: int,
        by_section: Dict[Tuple[int, int], List[_Export]],
    ) -> bool:
        """True when the missing target is itself a patched symbol that already failed."""
        if not target.defined:
            return target.name == self.entry_symbol or target.name in self.symbol_table
        offset = target.value + addend
        for owner in by_section.get((id(export.unit), target.section), []):
            if owner.start <= offset < owner.end:
                return owner.address is None
        return False


def resolve(
    units: Sequence[SourceUnit],
    link_table: LinkTable,
    symbol_table: SymbolTable,
    entry_symbol: Optional[str] = None,
    entry_address: Optional[int] = None,
) -> List[ResolvedPatch]:
    return SymbolResolver(link_table, symbol_table, entry_symbol, entry_address).resolve(units)


__all__ = ["ResolvedPatch", "SymbolResolver", "resolve"]
