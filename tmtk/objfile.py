"""Reader for the relocatable ELF objects produced by the PowerPC toolchain.

Only what the resolver needs is kept: allocated sections with their bytes,
the symbol table, and the relocations that target allocated sections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile
from elftools.elf.relocation import RelocationSection
from elftools.elf.sections import SymbolTableSection

from .errors import ObjectFormatError

LOGGER = logging.getLogger("tmtk.objfile")

SHF_WRITE = 0x1
SHF_ALLOC = 0x2
SHF_EXECINSTR = 0x4

EXPECTED_MACHINE = "EM_PPC"


@dataclass(frozen=True)
class ObjSection:
    index: int
    name: str
    data: bytes
    align: int = 4
    flags: int = SHF_ALLOC | SHF_EXECINSTR

    @property
    def executable(self) -> bool:
        return bool(self.flags & SHF_EXECINSTR)

    @property
    def writable(self) -> bool:
        return bool(self.flags & SHF_WRITE)


@dataclass(frozen=True)
class ObjSymbol:
    name: str
    value: int = 0
    size: int = 0
    section: Optional[int] = None
    bind: str = "STB_GLOBAL"
    kind: str = "STT_FUNC"
    undefined: bool = False
    absolute: bool = False

    @property
    def defined(self) -> bool:
        return self.section is not None

    @property
    def is_global(self) -> bool:
        return self.bind in ("STB_GLOBAL", "STB_WEAK")

    @property
    def is_section(self) -> bool:
        return self.kind == "STT_SECTION"


@dataclass(frozen=True)
class ObjRelocation:
    offset: int
    type: int
    symbol: int
    addend: Optional[int] = None


@dataclass
class ObjectFile:
    path: Optional[Path]
    sections: Dict[int, ObjSection]
    symbols: List[ObjSymbol]
    relocations: Dict[int, List[ObjRelocation]] = field(default_factory=dict)

    def defined_globals(self) -> Dict[str, ObjSymbol]:
        found: Dict[str, ObjSymbol] = {}
        for symbol in self.symbols:
            if symbol.name and symbol.defined and symbol.is_global and not symbol.is_section:
                found.setdefault(symbol.name, symbol)
        return found

    def undefined_names(self) -> FrozenSet[str]:
        return frozenset(symbol.name for symbol in self.symbols if symbol.undefined and symbol.name)

    def symbols_in(self, section_index: int) -> List[ObjSymbol]:
        """Named symbols defined in *section_index*, ordered by offset."""
        members = [
            symbol
            for symbol in self.symbols
            if symbol.section == section_index and symbol.name and not symbol.is_section
        ]
        return sorted(members, key=lambda symbol: (symbol.value, symbol.name))

    def extent(self, symbol: ObjSymbol) -> int:
        """Byte size of *symbol*, measuring to the next symbol when the object omits it."""
        if symbol.size:
            return symbol.size
        section = self.sections[symbol.section]
        following = [other.value for other in self.symbols_in(symbol.section) if other.value > symbol.value]
        end = min(following) if following else len(section.data)
        return max(0, end - symbol.value)


def _convert_symbol(elf_symbol, sections: Dict[int, ObjSection]) -> ObjSymbol:
    shndx = elf_symbol["st_shndx"]
    kind = elf_symbol["st_info"]["type"]
    name = elf_symbol.name
    section: Optional[int] = None
    if isinstance(shndx, int) and shndx in sections:
        section = shndx
    if kind == "STT_SECTION" and section is not None and not name:
        name = sections[section].name
    return ObjSymbol(
        name=name,
        value=elf_symbol["st_value"],
        size=elf_symbol["st_size"],
        section=section,
        bind=elf_symbol["st_info"]["bind"],
        kind=kind,
        undefined=shndx == "SHN_UNDEF",
        absolute=shndx == "SHN_ABS",
    )


def _read_elf(elf: ELFFile, path: Path) -> ObjectFile:
    if elf.elfclass != 32:
        raise ObjectFormatError(path, f"expected ELF32, found ELF{elf.elfclass}")
    if elf["e_type"] != "ET_REL":
        raise ObjectFormatError(path, f"expected a relocatable object, found {elf['e_type']}")
    if elf["e_machine"] != EXPECTED_MACHINE:
        raise ObjectFormatError(path, f"expected {EXPECTED_MACHINE} code, found {elf['e_machine']}")

    sections: Dict[int, ObjSection] = {}
    for index, section in enumerate(elf.iter_sections()):
        if not section["sh_flags"] & SHF_ALLOC:
            continue
        if section["sh_type"] == "SHT_NOBITS":
            data = bytes(section["sh_size"])
        else:
            data = bytes(section.data())
        sections[index] = ObjSection(
            index=index,
            name=section.name,
            data=data,
            align=section["sh_addralign"] or 1,
            flags=section["sh_flags"],
        )

    symbols: List[ObjSymbol] = []
    for section in elf.iter_sections():
        if isinstance(section, SymbolTableSection) and section["sh_type"] == "SHT_SYMTAB":
            symbols = [_convert_symbol(symbol, sections) for symbol in section.iter_symbols()]
            break

    relocations: Dict[int, List[ObjRelocation]] = {}
    for section in elf.iter_sections():
        if not isinstance(section, RelocationSection):
            continue
        target = section["sh_info"]
        if target not in sections:
            continue
        is_rela = section.is_RELA()
        for reloc in section.iter_relocations():
            sym_index = reloc["r_info_sym"]
            if sym_index >= len(symbols):
                raise ObjectFormatError(path, f"relocation in {section.name} names symbol #{sym_index}")
            relocations.setdefault(target, []).append(
                ObjRelocation(
                    offset=reloc["r_offset"],
                    type=reloc["r_info_type"],
                    symbol=sym_index,
                    addend=reloc["r_addend"] if is_rela else None,
                )
            )

    for items in relocations.values():
        items.sort(key=lambda reloc: reloc.offset)
    return ObjectFile(path=path, sections=sections, symbols=symbols, relocations=relocations)


def read_object(path: Path | str) -> ObjectFile:
    path = Path(path)
    try:
        with open(path, "rb") as handle:
            obj = _read_elf(ELFFile(handle), path)
    except OSError as exc:
        raise ObjectFormatError(path, exc.strerror or str(exc)) from exc
    except ELFError as exc:
        raise ObjectFormatError(path, str(exc)) from exc
    LOGGER.debug(
        "Read %s: %d sections, %d symbols", path, len(obj.sections), len(obj.symbols)
    )
    return obj


__all__ = [
    "EXPECTED_MACHINE",
    "ObjRelocation",
    "ObjSection",
    "ObjSymbol",
    "ObjectFile",
    "read_object",
]
