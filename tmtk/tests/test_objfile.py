"""Object reader tests against hand-built ELF relocatables."""

import pytest

from tmtk import ppc
from tmtk.errors import ObjectFormatError
from tmtk.objfile import read_object
from tmtk.tests.elf_stubs import (
    BL,
    BLR,
    DATA,
    EM_386,
    ET_EXEC,
    NOP,
    RODATA,
    StubReloc,
    StubSection,
    StubSymbol,
    words,
    write_object,
)


def _sample(tmp_path):
    return write_object(
        tmp_path / "sample.o",
        [
            StubSection(".text", words(BL, NOP, BLR, BLR)),
            StubSection(".rodata", b"hi\0\0", flags=RODATA),
            StubSection(".bss", flags=DATA, nobits_size=8),
        ],
        [
            StubSymbol("helper", ".text", 8, 0, bind="local"),
            StubSymbol("tmMain", ".text", 0, 8),
            StubSymbol("tmBuffer", ".bss", 0, 8, kind="object"),
            StubSymbol("MAGIC", "*ABS*", 0x1234, kind="notype"),
        ],
        [
            StubReloc(".text", 4, ppc.R_PPC_ADDR32, ".rodata", addend=0),
            StubReloc(".text", 0, ppc.R_PPC_REL24, "OSReport"),
        ],
    )


def test_reads_sections_symbols_and_relocations(tmp_path):
    obj = read_object(_sample(tmp_path))

    by_name = {section.name: section for section in obj.sections.values()}
    assert set(by_name) == {".text", ".rodata", ".bss"}
    assert by_name[".text"].executable
    assert not by_name[".rodata"].writable
    assert by_name[".bss"].data == bytes(8)

    globals_ = obj.defined_globals()
    # absolute symbols carry no bytes, so they are never patch candidates
    assert set(globals_) == {"tmMain", "tmBuffer"}
    magic = next(symbol for symbol in obj.symbols if symbol.name == "MAGIC")
    assert magic.absolute and magic.value == 0x1234
    assert obj.undefined_names() == frozenset({"OSReport"})

    text_index = by_name[".text"].index
    relocs = obj.relocations[text_index]
    assert [reloc.offset for reloc in relocs] == [0, 4]
    first, second = relocs
    assert first.type == ppc.R_PPC_REL24
    assert obj.symbols[first.symbol].name == "OSReport"
    assert obj.symbols[second.symbol].is_section
    assert obj.symbols[second.symbol].name == ".rodata"
    assert second.addend == 0


def test_extent_measures_to_next_symbol_when_size_missing(tmp_path):
    obj = read_object(_sample(tmp_path))
    symbols = {symbol.name: symbol for symbol in obj.symbols}
    assert obj.extent(symbols["tmMain"]) == 8
    # helper has no size; it runs to the end of .text
    assert obj.extent(symbols["helper"]) == 8


def test_rejects_other_machines(tmp_path):
    path = write_object(tmp_path / "x86.o", [StubSection(".text", words(NOP))], machine=EM_386)
    with pytest.raises(ObjectFormatError, match="expected EM_PPC"):
        read_object(path)


def test_rejects_linked_executables(tmp_path):
    path = write_object(tmp_path / "a.out", [StubSection(".text", words(NOP))], elf_type=ET_EXEC)
    with pytest.raises(ObjectFormatError, match="relocatable"):
        read_object(path)


def test_rejects_non_elf_bytes(tmp_path):
    path = tmp_path / "junk.o"
    path.write_bytes(b"this is not an object file at all" * 4)
    with pytest.raises(ObjectFormatError):
        read_object(path)


def test_missing_object_is_format_error(tmp_path):
    with pytest.raises(ObjectFormatError):
        read_object(tmp_path / "missing.o")
