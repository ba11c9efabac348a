import pytest

from tmtk.errors import DuplicateSymbol, TableIOError
from tmtk.symtable import SymbolTable, load_symbol_table, parse_symbol_table


def test_names_keep_file_order_and_slots():
    table = parse_symbol_table("tmMenuDraw\ntmMenuThink\n\n  tmOverlay  \n")
    assert list(table) == ["tmMenuDraw", "tmMenuThink", "tmOverlay"]
    assert table.index("tmOverlay") == 2
    assert table.slot("missing") is None
    assert len(table) == 3


def test_duplicate_symbol_is_rejected_with_line():
    with pytest.raises(DuplicateSymbol) as excinfo:
        parse_symbol_table("a\nb\na\n")
    assert excinfo.value.name == "a"
    assert excinfo.value.line_number == 3


def test_constructor_rejects_duplicates():
    with pytest.raises(DuplicateSymbol):
        SymbolTable(["x", "x"])


def test_empty_file_gives_empty_table():
    assert len(parse_symbol_table("\n\n")) == 0


def test_load_from_disk(tmp_path):
    path = tmp_path / "symbols.txt"
    path.write_text("tmEntry\n", encoding="utf-8")
    table = load_symbol_table(path)
    assert "tmEntry" in table
    assert table.warnings == []


def test_load_suffix_advisory(tmp_path):
    path = tmp_path / "symbols.lst"
    path.write_text("tmEntry\n", encoding="utf-8")
    table = load_symbol_table(path)
    assert any(".txt" in warning for warning in table.warnings)


def test_load_missing_file(tmp_path):
    with pytest.raises(TableIOError):
        load_symbol_table(tmp_path / "nope.txt")
