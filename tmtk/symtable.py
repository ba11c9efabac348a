"""Symbol table: the ordered list of symbols a build produces and patches."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import DuplicateSymbol, TableIOError
from .linktable import check_suffix

LOGGER = logging.getLogger("tmtk.symtable")

SYMBOL_SUFFIX = ".txt"


class SymbolTable:
    """Unique symbol names in file order; the position doubles as dispatch slot."""

    def __init__(
        self,
        names: Iterable[str] = (),
        *,
        source: Optional[Path] = None,
        warnings: Optional[List[str]] = None,
    ) -> None:
        self.names = tuple(names)
        self.source = source
        self.warnings: List[str] = list(warnings or [])
        self._slots: Dict[str, int] = {}
        for slot, name in enumerate(self.names):
            if name in self._slots:
                raise DuplicateSymbol(source, name)
            self._slots[name] = slot

    def index(self, name: str) -> int:
        return self._slots[name]

    def slot(self, name: str) -> Optional[int]:
        return self._slots.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._slots

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)


def parse_symbol_table(text: str, *, source: Optional[Path] = None) -> SymbolTable:
    names: List[str] = []
    seen: Dict[str, int] = {}
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        name = raw_line.strip()
        if not name:
            continue
        if name in seen:
            raise DuplicateSymbol(source, name, line_number)
        seen[name] = line_number
        names.append(name)
    return SymbolTable(names, source=source)


def load_symbol_table(path: Path | str, *, expected_suffix: Optional[str] = SYMBOL_SUFFIX) -> SymbolTable:
    path = Path(path)
    advisory = check_suffix(path, expected_suffix, "symbol table")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise TableIOError(path, getattr(exc, "strerror", None) or str(exc)) from exc
    table = parse_symbol_table(text, source=path)
    if advisory:
        table.warnings.append(advisory)
    LOGGER.debug("Loaded %d symbols from %s", len(table), path)
    return table


__all__ = ["SYMBOL_SUFFIX", "SymbolTable", "load_symbol_table", "parse_symbol_table"]
