"""Link table: the frozen name -> address layout of the target image.

File format, one entry per line::

    80005940:OSReport
    803F0A48:evFunction

The address is hexadecimal and conventionally 8 digits wide.  Other widths
are accepted with a warning so slightly drifted legacy files keep working.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import DuplicateLinkName, InvalidAddress, MalformedLine, TableIOError

LOGGER = logging.getLogger("tmtk.linktable")

LINK_SUFFIX = ".link"
ADDRESS_WIDTH = 8
_HEX_RE = re.compile(r"[0-9A-Fa-f]+")


@dataclass(frozen=True)
class LinkEntry:
    address: int
    name: str
    # Address field as spelled in the source file; kept for re-serialization only.
    text: Optional[str] = field(default=None, compare=False, repr=False)

    def format(self) -> str:
        address = self.text if self.text is not None else f"{self.address:0{ADDRESS_WIDTH}X}"
        return f"{address}:{self.name}"


def format_link_entry(entry: LinkEntry) -> str:
    return entry.format()


class LinkTable:
    """Ordered link entries with constant-time lookup by name."""

    def __init__(
        self,
        entries: Iterable[LinkEntry] = (),
        *,
        source: Optional[Path] = None,
        warnings: Optional[List[str]] = None,
    ) -> None:
        self.entries = tuple(entries)
        self.source = source
        self.warnings: List[str] = list(warnings or [])
        self._by_name: Dict[str, LinkEntry] = {}
        for entry in self.entries:
            if entry.name in self._by_name:
                raise DuplicateLinkName(source, entry.name)
            self._by_name[entry.name] = entry

    def lookup(self, name: str) -> Optional[int]:
        entry = self._by_name.get(name)
        return entry.address if entry is not None else None

    def __getitem__(self, name: str) -> int:
        return self._by_name[name].address

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[LinkEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def dumps(self) -> str:
        return "".join(entry.format() + "\n" for entry in self.entries)


def parse_link_table(text: str, *, source: Optional[Path] = None) -> LinkTable:
    entries: List[LinkEntry] = []
    warnings: List[str] = []
    seen: Dict[str, int] = {}
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        address_text, sep, name = line.partition(":")
        address_text = address_text.strip()
        name = name.strip()
        if not sep or not name:
            raise MalformedLine(source, line_number, raw_line)
        if not _HEX_RE.fullmatch(address_text):
            raise InvalidAddress(source, line_number, address_text)
        address = int(address_text, 16)
        if address > 0xFFFFFFFF:
            raise InvalidAddress(source, line_number, address_text)
        if len(address_text) != ADDRESS_WIDTH:
            message = (
                f"{source or '<input>'}:{line_number}: address '{address_text}' is "
                f"{len(address_text)} digits wide, expected {ADDRESS_WIDTH}"
            )
            LOGGER.warning(message)
            warnings.append(message)
        if name in seen:
            raise DuplicateLinkName(source, name, line_number)
        seen[name] = line_number
        entries.append(LinkEntry(address, name, text=address_text))
    return LinkTable(entries, source=source, warnings=warnings)


def check_suffix(path: Path, expected: Optional[str], what: str) -> Optional[str]:
    """Return (and log) an advisory message when *path* breaks the naming convention."""
    if not expected or path.suffix == expected:
        return None
    message = f"{path}: {what} files conventionally use the '{expected}' extension"
    LOGGER.warning(message)
    return message


def load_link_table(path: Path | str, *, expected_suffix: Optional[str] = LINK_SUFFIX) -> LinkTable:
    path = Path(path)
    advisory = check_suffix(path, expected_suffix, "link table")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise TableIOError(path, getattr(exc, "strerror", None) or str(exc)) from exc
    table = parse_link_table(text, source=path)
    if advisory:
        table.warnings.insert(0, advisory)
    LOGGER.debug("Loaded %d link entries from %s", len(table), path)
    return table


__all__ = [
    "ADDRESS_WIDTH",
    "LINK_SUFFIX",
    "LinkEntry",
    "LinkTable",
    "check_suffix",
    "format_link_entry",
    "load_link_table",
    "parse_link_table",
]
