"""Standard build scenario and a fake toolchain.

Nothing here runs a real cross-compiler: ``FakeToolchain`` writes prebuilt
ELF objects from ``elf_stubs`` in place of ``powerpc-eabi-gcc``.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from tmtk import ppc
from tmtk.config import BuildConfig, ToolchainConfig
from tmtk.toolchain import Toolchain, ToolchainResult
from tmtk.tests.elf_stubs import (
    ADDI_R3_R3,
    BL,
    BLR,
    DATA,
    LIS_R3,
    StubReloc,
    StubSection,
    StubSymbol,
    build_object,
    words,
)

IMAGE_BASE = 0x80000000
IMAGE_SIZE = 0x200

LINK_TABLE = """\
80000000:OSReport
80000100:tmEntry
80000140:tmHelper
80000180:tmData
"""

SYMBOL_TABLE = """\
tmHelper
tmData
"""


def entry_object() -> bytes:
    """tmEntry: bl tmHelper; bl OSReport; blr"""
    return build_object(
        [StubSection(".text", words(BL, BL, BLR))],
        [StubSymbol("tmEntry", ".text", 0, 12)],
        [
            StubReloc(".text", 0, ppc.R_PPC_REL24, "tmHelper"),
            StubReloc(".text", 4, ppc.R_PPC_REL24, "OSReport"),
        ],
    )


def helper_object() -> bytes:
    """tmHelper loads &tmData into r3; tmData lives in .data of the same object."""
    return build_object(
        [
            StubSection(".text", words(LIS_R3, ADDI_R3_R3, BLR)),
            StubSection(".data", words(0xDEADBEEF), flags=DATA),
        ],
        [
            StubSymbol("tmHelper", ".text", 0, 12),
            StubSymbol("tmData", ".data", 0, 4, kind="object"),
        ],
        [
            StubReloc(".text", 2, ppc.R_PPC_ADDR16_HA, "tmData"),
            StubReloc(".text", 6, ppc.R_PPC_ADDR16_LO, "tmData"),
        ],
    )


# Final bytes of the standard scenario, keyed by image offset.
EXPECTED_PATCHES = {
    0x100: words(0x48000041, 0x4BFFFEFD, BLR),
    0x140: words(0x3C608000, 0x38630180, BLR),
    0x180: words(0xDEADBEEF),
}


@dataclass
class CompileCall:
    source: Path
    output: Path
    flags: Tuple[str, ...]


class FakeToolchain(Toolchain):
    """Writes canned object bytes keyed by source file name."""

    def __init__(
        self,
        objects: Optional[Dict[str, bytes]] = None,
        *,
        failures: Optional[Dict[str, str]] = None,
        terminal: bool = False,
    ) -> None:
        self.objects = dict(objects or {})
        self.failures = dict(failures or {})
        self.terminal = terminal
        self.calls: List[CompileCall] = []
        self._lock = threading.Lock()

    def compile(self, source, output, flags: Sequence[str], timeout=None) -> ToolchainResult:
        source = Path(source)
        with self._lock:
            self.calls.append(CompileCall(source, Path(output), tuple(flags)))
        if source.name in self.failures:
            return ToolchainResult(
                ok=False,
                returncode=None if self.terminal else 1,
                diagnostic=self.failures[source.name],
                terminal=self.terminal,
            )
        data = self.objects.get(source.name)
        if data is None:
            return ToolchainResult(ok=False, returncode=1, diagnostic=f"{source}: no such file")
        Path(output).write_bytes(data)
        return ToolchainResult(ok=True)

    @property
    def compiled(self) -> List[str]:
        return sorted(call.source.name for call in self.calls)


def standard_toolchain() -> FakeToolchain:
    return FakeToolchain({"entry.c": entry_object(), "helper.c": helper_object()})


def write_project(root: Path) -> Path:
    """Standard scenario on disk: tables, zeroed image, two sources."""
    (root / "src").mkdir(parents=True)
    (root / "game.link").write_text(LINK_TABLE, encoding="utf-8")
    (root / "symbols.txt").write_text(SYMBOL_TABLE, encoding="utf-8")
    (root / "patch.bin").write_bytes(bytes(IMAGE_SIZE))
    for name in ("entry.c", "helper.c"):
        (root / "src" / name).write_text(f"/* {name} */\n", encoding="utf-8")
    return root


def make_config(root: Path, **overrides) -> BuildConfig:
    values = dict(
        link_table=root / "game.link",
        symbol_table=root / "symbols.txt",
        image=root / "patch.bin",
        entry_symbol="tmEntry",
        sources=(root / "src" / "entry.c", root / "src" / "helper.c"),
        build_dir=root / "build",
        toolchain=ToolchainConfig(compiler="powerpc-eabi-gcc"),
        image_base=IMAGE_BASE,
        jobs=2,
    )
    values.update(overrides)
    return BuildConfig(**values)
