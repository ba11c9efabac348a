"""Narrow interface to the external C toolchain.

The compiler stage only needs "compile this file with these flags into that
object" and a pass/fail answer with diagnostics, so that is all a
``Toolchain`` offers.  Tests substitute their own implementation.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

LOGGER = logging.getLogger("tmtk.toolchain")


@dataclass(frozen=True)
class ToolchainResult:
    ok: bool
    returncode: Optional[int] = 0
    diagnostic: str = ""
    # Set when the failure will repeat for every input (e.g. missing executable).
    terminal: bool = False

    def describe(self) -> str:
        if self.returncode is None:
            head = "toolchain did not run"
        else:
            head = f"toolchain exited with status {self.returncode}"
        if self.diagnostic:
            return f"{head}: {self.diagnostic}"
        return head


class Toolchain:
    """Compiles one source file into one relocatable object."""

    def compile(
        self,
        source: Path,
        output: Path,
        flags: Sequence[str],
        timeout: Optional[float] = None,
    ) -> ToolchainResult:
        raise NotImplementedError


class GccToolchain(Toolchain):
    """GCC-compatible driver (``powerpc-eabi-gcc`` from devkitPPC by default)."""

    def __init__(self, executable: Path | str) -> None:
        self.executable = str(executable)

    def command(self, source: Path, output: Path, flags: Sequence[str]) -> List[str]:
        return [self.executable, *flags, "-c", str(source), "-o", str(output)]

    def compile(
        self,
        source: Path,
        output: Path,
        flags: Sequence[str],
        timeout: Optional[float] = None,
    ) -> ToolchainResult:
        cmd = self.command(source, output, flags)
        LOGGER.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except OSError as exc:
            return ToolchainResult(
                ok=False,
                returncode=None,
                diagnostic=f"cannot launch {self.executable}: {exc.strerror or exc}",
                terminal=True,
            )
        except subprocess.TimeoutExpired:
            return ToolchainResult(
                ok=False,
                returncode=None,
                diagnostic=f"timed out after {timeout:g}s",
            )
        diagnostic = "\n".join(part.strip() for part in (result.stderr, result.stdout) if part and part.strip())
        if result.returncode == 0 and diagnostic:
            LOGGER.info("%s: %s", source, diagnostic)
        return ToolchainResult(ok=result.returncode == 0, returncode=result.returncode, diagnostic=diagnostic)


__all__ = ["GccToolchain", "Toolchain", "ToolchainResult"]
