"""Build configuration.

A ``BuildConfig`` is built once (by the CLI or a caller) and handed to every
stage; nothing in the pipeline reads global state.  Toolchain defaults target
the GameCube/Wii Gekko CPU through devkitPPC.
"""

from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .errors import ConfigError
from .linktable import LINK_SUFFIX
from .patcher import AddressMap, BaseAddressMap, DolAddressMap
from .symtable import SYMBOL_SUFFIX

ENV_COMPILER = "TMTK_CC"
ENV_DEVKITPPC = "DEVKITPPC"
DEFAULT_COMPILER = "powerpc-eabi-gcc"
DEFAULT_ARCH_FLAGS: Tuple[str, ...] = ("-mcpu=750", "-meabi", "-mhard-float", "-msdata=none")
DEFAULT_TIMEOUT = 120.0
SOURCE_SUFFIX = ".c"
OBJECT_SUFFIX = ".o"

ADDRESS_MAPS: Dict[str, Callable[["BuildConfig", bytes], AddressMap]] = {
    "base": lambda config, image: BaseAddressMap(config.image_base, config.image_offset),
    "dol": lambda config, image: DolAddressMap.from_image(image),
}

CONFIG_FILE_KEYS = frozenset(
    {
        "compiler",
        "arch_flags",
        "timeout",
        "jobs",
        "address_map",
        "image_base",
        "image_offset",
        "entry_address",
    }
)


def find_compiler(env: Optional[Mapping[str, str]] = None) -> str:
    """Locate the C compiler: $TMTK_CC, then $DEVKITPPC/bin, then PATH."""
    env = os.environ if env is None else env
    explicit = env.get(ENV_COMPILER)
    if explicit:
        return explicit
    devkit = env.get(ENV_DEVKITPPC)
    if devkit:
        candidate = Path(devkit) / "bin" / DEFAULT_COMPILER
        if candidate.exists():
            return str(candidate)
    found = shutil.which(DEFAULT_COMPILER)
    return found or DEFAULT_COMPILER


def parse_int(value: Any, name: str) -> int:
    """Accept ints and ``"0x..."``/decimal strings (JSON has no hex literals)."""
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 0)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    raise ConfigError(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class ToolchainConfig:
    compiler: str = field(default_factory=find_compiler)
    arch_flags: Tuple[str, ...] = DEFAULT_ARCH_FLAGS
    timeout: Optional[float] = DEFAULT_TIMEOUT
    source_suffix: str = SOURCE_SUFFIX
    object_suffix: str = OBJECT_SUFFIX

    def __post_init__(self) -> None:
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")
        if not self.object_suffix.startswith(".") or not self.source_suffix.startswith("."):
            raise ConfigError("source and object suffixes must start with '.'")
        if self.object_suffix == self.source_suffix:
            raise ConfigError("object suffix must differ from the source suffix")


@dataclass(frozen=True)
class BuildConfig:
    link_table: Path
    symbol_table: Path
    image: Path
    entry_symbol: Optional[str]
    sources: Tuple[Path, ...] = ()
    extra_flags: Tuple[str, ...] = ()
    build_dir: Path = Path("build")
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)
    jobs: Optional[int] = None
    address_map: str = "base"
    image_base: int = 0
    image_offset: int = 0
    entry_address: Optional[int] = None
    manifest: Optional[Path] = None
    link_suffix: Optional[str] = LINK_SUFFIX
    symbol_suffix: Optional[str] = SYMBOL_SUFFIX

    def __post_init__(self) -> None:
        if self.address_map not in ADDRESS_MAPS:
            choices = ", ".join(sorted(ADDRESS_MAPS))
            raise ConfigError(f"unknown address map '{self.address_map}' (choose from {choices})")
        if self.jobs is not None and self.jobs < 1:
            raise ConfigError(f"jobs must be at least 1, got {self.jobs}")
        if self.entry_address is not None and not 0 <= self.entry_address <= 0xFFFFFFFF:
            raise ConfigError(f"entry address 0x{self.entry_address:X} is not a 32-bit address")
        if not 0 <= self.image_base <= 0xFFFFFFFF:
            raise ConfigError(f"image base 0x{self.image_base:X} is not a 32-bit address")
        if self.image_offset < 0:
            raise ConfigError("image offset must not be negative")

    def make_address_map(self, image: bytes) -> AddressMap:
        return ADDRESS_MAPS[self.address_map](self, image)


def load_config_file(path: Path | str) -> Dict[str, Any]:
    """Read a JSON defaults file and normalise its values."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"cannot read config {path}: {exc.strerror or exc}") from exc
    except ValueError as exc:
        raise ConfigError(f"config {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must contain a JSON object")
    unknown = sorted(set(data) - CONFIG_FILE_KEYS)
    if unknown:
        raise ConfigError(f"config {path}: unknown keys {', '.join(unknown)}")

    settings: Dict[str, Any] = {}
    if "compiler" in data:
        settings["compiler"] = str(data["compiler"])
    if "arch_flags" in data:
        flags = data["arch_flags"]
        if not isinstance(flags, list) or not all(isinstance(item, str) for item in flags):
            raise ConfigError(f"config {path}: arch_flags must be a list of strings")
        settings["arch_flags"] = tuple(flags)
    if "timeout" in data:
        timeout = data["timeout"]
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float))):
            raise ConfigError(f"config {path}: timeout must be a number of seconds or null")
        settings["timeout"] = None if timeout is None else float(timeout)
    if "address_map" in data:
        settings["address_map"] = str(data["address_map"])
    for key in ("jobs", "image_base", "image_offset", "entry_address"):
        if key in data and data[key] is not None:
            settings[key] = parse_int(data[key], key)
    return settings


__all__ = [
    "ADDRESS_MAPS",
    "BuildConfig",
    "DEFAULT_ARCH_FLAGS",
    "DEFAULT_COMPILER",
    "DEFAULT_TIMEOUT",
    "ENV_COMPILER",
    "ENV_DEVKITPPC",
    "ToolchainConfig",
    "find_compiler",
    "load_config_file",
    "parse_int",
]
