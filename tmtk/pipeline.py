"""Top-level build orchestration.

    load tables + create build dir (concurrently)
        -> compile every source (worker pool)
        -> resolve against the link table
        -> patch the image and commit it atomically

Each stage either returns its value or raises the ``BuildFailure`` for that
stage; nothing is written to the target image unless every stage succeeds.
"""

from __future__ import annotations

import json
import logging
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .compiler import ObjectCompiler, SourceUnit
from .config import BuildConfig
from .errors import BuildDirError, ImageIOError, LoadError, LoadFailures, PatchFailures
from .linktable import LinkTable, load_link_table
from .patcher import AddressMap, AddressOutOfRange, apply_patches, commit_image, read_image, replace_file
from .resolver import ResolvedPatch, resolve
from .symtable import SymbolTable, load_symbol_table
from .toolchain import GccToolchain, Toolchain

LOGGER = logging.getLogger("tmtk.pipeline")

MANIFEST_VERSION = 1


@dataclass
class BuildResult:
    image: Path
    patches: List[ResolvedPatch]
    units: List[SourceUnit]
    crc: int
    warnings: List[str] = field(default_factory=list)


def _ensure_build_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise BuildDirError(path, exc.strerror or str(exc)) from exc
    return path


def prepare(config: BuildConfig) -> Tuple[LinkTable, SymbolTable]:
    """Load both tables and create the build directory; all three must succeed."""
    with ThreadPoolExecutor(max_workers=3, thread_name_prefix="tmtk-load") as pool:
        link_future = pool.submit(load_link_table, config.link_table, expected_suffix=config.link_suffix)
        symbol_future = pool.submit(load_symbol_table, config.symbol_table, expected_suffix=config.symbol_suffix)
        dir_future = pool.submit(_ensure_build_dir, Path(config.build_dir))
    errors: List[LoadError] = []
    for future in (link_future, symbol_future, dir_future):
        exc = future.exception()
        if exc is None:
            continue
        if not isinstance(exc, LoadError):
            raise exc
        errors.append(exc)
    if errors:
        raise LoadFailures(errors)
    return link_future.result(), symbol_future.result()


def make_compiler(config: BuildConfig, toolchain: Optional[Toolchain] = None) -> ObjectCompiler:
    tc = config.toolchain
    return ObjectCompiler(
        toolchain or GccToolchain(tc.compiler),
        arch_flags=tc.arch_flags,
        source_suffix=tc.source_suffix,
        object_suffix=tc.object_suffix,
        jobs=config.jobs,
        timeout=tc.timeout,
    )


def manifest_payload(image: Path, patches: List[ResolvedPatch], address_to_offset: AddressMap, crc: int) -> Dict[str, Any]:
    entries = []
    for patch in patches:
        entries.append(
            {
                "symbol": patch.source_symbol,
                "slot": patch.slot,
                "address": f"0x{patch.target_address:08X}",
                "offset": address_to_offset(patch.target_address),
                "size": len(patch.data),
                "crc32": zlib.crc32(patch.data) & 0xFFFFFFFF,
                "source": patch.source.as_posix() if patch.source is not None else None,
            }
        )
    return {
        "version": MANIFEST_VERSION,
        "image": image.as_posix(),
        "image_crc32": crc & 0xFFFFFFFF,
        "patches": entries,
    }


def write_manifest(path: Path, payload: Dict[str, Any]) -> None:
    """Atomically write *payload* as JSON; a failure is a patch-stage error."""
    path = Path(path)
    text = json.dumps(payload, indent=2, sort_keys=True) + "\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        replace_file(path, text.encode("utf-8"))
    except OSError as exc:
        raise PatchFailures([ImageIOError(path, f"cannot write manifest: {exc.strerror or exc}")]) from exc


def run_build(config: BuildConfig, toolchain: Optional[Toolchain] = None) -> BuildResult:
    link_table, symbol_table = prepare(config)
    warnings = [*link_table.warnings, *symbol_table.warnings]
    LOGGER.info("Link table: %d entries, symbol table: %d symbols", len(link_table), len(symbol_table))

    units = make_compiler(config, toolchain).compile(config.sources, Path(config.build_dir), config.extra_flags)
    patches = resolve(units, link_table, symbol_table, config.entry_symbol, config.entry_address)

    image_path = Path(config.image)
    image = read_image(image_path)
    try:
        address_to_offset = config.make_address_map(image)
    except AddressOutOfRange as exc:
        raise PatchFailures([ImageIOError(image_path, str(exc))]) from exc
    patched = apply_patches(image, patches, address_to_offset)
    crc = zlib.crc32(patched) & 0xFFFFFFFF

    # the manifest goes first so a write failure leaves the image untouched
    if config.manifest is not None:
        write_manifest(Path(config.manifest), manifest_payload(image_path, patches, address_to_offset, crc))
        LOGGER.info("Wrote manifest %s", config.manifest)
    commit_image(image_path, patched)
    LOGGER.info("Committed %d patches to %s (crc32=0x%08X)", len(patches), image_path, crc)
    return BuildResult(image=image_path, patches=patches, units=units, crc=crc, warnings=warnings)


__all__ = [
    "BuildResult",
    "make_compiler",
    "manifest_payload",
    "prepare",
    "run_build",
    "write_manifest",
]
