"""Write resolved patches into the target image.

Patches are checked against the image bounds and against each other before
a single byte is written.  The result is built on a private copy and only
reaches disk through ``commit_image``, which replaces the file atomically.
"""

from __future__ import annotations

import logging
import os
import shutil
import struct
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import ImageIOError, OutOfBounds, OverlappingPatch, PatchFailures
from .resolver import ResolvedPatch

LOGGER = logging.getLogger("tmtk.patcher")

AddressMap = Callable[[int], int]


class AddressOutOfRange(ValueError):
    """The address has no place in the image."""


class BaseAddressMap:
    """Linear mapping: ``offset = address - base + file_offset``."""

    def __init__(self, base: int = 0, file_offset: int = 0) -> None:
        self.base = base
        self.file_offset = file_offset

    def __call__(self, address: int) -> int:
        if address < self.base:
            raise AddressOutOfRange(f"address 0x{address:08X} is below image base 0x{self.base:08X}")
        return address - self.base + self.file_offset

    def __repr__(self) -> str:
        return f"BaseAddressMap(base=0x{self.base:08X}, file_offset=0x{self.file_offset:X})"


DOL_TEXT_SEGMENTS = 7
DOL_DATA_SEGMENTS = 11
DOL_SEGMENTS = DOL_TEXT_SEGMENTS + DOL_DATA_SEGMENTS
# file offsets[18], load addresses[18], sizes[18], bss address, bss size, entry point
DOL_HEADER = struct.Struct(f">{DOL_SEGMENTS}I{DOL_SEGMENTS}I{DOL_SEGMENTS}I3I")
DOL_HEADER_SIZE = 0x100


@dataclass(frozen=True)
class DolSegment:
    name: str
    offset: int
    address: int
    size: int

    def contains(self, address: int) -> bool:
        return self.address <= address < self.address + self.size


class DolAddressMap:
    """Maps load addresses through the segment table of a DOL executable."""

    def __init__(self, segments: Sequence[DolSegment]) -> None:
        self.segments = tuple(segments)

    @classmethod
    def from_image(cls, image: bytes) -> "DolAddressMap":
        if len(image) < DOL_HEADER_SIZE:
            raise AddressOutOfRange(f"image is {len(image)} bytes, too small for a DOL header")
        fields = DOL_HEADER.unpack_from(image, 0)
        offsets = fields[:DOL_SEGMENTS]
        addresses = fields[DOL_SEGMENTS:2 * DOL_SEGMENTS]
        sizes = fields[2 * DOL_SEGMENTS:3 * DOL_SEGMENTS]
        segments: List[DolSegment] = []
        for index in range(DOL_SEGMENTS):
            if not sizes[index]:
                continue
            if index < DOL_TEXT_SEGMENTS:
                name = f"text{index}"
            else:
                name = f"data{index - DOL_TEXT_SEGMENTS}"
            segments.append(DolSegment(name, offsets[index], addresses[index], sizes[index]))
        return cls(segments)

    def segment_for(self, address: int) -> Optional[DolSegment]:
        for segment in self.segments:
            if segment.contains(address):
                return segment
        return None

    def __call__(self, address: int) -> int:
        segment = self.segment_for(address)
        if segment is None:
            raise AddressOutOfRange(f"address 0x{address:08X} is not inside any DOL segment")
        return segment.offset + (address - segment.address)


def _locate(patch: ResolvedPatch, address_to_offset: AddressMap, image_size: int) -> Tuple[Optional[int], Optional[OutOfBounds]]:
    length = len(patch.data)
    try:
        offset = address_to_offset(patch.target_address)
        last = address_to_offset(patch.target_address + length - 1)
    except AddressOutOfRange as exc:
        return None, OutOfBounds(patch.source_symbol, None, length, str(exc))
    if offset < 0 or offset + length > image_size:
        return None, OutOfBounds(patch.source_symbol, offset, length, f"image is {image_size} bytes")
    if last != offset + length - 1:
        return None, OutOfBounds(patch.source_symbol, offset, length, "range is not contiguous in the image")
    return offset, None


def apply_patches(image: bytes, patches: Sequence[ResolvedPatch], address_to_offset: AddressMap) -> bytes:
    """Return a patched copy of *image*; raise ``PatchFailures`` and leave it untouched otherwise."""
    errors = []
    placed: List[Tuple[int, int, ResolvedPatch]] = []
    for patch in patches:
        offset, error = _locate(patch, address_to_offset, len(image))
        if error is not None:
            errors.append(error)
            continue
        placed.append((offset, offset + len(patch.data), patch))

    placed.sort(key=lambda item: (item[0], item[1], item[2].source_symbol))
    widest: Optional[Tuple[int, int, ResolvedPatch]] = None
    for item in placed:
        if widest is not None and item[0] < widest[1]:
            errors.append(OverlappingPatch(widest[2].source_symbol, item[2].source_symbol))
        if widest is None or item[1] > widest[1]:
            widest = item
    if errors:
        raise PatchFailures(errors)

    working = bytearray(image)
    for start, end, patch in placed:
        working[start:end] = patch.data
        LOGGER.debug("Patched %s at offset 0x%X (%d bytes)", patch.source_symbol, start, end - start)
    return bytes(working)


def read_image(path: Path) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise PatchFailures([ImageIOError(Path(path), f"cannot read image: {exc.strerror or exc}")]) from exc


def commit_patches(path: Path, patches: Sequence[ResolvedPatch], address_to_offset: AddressMap) -> bytes:
    """Read *path*, apply *patches* and replace the file; all or nothing."""
    image = read_image(path)
    patched = apply_patches(image, patches, address_to_offset)
    commit_image(path, patched)
    return patched


def replace_file(path: Path, data: bytes) -> None:
    """Atomically replace *path* with *data*; raises ``OSError``.

    A symlinked *path* is followed so the link itself survives. The data is
    staged in a uniquely named temp file beside the real target.
    """
    target = Path(os.path.realpath(path))
    handle = tempfile.NamedTemporaryFile(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
    )
    tmp_path = Path(handle.name)
    try:
        with handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        if target.exists():
            shutil.copymode(target, tmp_path)
        else:
            umask = os.umask(0)
            os.umask(umask)
            os.chmod(tmp_path, 0o666 & ~umask)
        os.replace(tmp_path, target)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def commit_image(path: Path, data: bytes) -> None:
    """Replace *path* with *data* via a sibling temp file and ``os.replace``."""
    path = Path(path)
    try:
        replace_file(path, data)
    except OSError as exc:
        raise PatchFailures([ImageIOError(path, f"cannot write image: {exc.strerror or exc}")]) from exc


__all__ = [
    "AddressMap",
    "AddressOutOfRange",
    "BaseAddressMap",
    "DolAddressMap",
    "DolSegment",
    "apply_patches",
    "commit_image",
    "commit_patches",
    "read_image",
    "replace_file",
]
