"""PowerPC EABI relocation arithmetic (big-endian, 32-bit).

Only the relocation types emitted for plain ``-c`` compiles of position
dependent code are handled.  Everything else is rejected rather than guessed.
"""

from __future__ import annotations

from typing import Dict

R_PPC_NONE = 0
R_PPC_ADDR32 = 1
R_PPC_ADDR24 = 2
R_PPC_ADDR16 = 3
R_PPC_ADDR16_LO = 4
R_PPC_ADDR16_HI = 5
R_PPC_ADDR16_HA = 6
R_PPC_REL24 = 10
R_PPC_REL14 = 11
R_PPC_REL32 = 26

RELOC_NAMES: Dict[int, str] = {
    R_PPC_NONE: "R_PPC_NONE",
    R_PPC_ADDR32: "R_PPC_ADDR32",
    R_PPC_ADDR24: "R_PPC_ADDR24",
    R_PPC_ADDR16: "R_PPC_ADDR16",
    R_PPC_ADDR16_LO: "R_PPC_ADDR16_LO",
    R_PPC_ADDR16_HI: "R_PPC_ADDR16_HI",
    R_PPC_ADDR16_HA: "R_PPC_ADDR16_HA",
    R_PPC_REL24: "R_PPC_REL24",
    R_PPC_REL14: "R_PPC_REL14",
    R_PPC_REL32: "R_PPC_REL32",
}

# Bytes touched at r_offset.
RELOC_WIDTH: Dict[int, int] = {
    R_PPC_NONE: 0,
    R_PPC_ADDR32: 4,
    R_PPC_ADDR24: 4,
    R_PPC_ADDR16: 2,
    R_PPC_ADDR16_LO: 2,
    R_PPC_ADDR16_HI: 2,
    R_PPC_ADDR16_HA: 2,
    R_PPC_REL24: 4,
    R_PPC_REL14: 4,
    R_PPC_REL32: 4,
}

LI_MASK = 0x03FFFFFC
BD_MASK = 0x0000FFFC


class UnsupportedRelocationType(ValueError):
    """Relocation type outside the supported PowerPC subset."""


class RelocationRangeError(ValueError):
    """Computed value does not fit the relocated field."""


def reloc_name(reloc_type: int) -> str:
    return RELOC_NAMES.get(reloc_type, f"type {reloc_type}")


def _signed32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _fits_signed(value: int, bits: int) -> bool:
    limit = 1 << (bits - 1)
    return -limit <= value < limit


def ha16(value: int) -> int:
    """High-adjusted half: pairs with a sign-extended low half in ``addi``/loads."""
    return ((value + 0x8000) >> 16) & 0xFFFF


def lo16(value: int) -> int:
    return value & 0xFFFF


def hi16(value: int) -> int:
    return (value >> 16) & 0xFFFF


def _read32(buf: bytearray, offset: int) -> int:
    return int.from_bytes(buf[offset:offset + 4], "big")


def _write32(buf: bytearray, offset: int, value: int) -> None:
    buf[offset:offset + 4] = (value & 0xFFFFFFFF).to_bytes(4, "big")


def _write16(buf: bytearray, offset: int, value: int) -> None:
    buf[offset:offset + 2] = (value & 0xFFFF).to_bytes(2, "big")


def apply_relocation(buf: bytearray, offset: int, reloc_type: int, value: int, place: int) -> None:
    """Patch *buf* at *offset* for a relocation whose S + A is *value*.

    *place* is the final address of ``buf[offset]`` and is only used by the
    PC-relative forms.
    """
    width = RELOC_WIDTH.get(reloc_type)
    if width is None:
        raise UnsupportedRelocationType(reloc_name(reloc_type))
    if offset < 0 or offset + width > len(buf):
        raise RelocationRangeError(
            f"{reloc_name(reloc_type)} at +0x{offset:X} runs past the end of the symbol ({len(buf)} bytes)"
        )
    value &= 0xFFFFFFFF

    if reloc_type == R_PPC_NONE:
        return
    if reloc_type == R_PPC_ADDR32:
        _write32(buf, offset, value)
    elif reloc_type == R_PPC_ADDR24:
        signed = _signed32(value)
        if signed & 0x3 or not _fits_signed(signed, 26):
            raise RelocationRangeError(f"absolute branch target 0x{value:08X} not reachable by {reloc_name(reloc_type)}")
        word = _read32(buf, offset)
        _write32(buf, offset, (word & ~LI_MASK) | (value & LI_MASK))
    elif reloc_type == R_PPC_ADDR16:
        signed = _signed32(value)
        if not -0x8000 <= signed <= 0xFFFF:
            raise RelocationRangeError(f"value 0x{value:08X} does not fit {reloc_name(reloc_type)}")
        _write16(buf, offset, value)
    elif reloc_type == R_PPC_ADDR16_LO:
        _write16(buf, offset, lo16(value))
    elif reloc_type == R_PPC_ADDR16_HI:
        _write16(buf, offset, hi16(value))
    elif reloc_type == R_PPC_ADDR16_HA:
        _write16(buf, offset, ha16(value))
    elif reloc_type == R_PPC_REL24:
        delta = _signed32(value - place)
        if delta & 0x3:
            raise RelocationRangeError(f"branch displacement {delta:#x} is not word aligned")
        if not _fits_signed(delta, 26):
            raise RelocationRangeError(
                f"branch from 0x{place & 0xFFFFFFFF:08X} to 0x{value:08X} out of {reloc_name(reloc_type)} range"
            )
        word = _read32(buf, offset)
        _write32(buf, offset, (word & ~LI_MASK) | (delta & LI_MASK))
    elif reloc_type == R_PPC_REL14:
        delta = _signed32(value - place)
        if delta & 0x3:
            raise RelocationRangeError(f"branch displacement {delta:#x} is not word aligned")
        if not _fits_signed(delta, 16):
            raise RelocationRangeError(
                f"branch from 0x{place & 0xFFFFFFFF:08X} to 0x{value:08X} out of {reloc_name(reloc_type)} range"
            )
        word = _read32(buf, offset)
        _write32(buf, offset, (word & ~BD_MASK) | (delta & BD_MASK))
    elif reloc_type == R_PPC_REL32:
        _write32(buf, offset, value - place)


__all__ = [
    "R_PPC_ADDR16",
    "R_PPC_ADDR16_HA",
    "R_PPC_ADDR16_HI",
    "R_PPC_ADDR16_LO",
    "R_PPC_ADDR24",
    "R_PPC_ADDR32",
    "R_PPC_NONE",
    "R_PPC_REL14",
    "R_PPC_REL24",
    "R_PPC_REL32",
    "RelocationRangeError",
    "UnsupportedRelocationType",
    "apply_relocation",
    "ha16",
    "hi16",
    "lo16",
    "reloc_name",
]
