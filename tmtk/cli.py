"""tmtk command line.

Build C sources into the fixed address space of a target image and patch the
compiled symbols into it:

    tmtk -l game.link -t symbols.txt -d build/patch.bin -s tmEntry \\
        src/menu.c src/overlay.c -- -O2 -Iinclude

Everything after ``--`` is handed to the compiler in front of the
architecture flags.  Exit status: 0 on success, 2 load, 3 compile, 4 resolve,
5 patch, 1 unexpected error, 130 when interrupted.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import __version__
from .config import (
    ADDRESS_MAPS,
    DEFAULT_ARCH_FLAGS,
    DEFAULT_TIMEOUT,
    BuildConfig,
    ToolchainConfig,
    find_compiler,
    load_config_file,
    parse_int,
)
from .errors import BuildFailure, ConfigError
from .pipeline import run_build

LOGGER = logging.getLogger("tmtk.cli")

ENV_LOG_LEVEL = "TMTK_LOG"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _select_symbol(preferred: str, fallback: str) -> str:
    """Return preferred symbol when it can be encoded, otherwise fallback."""
    for stream in (sys.stdout, sys.stderr):
        encoding = getattr(stream, "encoding", None)
        if not encoding:
            continue
        try:
            preferred.encode(encoding)
        except UnicodeEncodeError:
            return fallback
    return preferred


SUCCESS_MARK = _select_symbol("✓", "[OK]")
FAIL_MARK = _select_symbol("✗", "[ERROR]")


def split_passthrough(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Split ``argv`` at the first ``--``; the tail goes to the compiler verbatim."""
    argv = list(argv)
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1:]
    return argv, []


def _int_arg(value: str) -> int:
    try:
        return int(value, 0)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer value: {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tmtk",
        description="Compile C sources against a fixed address space and patch them into an image",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("sources", nargs="*", metavar="FILE", help="C source files to compile")
    parser.add_argument("-l", "--link-table", metavar="LINK", required=True, help="Link table (ADDRESS:NAME lines)")
    parser.add_argument("-t", "--symbol-table", metavar="SYMTABLE", required=True, help="Symbols to patch, one per line")
    parser.add_argument("-d", "--image", metavar="IMAGE", required=True, help="Target image patched in place")
    parser.add_argument("-s", "--entry-symbol", metavar="SYMBOL", required=True, help="Entry symbol of the build")
    parser.add_argument("-b", "--build-dir", metavar="DIR", default="build", help="Object directory (default: ./build)")
    parser.add_argument("-j", "--jobs", type=int, metavar="N", help="Parallel compiler processes (default: CPU count)")
    parser.add_argument("--timeout", type=float, metavar="SECONDS", help="Per-file compiler timeout")
    parser.add_argument("--cc", metavar="PATH", help="C compiler executable (default: $TMTK_CC or devkitPPC)")
    parser.add_argument("--config", metavar="JSON", help="JSON file with toolchain/image defaults")
    parser.add_argument("--address-map", choices=sorted(ADDRESS_MAPS), help="Address to file offset mapping")
    parser.add_argument("--image-base", type=_int_arg, metavar="ADDR", help="Load address of image offset 0")
    parser.add_argument("--image-offset", type=_int_arg, metavar="OFFSET", help="File offset of the image base")
    parser.add_argument("--entry-address", type=_int_arg, metavar="ADDR", help="Place the entry symbol here")
    parser.add_argument("--manifest", metavar="PATH", help="Write a JSON report of the applied patches")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help=f"Logging level (default: ${ENV_LOG_LEVEL} or INFO)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _configure_logging(level_name: Optional[str], verbose: bool) -> None:
    if verbose:
        level = logging.DEBUG
    else:
        name = (level_name or os.environ.get(ENV_LOG_LEVEL) or "INFO").upper()
        level = getattr(logging, name, None)
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def build_config(args: argparse.Namespace, passthrough: Sequence[str]) -> BuildConfig:
    """Merge the optional config file with the command line; command line wins."""
    settings: Dict[str, Any] = load_config_file(args.config) if args.config else {}

    def pick(key: str, value: Any, default: Any = None) -> Any:
        if value is not None:
            return value
        return settings.get(key, default)

    toolchain = ToolchainConfig(
        compiler=pick("compiler", args.cc) or find_compiler(),
        arch_flags=tuple(settings.get("arch_flags", DEFAULT_ARCH_FLAGS)),
        timeout=pick("timeout", args.timeout, DEFAULT_TIMEOUT),
    )
    entry_address = pick("entry_address", args.entry_address)
    return BuildConfig(
        link_table=Path(args.link_table),
        symbol_table=Path(args.symbol_table),
        image=Path(args.image),
        entry_symbol=args.entry_symbol,
        sources=tuple(Path(src) for src in args.sources),
        extra_flags=tuple(passthrough),
        build_dir=Path(args.build_dir),
        toolchain=toolchain,
        jobs=pick("jobs", args.jobs),
        address_map=pick("address_map", args.address_map, "base"),
        image_base=parse_int(pick("image_base", args.image_base, 0), "image_base"),
        image_offset=parse_int(pick("image_offset", args.image_offset, 0), "image_offset"),
        entry_address=None if entry_address is None else parse_int(entry_address, "entry_address"),
        manifest=Path(args.manifest) if args.manifest else None,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    own_args, passthrough = split_passthrough(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(own_args)
    _configure_logging(args.log_level, args.verbose)

    try:
        config = build_config(args, passthrough)
        LOGGER.debug("Configuration: %s", config)
        result = run_build(config)
    except BuildFailure as exc:
        print(f"\n{FAIL_MARK} Build failed: {exc.stage} stage", file=sys.stderr)
        for line in exc.details():
            print(f"  {line}", file=sys.stderr)
        return exc.exit_code
    except ConfigError as exc:
        print(f"\n{FAIL_MARK} Invalid configuration: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print(f"\n{FAIL_MARK} Build interrupted", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"\n{FAIL_MARK} Unexpected error: {exc}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1

    print(f"\n{SUCCESS_MARK} Build successful!")
    print(f"  Image: {result.image} ({len(result.patches)} patches, crc32 0x{result.crc:08X})")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    if config.manifest is not None:
        print(f"  Manifest: {config.manifest}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
