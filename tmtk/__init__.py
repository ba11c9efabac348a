"""tmtk: compile C against a frozen address space and patch it into an image."""

__version__ = "0.1.0"

from .errors import (  # noqa: E402
    BuildFailure,
    CompileFailures,
    ConfigError,
    LoadFailures,
    PatchFailures,
    ResolveFailures,
    TmtkError,
)
from .config import BuildConfig, ToolchainConfig  # noqa: E402
from .linktable import LinkTable, load_link_table, parse_link_table  # noqa: E402
from .symtable import SymbolTable, load_symbol_table, parse_symbol_table  # noqa: E402
from .resolver import ResolvedPatch, resolve  # noqa: E402
from .patcher import BaseAddressMap, DolAddressMap, apply_patches  # noqa: E402
from .pipeline import BuildResult, run_build  # noqa: E402

__all__ = [
    "BaseAddressMap",
    "BuildConfig",
    "BuildFailure",
    "BuildResult",
    "CompileFailures",
    "ConfigError",
    "DolAddressMap",
    "LinkTable",
    "LoadFailures",
    "PatchFailures",
    "ResolveFailures",
    "ResolvedPatch",
    "SymbolTable",
    "TmtkError",
    "ToolchainConfig",
    "__version__",
    "apply_patches",
    "load_link_table",
    "load_symbol_table",
    "parse_link_table",
    "parse_symbol_table",
    "resolve",
    "run_build",
]
