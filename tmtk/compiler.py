"""Compile stage: one toolchain invocation per source file, run on a worker pool."""

from __future__ import annotations

import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .errors import CompileError, CompileFailures, DuplicateOutput, ToolchainError, UnsupportedInput
from .objfile import ObjectFile, read_object
from .toolchain import Toolchain

LOGGER = logging.getLogger("tmtk.compiler")


@dataclass(frozen=True)
class SourceUnit:
    source: Path
    object_path: Path
    obj: ObjectFile = field(repr=False, compare=False)
    defines: FrozenSet[str] = frozenset()
    references: FrozenSet[str] = frozenset()

    @classmethod
    def from_object(cls, source: Path, object_path: Path, obj: ObjectFile) -> "SourceUnit":
        return cls(
            source=source,
            object_path=object_path,
            obj=obj,
            defines=frozenset(obj.defined_globals()),
            references=obj.undefined_names(),
        )


class ObjectCompiler:
    """Turns source files into ``SourceUnit`` objects.

    Inputs are validated up front; any unsupported or colliding input stops
    the stage before the toolchain runs.  Toolchain failures are collected
    per file.  Processes already running are always allowed to finish, but a
    terminal failure (the executable cannot be launched) cancels the queue.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        *,
        arch_flags: Sequence[str] = (),
        source_suffix: str = ".c",
        object_suffix: str = ".o",
        jobs: Optional[int] = None,
        timeout: Optional[float] = None,
        reader: Callable[[Path], ObjectFile] = read_object,
    ) -> None:
        self.toolchain = toolchain
        self.arch_flags = tuple(arch_flags)
        self.source_suffix = source_suffix
        self.object_suffix = object_suffix
        self.jobs = jobs
        self.timeout = timeout
        self.reader = reader

    def object_path_for(self, source: Path, build_dir: Path) -> Path:
        return Path(build_dir) / Path(source).with_suffix(self.object_suffix).name

    def plan(self, sources: Iterable[Path], build_dir: Path) -> List[Tuple[Path, Path]]:
        """Validate inputs and pair each with its object path."""
        errors: List[CompileError] = []
        plan: List[Tuple[Path, Path]] = []
        claimed: Dict[str, List[Path]] = {}
        for source in (Path(item) for item in sources):
            if source.suffix != self.source_suffix:
                errors.append(UnsupportedInput(source, self.source_suffix))
                continue
            output = self.object_path_for(source, build_dir)
            claimed.setdefault(os.path.normcase(str(output)), []).append(source)
            plan.append((source, output))
        reported = set()
        for source, output in plan:
            key = os.path.normcase(str(output))
            if len(claimed[key]) > 1 and key not in reported:
                reported.add(key)
                errors.append(DuplicateOutput(output, claimed[key]))
        if errors:
            raise CompileFailures(errors)
        return plan

    def compile(
        self,
        sources: Iterable[Path],
        build_dir: Path,
        extra_flags: Sequence[str] = (),
    ) -> List[SourceUnit]:
        plan = self.plan(sources, build_dir)
        if not plan:
            return []
        flags = [*extra_flags, *self.arch_flags]
        workers = self.jobs or os.cpu_count() or 1
        workers = max(1, min(workers, len(plan)))
        LOGGER.info("Compiling %d source files with %d workers", len(plan), workers)

        units: Dict[int, SourceUnit] = {}
        errors: Dict[int, CompileError] = {}
        skipped: List[int] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tmtk-cc") as pool:
            futures: Dict[Future, int] = {
                pool.submit(self._compile_one, source, output, flags): index
                for index, (source, output) in enumerate(plan)
            }
            pending = set(futures)
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=futures.__getitem__):
                    index = futures[future]
                    try:
                        units[index] = future.result()
                    except CompileError as exc:
                        errors[index] = exc
                        LOGGER.error("%s", exc)
                        if isinstance(exc, ToolchainError) and exc.terminal:
                            for other in sorted(pending, key=futures.__getitem__):
                                if other.cancel():
                                    skipped.append(futures[other])
                            pending = {other for other in pending if not other.cancelled()}

        if errors or skipped:
            raise CompileFailures(
                [errors[index] for index in sorted(errors)],
                skipped=[plan[index][0] for index in sorted(skipped)],
            )
        return [units[index] for index in range(len(plan))]

    def _compile_one(self, source: Path, output: Path, flags: Sequence[str]) -> SourceUnit:
        LOGGER.info("Compiling %s -> %s", source, output)
        try:
            output.unlink(missing_ok=True)
        except OSError as exc:
            raise ToolchainError(source, f"cannot remove stale object {output}: {exc.strerror or exc}") from exc
        result = self.toolchain.compile(source, output, flags, self.timeout)
        if not result.ok:
            raise ToolchainError(source, result.describe(), terminal=result.terminal)
        try:
            size = output.stat().st_size
        except OSError:
            size = 0
        if size == 0:
            raise ToolchainError(source, f"toolchain reported success but {output} is missing or empty")
        obj = self.reader(output)
        return SourceUnit.from_object(source, output, obj)


__all__ = ["ObjectCompiler", "SourceUnit"]
