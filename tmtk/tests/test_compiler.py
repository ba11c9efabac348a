"""Compile stage and GCC driver tests; the real toolchain is never spawned."""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from tmtk.compiler import ObjectCompiler
from tmtk.errors import CompileFailures, DuplicateOutput, ObjectFormatError, ToolchainError, UnsupportedInput
from tmtk.tests.scenario import FakeToolchain, entry_object, helper_object
from tmtk.toolchain import GccToolchain


def _compiler(toolchain, **kwargs):
    kwargs.setdefault("arch_flags", ("-mcpu=750",))
    kwargs.setdefault("jobs", 2)
    return ObjectCompiler(toolchain, **kwargs)


class TestPlan:
    def test_unsupported_input_stops_before_toolchain(self, tmp_path, fake_toolchain):
        sources = [Path("src/entry.c"), Path("src/notes.txt"), Path("src/start.s")]
        with pytest.raises(CompileFailures) as excinfo:
            _compiler(fake_toolchain).compile(sources, tmp_path)
        errors = excinfo.value.errors
        assert [type(error) for error in errors] == [UnsupportedInput, UnsupportedInput]
        assert [error.path.name for error in errors] == ["notes.txt", "start.s"]
        assert fake_toolchain.calls == []
        assert excinfo.value.exit_code == 3

    def test_colliding_object_paths(self, tmp_path, fake_toolchain):
        sources = [Path("a/util.c"), Path("b/util.c"), Path("src/entry.c")]
        with pytest.raises(CompileFailures) as excinfo:
            _compiler(fake_toolchain).compile(sources, tmp_path)
        (error,) = excinfo.value.errors
        assert isinstance(error, DuplicateOutput)
        assert error.path == tmp_path / "util.o"
        assert error.sources == (Path("a/util.c"), Path("b/util.c"))
        assert fake_toolchain.calls == []

    def test_object_path_uses_build_dir_and_suffix(self, tmp_path, fake_toolchain):
        compiler = _compiler(fake_toolchain, object_suffix=".obj")
        assert compiler.object_path_for(Path("deep/src/menu.c"), tmp_path) == tmp_path / "menu.obj"


class TestCompile:
    def test_units_come_back_in_input_order(self, tmp_path, fake_toolchain):
        sources = [Path("src/helper.c"), Path("src/entry.c")]
        units = _compiler(fake_toolchain).compile(sources, tmp_path, ["-O2", "-Iinclude"])

        assert [unit.source for unit in units] == sources
        assert units[0].object_path == tmp_path / "helper.o"
        assert units[0].defines == frozenset({"tmHelper", "tmData"})
        assert units[1].references == frozenset({"tmHelper", "OSReport"})
        for call in fake_toolchain.calls:
            assert call.flags == ("-O2", "-Iinclude", "-mcpu=750")

    def test_no_sources_is_a_no_op(self, tmp_path, fake_toolchain):
        assert _compiler(fake_toolchain).compile([], tmp_path) == []

    def test_failures_are_collected_without_stopping_others(self, tmp_path):
        toolchain = FakeToolchain(
            {"entry.c": entry_object(), "helper.c": helper_object()},
            failures={"bad.c": "bad.c:3: error: expected ';'", "worse.c": "worse.c:1: error"},
        )
        sources = [Path("bad.c"), Path("entry.c"), Path("worse.c"), Path("helper.c")]
        with pytest.raises(CompileFailures) as excinfo:
            _compiler(toolchain).compile(sources, tmp_path)

        errors = excinfo.value.errors
        assert [error.path.name for error in errors] == ["bad.c", "worse.c"]
        assert all(isinstance(error, ToolchainError) and not error.terminal for error in errors)
        assert "expected ';'" in errors[0].exit_info
        assert excinfo.value.skipped == []
        assert toolchain.compiled == ["bad.c", "entry.c", "helper.c", "worse.c"]

    def test_terminal_failure_stops_scheduling(self, tmp_path):
        names = [f"unit{index}.c" for index in range(8)]
        toolchain = FakeToolchain(failures={name: "cannot launch gcc" for name in names}, terminal=True)
        with pytest.raises(CompileFailures) as excinfo:
            _compiler(toolchain, jobs=1).compile([Path(name) for name in names], tmp_path)

        failure = excinfo.value
        assert failure.errors[0].terminal
        failed = {error.path.name for error in failure.errors}
        skipped = {path.name for path in failure.skipped}
        assert failed | skipped == set(names)
        assert failed.isdisjoint(skipped)
        assert skipped.isdisjoint(toolchain.compiled)

    def test_unlaunchable_compiler_is_a_compile_failure(self, tmp_path):
        sources = [Path("a.c"), Path("b.c")]
        with patch("tmtk.toolchain.subprocess.run", side_effect=OSError(8, "Exec format error")):
            with pytest.raises(CompileFailures) as excinfo:
                _compiler(GccToolchain(str(tmp_path / "cc")), jobs=1).compile(sources, tmp_path)

        failure = excinfo.value
        assert all(isinstance(error, ToolchainError) for error in failure.errors)
        assert failure.errors[0].terminal
        assert "Exec format error" in failure.errors[0].exit_info
        reported = {error.path for error in failure.errors} | set(failure.skipped)
        assert reported == set(sources)

    def test_empty_object_is_a_toolchain_error(self, tmp_path):
        toolchain = FakeToolchain({"empty.c": b""})
        with pytest.raises(CompileFailures) as excinfo:
            _compiler(toolchain).compile([Path("empty.c")], tmp_path)
        assert "missing or empty" in str(excinfo.value.errors[0])

    def test_unreadable_object_is_reported(self, tmp_path):
        toolchain = FakeToolchain({"junk.c": b"\x7fELF but not really"})
        with pytest.raises(CompileFailures) as excinfo:
            _compiler(toolchain).compile([Path("junk.c")], tmp_path)
        assert isinstance(excinfo.value.errors[0], ObjectFormatError)

    def test_stale_object_is_removed_before_compiling(self, tmp_path):
        stale = tmp_path / "entry.o"
        stale.write_bytes(entry_object())
        toolchain = FakeToolchain(failures={"entry.c": "syntax error"})
        with pytest.raises(CompileFailures):
            _compiler(toolchain).compile([Path("entry.c")], tmp_path)
        assert not stale.exists()

    def test_details_include_skipped_inputs(self):
        failure = CompileFailures([ToolchainError(Path("a.c"), "boom", terminal=True)], skipped=[Path("b.c")])
        lines = list(failure.details())
        assert lines[0] == "a.c: boom"
        assert lines[1].startswith("b.c: not compiled")


class TestGccToolchain:
    def test_command_layout(self):
        gcc = GccToolchain("powerpc-eabi-gcc")
        cmd = gcc.command(Path("src/a.c"), Path("build/a.o"), ["-O2", "-mcpu=750"])
        assert cmd == ["powerpc-eabi-gcc", "-O2", "-mcpu=750", "-c", "src/a.c", "-o", "build/a.o"]

    def test_success(self):
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")
        with patch("tmtk.toolchain.subprocess.run", return_value=completed) as run:
            result = GccToolchain("gcc").compile(Path("a.c"), Path("a.o"), ["-O2"], timeout=5)
        assert result.ok
        _, kwargs = run.call_args
        assert kwargs["timeout"] == 5
        assert kwargs["capture_output"] is True

    def test_nonzero_exit_carries_diagnostics(self):
        completed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="a.c:2: error: oops\n")
        with patch("tmtk.toolchain.subprocess.run", return_value=completed):
            result = GccToolchain("gcc").compile(Path("a.c"), Path("a.o"), [])
        assert not result.ok
        assert not result.terminal
        assert result.describe() == "toolchain exited with status 1: a.c:2: error: oops"

    def test_missing_executable_is_terminal(self):
        with patch("tmtk.toolchain.subprocess.run", side_effect=FileNotFoundError(2, "No such file or directory")):
            result = GccToolchain("/opt/devkitPPC/bin/powerpc-eabi-gcc").compile(Path("a.c"), Path("a.o"), [])
        assert result.terminal
        assert result.returncode is None
        assert "cannot launch" in result.diagnostic

    def test_timeout(self):
        with patch("tmtk.toolchain.subprocess.run", side_effect=subprocess.TimeoutExpired("gcc", 3)):
            result = GccToolchain("gcc").compile(Path("a.c"), Path("a.o"), [], timeout=3)
        assert not result.ok
        assert not result.terminal
        assert "timed out after 3s" in result.describe()

    def test_exec_format_error_is_terminal(self):
        with patch("tmtk.toolchain.subprocess.run", side_effect=OSError(8, "Exec format error")):
            result = GccToolchain("./cc").compile(Path("a.c"), Path("a.o"), [])
        assert not result.ok
        assert result.terminal
        assert result.returncode is None
        assert "cannot launch ./cc: Exec format error" in result.diagnostic
