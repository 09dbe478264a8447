import io
import stat
import sys
from pathlib import Path

import pytest

from prebake import precompiler as precompiler_module
from prebake.config import MakeOptions
from prebake.errors import BuildError
from prebake.make import PathWithSpacesWarning, clean, make_executable, makefile_args, run_make
from prebake.precompiler import MakePrecompiler, Toolchain

needs_posix = pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as make")


def _fake_make(directory: Path, exit_code: int = 0) -> Path:
    script = directory / "fake-make"
    script.write_text(
        "#!/bin/sh\n"
        'echo "args: $*"\n'
        'echo "cc: $CC target: $PREBAKE_TARGET priv: $PREBAKE_PRIV_DIR"\n'
        'echo "extra: $MYAPP_FLAG" 1>&2\n'
        f"exit {exit_code}\n",
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return script


def test_make_executable_prefers_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAKE", "/opt/bin/remake")

    assert make_executable("gmake") == "/opt/bin/remake"


def test_make_executable_uses_configured_then_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MAKE", raising=False)
    monkeypatch.setattr(sys, "platform", "freebsd14")

    assert make_executable("mymake") == "mymake"
    assert make_executable() == "gmake"


@pytest.mark.parametrize(
    ("executable", "makefile", "expected"),
    [
        ("make", None, []),
        ("make", "Makefile.custom", ["-f", "Makefile.custom"]),
        ("nmake", None, ["/F", "Makefile.win"]),
        ("C:/tools/nmake.exe", "build.mak", ["/F", "build.mak"]),
    ],
)
def test_makefile_args(executable: str, makefile: str | None, expected: list[str]) -> None:
    assert makefile_args(executable, makefile) == expected


@needs_posix
def test_run_make_streams_output_and_passes_environment(
    make_config, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("MAKE", str(_fake_make(tmp_path)))
    config = make_config(
        make=MakeOptions(targets=("all",), args=("-j2",), env={"MYAPP_FLAG": "on"})
    )
    output = io.BytesIO()

    run_make(
        config,
        ["--verbose"],
        toolchain=Toolchain(cc="clang", cxx="clang++"),
        extra_env={"PREBAKE_TARGET": "a-b-c"},
        output=output,
    )

    text = output.getvalue().decode()
    assert "Compiling with make:" in text
    assert "args: all -j2" in text
    assert f"cc: clang target: a-b-c priv: {config.priv_dir}" in text
    assert "extra: on" in text


@needs_posix
def test_run_make_failure_raises_build_error(
    make_config, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("MAKE", str(_fake_make(tmp_path, exit_code=2)))
    config = make_config(make=MakeOptions(error_message="install a compiler"))

    with pytest.raises(BuildError) as excinfo:
        run_make(config, output=io.BytesIO())

    assert excinfo.value.context["returncode"] == "2"
    assert excinfo.value.hint == "install a compiler"


def test_run_make_missing_executable(make_config, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAKE", "definitely-not-a-make-binary")

    with pytest.raises(BuildError) as excinfo:
        run_make(make_config(), output=io.BytesIO())

    assert "not found in the path" in str(excinfo.value)


@needs_posix
def test_run_make_warns_on_spaces(tmp_path: Path, make_config, monkeypatch) -> None:
    monkeypatch.setenv("MAKE", str(_fake_make(tmp_path)))
    config = make_config(root=tmp_path / "with space")

    with pytest.warns(PathWithSpacesWarning):
        run_make(config, output=io.BytesIO())


@needs_posix
def test_clean_runs_configured_targets(make_config, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MAKE", str(_fake_make(tmp_path)))
    output = io.BytesIO()

    assert clean(make_config(), output=output) is False
    assert clean(make_config(make=MakeOptions(clean_targets=("clean",))), output=output) is True
    assert "args: clean" in output.getvalue().decode()


def test_make_precompiler_sets_target(make_config, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, object]] = []
    monkeypatch.setattr(
        precompiler_module,
        "run_make",
        lambda config, args=(), **kwargs: calls.append(kwargs),
    )
    config = make_config()
    precompiler = MakePrecompiler(config, fetch_targets=("a-b-c", "x-y-z"))
    toolchain = Toolchain(cc="cc-x", cxx="c++-x")

    precompiler.precompile([], "x-y-z", toolchain)

    assert calls == [{"toolchain": toolchain, "extra_env": {"PREBAKE_TARGET": "x-y-z"}}]
    assert precompiler.all_supported_targets("fetch") == ["a-b-c", "x-y-z"]
