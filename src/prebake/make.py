"""``make`` invocation with real-time output streaming."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import warnings
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from prebake.errors import BuildError

if TYPE_CHECKING:
    from prebake.config import ProjectConfig
    from prebake.precompiler import Toolchain

MAC_ERROR_MESSAGE = (
    "You need to have gcc and make installed. Try running the commands "
    '"gcc --version" and / or "make --version". If these programs are not '
    "installed, you will be prompted to install them."
)
UNIX_ERROR_MESSAGE = (
    "You need to have gcc and make installed. On Debian-based systems install "
    'the "build-essential" package; on Fedora run '
    "\"dnf group install 'Development Tools'\"."
)
WINDOWS_ERROR_MESSAGE = (
    "Install the Visual C++ Build Tools and run the build from a developer "
    "command prompt (vcvarsall.bat), or install an MSYS2 toolchain."
)

_BSD_PLATFORMS = ("freebsd", "openbsd", "netbsd", "dragonfly")


class PathWithSpacesWarning(UserWarning):
    """Make may misbehave when the working directory contains spaces."""


def make_executable(configured: str | None = None) -> str:
    """``$MAKE``, then the configured executable, then the OS default."""
    from_env = os.environ.get("MAKE")
    if from_env:
        return from_env
    if configured:
        return configured
    if sys.platform == "win32":
        if shutil.which("nmake"):
            return "nmake"
        if shutil.which("make"):
            return "make"
        return "nmake"
    if sys.platform.startswith(_BSD_PLATFORMS):
        return "gmake"
    return "make"


def makefile_args(executable: str, makefile: str | None) -> list[str]:
    base = Path(executable).stem
    if base == "nmake":
        return ["/F", makefile or "Makefile.win"]
    if makefile is None:
        return []
    return ["-f", makefile]


def default_error_message() -> str:
    if sys.platform == "darwin":
        return MAC_ERROR_MESSAGE
    if sys.platform == "win32":
        return WINDOWS_ERROR_MESSAGE
    return UNIX_ERROR_MESSAGE


def default_env(
    config: ProjectConfig,
    *,
    toolchain: Toolchain | None = None,
    extra_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment passed to ``make``; later sources override earlier ones."""
    env = dict(os.environ)
    env.update(
        {
            "PREBAKE_APP": config.app,
            "PREBAKE_VERSION": config.version,
            "PREBAKE_PRIV_DIR": str(config.priv_dir),
            "PREBAKE_NIF_VERSION": config.nif_version,
        }
    )
    if toolchain is not None:
        env.update(toolchain.env())
    env.update(config.make.env)
    if extra_env:
        env.update(extra_env)
    return env


def run_make(
    config: ProjectConfig,
    args: Sequence[str] = (),
    *,
    toolchain: Toolchain | None = None,
    extra_env: Mapping[str, str] | None = None,
    targets: Sequence[str] | None = None,
    output: BinaryIO | None = None,
) -> None:
    options = config.make
    executable = make_executable(options.executable)
    cwd = (options.cwd or config.root).resolve()
    if " " in str(cwd):
        warnings.warn(
            f"The absolute path to the Makefile contains spaces: {cwd}. "
            "Make might not work properly.",
            PathWithSpacesWarning,
            stacklevel=2,
        )

    make_targets = list(options.targets if targets is None else targets)
    argv = [
        *makefile_args(executable, options.makefile),
        *make_targets,
        *options.args,
    ]
    resolved = shutil.which(executable)
    if resolved is None:
        raise BuildError(
            f'"{executable}" not found in the path.',
            hint="If you have set the MAKE environment variable, make sure it is correct.",
            context={"operation": "make", "executable": executable},
        )

    stream = output if output is not None else sys.stdout.buffer
    if "--verbose" in args:
        stream.write(f"Compiling with make: {executable} {_quote_args(argv)}\n".encode())
        stream.flush()

    env = default_env(config, toolchain=toolchain, extra_env=extra_env)
    config.priv_dir.mkdir(parents=True, exist_ok=True)
    with subprocess.Popen(
        [resolved, *argv],
        cwd=str(cwd),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    ) as process:
        if process.stdout is None:
            raise BuildError(
                f'Cannot read output of "{executable}".',
                context={"operation": "make", "executable": executable},
            )
        for line in process.stdout:
            stream.write(line)
            stream.flush()
        returncode = process.wait()

    if returncode != 0:
        raise BuildError(
            f'Could not compile with "{executable}" (exit status: {returncode}).',
            hint=options.error_message or default_error_message(),
            context={
                "operation": "make",
                "returncode": str(returncode),
                "command": " ".join([executable, *argv]),
                "cwd": str(cwd),
            },
        )


def clean(config: ProjectConfig, *, output: BinaryIO | None = None) -> bool:
    """Run the configured clean targets; returns False when none are configured."""
    clean_targets = config.make.clean_targets
    if clean_targets is None:
        return False
    run_make(config, targets=clean_targets, output=output)
    return True


def _quote_args(argv: Sequence[str]) -> str:
    return " ".join(f'"{arg}"' if " " in arg else arg for arg in argv)
