"""Host target triplet detection."""

from __future__ import annotations

import os
import platform
import re
import sys
import sysconfig
from typing import TYPE_CHECKING, Literal

from prebake.errors import TargetResolutionError, ValidationError

if TYPE_CHECKING:
    from prebake.precompiler import Precompiler

Operation = Literal["compile", "fetch"]

_WINDOWS_ARCH = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "x86_64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "x86": "i686",
    "i386": "i686",
    "i686": "i686",
}
_DARWIN_VERSION = re.compile(r"^(darwin)[0-9.]*$")


def parse_host_triplet(raw: str) -> str:
    """Turn ``arch-vendor-os[-abi]`` into the canonical target string.

    Four components drop the vendor (``x86_64-pc-linux-gnu`` becomes
    ``x86_64-linux-gnu``). Darwin strings lose the OS version and keep three
    components (``aarch64-apple-darwin23.1.0`` becomes
    ``aarch64-apple-darwin``).
    """
    parts = raw.strip().split("-")
    if len(parts) == 3:
        arch, vendor, os_name = parts
        darwin = _DARWIN_VERSION.match(os_name)
        if darwin is not None:
            os_name = darwin.group(1)
        if arch == "arm64":
            arch = "aarch64"
        return f"{arch}-{vendor}-{os_name}"
    if len(parts) == 4:
        arch, _vendor, os_name, abi = parts
        return f"{arch}-{os_name}-{abi}"
    raise TargetResolutionError(
        "Cannot decompose host architecture string into a target triplet.",
        hint="Expected `arch-vendor-os` or `arch-vendor-os-abi`.",
        context={"operation": "current_target", "system_architecture": raw},
    )


def windows_target(processor_architecture: str, compiler: str) -> str:
    arch = _WINDOWS_ARCH.get(processor_architecture.strip().lower())
    if arch is None:
        raise TargetResolutionError(
            "Unknown Windows processor architecture.",
            context={
                "operation": "current_target",
                "processor_architecture": processor_architecture,
            },
        )
    vendor = "msvc" if "MSC" in compiler else "gnu"
    return f"{arch}-windows-{vendor}"


def host_architecture() -> str:
    """Return the raw ``arch-vendor-os[-abi]`` string for this interpreter's host."""
    host = sysconfig.get_config_var("HOST_GNU_TYPE")
    if isinstance(host, str) and host:
        return host
    machine = platform.machine() or "unknown"
    if sys.platform == "darwin":
        return f"{machine}-apple-darwin{platform.release()}"
    system = platform.system().lower() or "unknown"
    abi = ""
    if system == "linux":
        libc, _ = platform.libc_ver()
        abi = "gnu" if libc == "glibc" else "musl"
    return f"{machine}-unknown-{system}-{abi}" if abi else f"{machine}-unknown-{system}"


def current_target() -> str:
    if sys.platform == "win32":
        processor = os.environ.get("PROCESSOR_ARCHITECTURE", platform.machine())
        return windows_target(processor, platform.python_compiler())
    return parse_host_triplet(host_architecture())


def all_supported_targets(precompiler: Precompiler, operation: Operation) -> list[str]:
    if operation not in ("compile", "fetch"):
        raise ValidationError(f"Unsupported target operation: {operation}")
    return list(precompiler.all_supported_targets(operation))


__all__ = [
    "Operation",
    "all_supported_targets",
    "current_target",
    "host_architecture",
    "parse_host_triplet",
    "windows_target",
]
