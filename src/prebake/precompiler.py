"""Typed interfaces for precompiler plugins."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, Protocol

from prebake import targets as target_resolver
from prebake.make import run_make
from prebake.targets import Operation

if TYPE_CHECKING:
    from prebake.config import ProjectConfig

RecoveryAction = Literal["compile", "ignore"]


@dataclass(frozen=True, slots=True)
class Toolchain:
    """Compiler selection for one target build."""

    cc: str
    cxx: str
    cpp: str | None = None

    def env(self) -> dict[str, str]:
        return {"CC": self.cc, "CXX": self.cxx, "CPP": self.cpp or self.cxx}


@dataclass(frozen=True, slots=True)
class PrecompilerHooks:
    """Optional precompiler callbacks; ``None`` means the hook is absent."""

    toolchain: Callable[[str], Toolchain | None] | None = None
    post_precompile_target: Callable[[str], None] | None = None
    post_precompile: Callable[[], None] | None = None
    unavailable_target: Callable[[str], RecoveryAction] | None = None


class Precompiler(Protocol):
    hooks: PrecompilerHooks

    def all_supported_targets(self, operation: Operation) -> Sequence[str]:
        """Targets this host can build (``compile``) or the published matrix (``fetch``)."""

    def current_target(self) -> str:
        """Return the target triplet for this host or raise TargetResolutionError."""

    def build_native(self, args: Sequence[str]) -> None:
        """Compile the native library for this host."""

    def precompile(self, args: Sequence[str], target: str, toolchain: Toolchain | None) -> None:
        """Build *target* into the output directory or raise BuildError."""


@dataclass(slots=True)
class MakePrecompiler:
    """Precompiler that builds only for the host it runs on, using ``make``.

    ``fetch_targets`` lists the full published matrix; CI jobs on other hosts
    contribute the remaining archives.
    """

    config: ProjectConfig
    fetch_targets: tuple[str, ...] = ()
    extra_env: Mapping[str, str] = field(default_factory=dict)
    hooks: PrecompilerHooks = field(default_factory=PrecompilerHooks)

    def all_supported_targets(self, operation: Operation) -> list[str]:
        if operation == "compile":
            return [self.current_target()]
        return list(self.fetch_targets) or [self.current_target()]

    def current_target(self) -> str:
        return target_resolver.current_target()

    def build_native(self, args: Sequence[str]) -> None:
        run_make(self.config, args, extra_env=self.extra_env)

    def precompile(self, args: Sequence[str], target: str, toolchain: Toolchain | None) -> None:
        env = dict(self.extra_env)
        env["PREBAKE_TARGET"] = target
        run_make(self.config, args, toolchain=toolchain, extra_env=env)


def recovery_action(precompiler: Precompiler, target: str) -> RecoveryAction:
    hook = precompiler.hooks.unavailable_target
    if hook is None:
        return "compile"
    return hook(target)


__all__ = [
    "MakePrecompiler",
    "Precompiler",
    "PrecompilerHooks",
    "RecoveryAction",
    "Toolchain",
    "recovery_action",
]
