"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from prebake.config import ProjectConfig
from prebake.errors import BuildError
from prebake.precompiler import PrecompilerHooks, Toolchain
from prebake.targets import Operation


@dataclass(slots=True)
class FakePrecompiler:
    """Writes ``out.bin`` into the output directory for every target it builds."""

    priv_dir: Path
    compile_targets: list[str] = field(default_factory=lambda: ["a-b-c"])
    fetch_targets: list[str] | None = None
    host: str = "a-b-c"
    payloads: dict[str, bytes] = field(default_factory=dict)
    fail_targets: set[str] = field(default_factory=set)
    hooks: PrecompilerHooks = field(default_factory=PrecompilerHooks)
    built: list[str] = field(default_factory=list)
    toolchains: dict[str, Toolchain | None] = field(default_factory=dict)
    native_builds: int = 0

    def all_supported_targets(self, operation: Operation) -> list[str]:
        if operation == "compile":
            return list(self.compile_targets)
        return list(self.fetch_targets if self.fetch_targets is not None else self.compile_targets)

    def current_target(self) -> str:
        return self.host

    def build_native(self, args: Sequence[str]) -> None:
        self.native_builds += 1
        self.priv_dir.mkdir(parents=True, exist_ok=True)
        (self.priv_dir / "native.bin").write_bytes(b"native")

    def precompile(self, args: Sequence[str], target: str, toolchain: Toolchain | None) -> None:
        self.built.append(target)
        self.toolchains[target] = toolchain
        if target in self.fail_targets:
            raise BuildError(f"build failed for {target}", context={"target": target})
        self.priv_dir.mkdir(parents=True, exist_ok=True)
        (self.priv_dir / "out.bin").write_bytes(self.payloads.get(target, b"v1"))


@pytest.fixture(autouse=True)
def isolated_cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the user cache at a per-test directory."""
    cache = tmp_path / "user-cache"
    monkeypatch.setenv("PREBAKE_CACHE_DIR", str(cache))
    return cache


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., ProjectConfig]:
    def factory(**overrides: Any) -> ProjectConfig:
        values: dict[str, Any] = {
            "app": "myapp",
            "version": "1.0.0",
            "root": tmp_path / "project",
            "nif_version": "2.16",
            "cache_dir": tmp_path / "cache",
            "url_template": (tmp_path / "mirror").as_uri() + "/@{artefact_filename}",
        }
        values.update(overrides)
        config = ProjectConfig(**values)
        config.root.mkdir(parents=True, exist_ok=True)
        return config

    return factory


@pytest.fixture
def make_precompiler() -> Callable[..., FakePrecompiler]:
    def factory(config: ProjectConfig, **overrides: Any) -> FakePrecompiler:
        return FakePrecompiler(priv_dir=config.priv_dir, **overrides)

    return factory
