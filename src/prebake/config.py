"""Project configuration and environment-derived defaults."""

from __future__ import annotations

import importlib
import os
import re
import sys
import tomllib
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from prebake.errors import ConfigError
from prebake.policy import NetworkMode, Policy

CACHE_DIR_ENV = "PREBAKE_CACHE_DIR"
XDG_ENV = "PREBAKE_XDG"
URL_PLACEHOLDER = "@{artefact_filename}"
DEFAULT_NIF_VERSION = f"{sys.version_info.major}.{sys.version_info.minor}"

VersionsSource = Sequence[str] | Callable[[str], Sequence[str]]
FallbackChooser = Callable[[str, Sequence[str]], str]

_DEV_SEGMENT = re.compile(r"[-.+]dev\d*(?:[-.+]|$)")


@dataclass(frozen=True, slots=True)
class MakeOptions:
    executable: str | None = None
    makefile: str | None = None
    targets: tuple[str, ...] = ()
    clean_targets: tuple[str, ...] | None = None
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    args: tuple[str, ...] = ()
    error_message: str | None = None


@dataclass(frozen=True, slots=True)
class ProjectConfig:
    app: str
    version: str
    root: Path = field(default_factory=Path.cwd)
    url_template: str | None = None
    nif_version: str = DEFAULT_NIF_VERSION
    nif_versions: VersionsSource | None = None
    fallback_version: FallbackChooser | None = None
    include: tuple[str, ...] = (".",)
    nif_filename: str | None = None
    output_dir: Path | None = None
    cache_dir: Path | None = None
    make: MakeOptions = field(default_factory=MakeOptions)
    force_build: bool = False
    max_workers: int = 8
    timeout: float | None = 60.0
    write_sidecars: bool = False
    policy: Policy = field(default_factory=Policy)

    @property
    def priv_dir(self) -> Path:
        """Directory holding the live native build output."""
        return self.output_dir if self.output_dir is not None else self.root / "priv"

    @property
    def checksum_path(self) -> Path:
        return self.root / f"checksum-{self.app}.json"

    @property
    def library_path(self) -> Path:
        name = self.nif_filename or self.app
        suffix = ".dll" if sys.platform == "win32" else ".so"
        return self.priv_dir / f"{name}{suffix}"

    @property
    def should_force_build(self) -> bool:
        return self.force_build or is_prerelease(self.version)

    def resolved_cache_dir(self) -> Path:
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            return self.cache_dir
        return cache_dir()

    def versions_for(self, target: str) -> list[str]:
        """Published runtime ABI versions for *target*."""
        source = self.nif_versions
        if source is None:
            return [self.nif_version]
        if callable(source):
            return list(source(target))
        return list(source)


def is_prerelease(version: str) -> bool:
    return _DEV_SEGMENT.search(version) is not None


def user_cache_root() -> Path:
    """Platform user cache directory (XDG on Linux, Library/Caches on macOS)."""
    if sys.platform == "win32" and not os.environ.get(XDG_ENV):
        local = os.environ.get("LOCALAPPDATA")
        if local:
            return Path(local)
        return Path.home() / "AppData" / "Local"
    if sys.platform == "darwin" and not os.environ.get(XDG_ENV):
        return Path.home() / "Library" / "Caches"
    xdg = os.environ.get("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg)
    return Path.home() / ".cache"


def cache_dir(sub_dir: str = "") -> Path:
    """Resolve and create the artifact cache directory."""
    override = os.environ.get(CACHE_DIR_ENV)
    root = Path(override).expanduser() if override else user_cache_root() / "prebake"
    path = (root / sub_dir) if sub_dir else root
    path = path.resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_config(path: str | Path) -> tuple[ProjectConfig, str | None]:
    """Read ``[tool.prebake]`` from a ``pyproject.toml``.

    Returns the config and the optional ``module:attribute`` precompiler path.
    """
    config_path = Path(path)
    try:
        raw = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(
            "Project configuration file does not exist.",
            context={"path": str(config_path)},
        ) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(
            "Project configuration is not valid TOML.",
            hint=str(exc),
            context={"path": str(config_path)},
        ) from exc

    section = raw.get("tool", {}).get("prebake")
    if not isinstance(section, dict):
        raise ConfigError(
            "Missing [tool.prebake] section.",
            hint="Add a [tool.prebake] table with at least `app` and `version`.",
            context={"path": str(config_path)},
        )
    project = raw.get("project", {})
    root = config_path.parent.resolve()

    app = _required_str(section, "app", default=project.get("name"))
    version = _required_str(section, "version", default=project.get("version"))
    make = _make_options(section.get("make", {}), root=root)
    network_mode: NetworkMode = "offline" if section.get("offline", False) else "online"

    config = ProjectConfig(
        app=app,
        version=version,
        root=root,
        url_template=_optional_str(section, "url"),
        nif_version=_optional_str(section, "nif_version") or DEFAULT_NIF_VERSION,
        nif_versions=_optional_str_list(section, "nif_versions"),
        include=tuple(_optional_str_list(section, "include") or (".",)),
        nif_filename=_optional_str(section, "nif_filename"),
        output_dir=_optional_path(section, "output_dir", root=root),
        cache_dir=_optional_path(section, "cache_dir", root=root),
        make=make,
        force_build=bool(section.get("force_build", False)),
        max_workers=_positive_int(section, "max_workers", default=8),
        timeout=_positive_float(section, "timeout", default=60.0),
        write_sidecars=bool(section.get("write_sidecars", False)),
        policy=Policy(
            network_mode=network_mode,
            ignore_unavailable=bool(section.get("ignore_unavailable", False)),
        ),
    )
    return config, _optional_str(section, "precompiler")


def load_object(path: str) -> Any:
    """Import ``module:attribute`` and return the attribute."""
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigError(
            "Invalid import path.",
            hint="Use the form `package.module:attribute`.",
            context={"path": path},
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(
            "Cannot import precompiler module.",
            hint=str(exc),
            context={"path": path},
        ) from exc
    try:
        return getattr(module, attribute)
    except AttributeError as exc:
        raise ConfigError(
            "Precompiler attribute not found.",
            context={"path": path, "module": module_name, "attribute": attribute},
        ) from exc


def _make_options(section: Any, *, root: Path) -> MakeOptions:
    if not isinstance(section, dict):
        raise ConfigError("Invalid [tool.prebake.make] section.")
    env = section.get("env", {})
    if not isinstance(env, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in env.items()
    ):
        raise ConfigError("Invalid `make.env` value; expected a table of strings.")
    clean = _optional_str_list(section, "clean")
    return MakeOptions(
        executable=_optional_str(section, "executable"),
        makefile=_optional_str(section, "makefile"),
        targets=tuple(_optional_str_list(section, "targets") or ()),
        clean_targets=tuple(clean) if clean is not None else None,
        cwd=_optional_path(section, "cwd", root=root),
        env=dict(env),
        args=tuple(_optional_str_list(section, "args") or ()),
        error_message=_optional_str(section, "error_message"),
    )


def _required_str(payload: dict[str, Any], key: str, *, default: Any = None) -> str:
    value = payload.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Invalid or missing `{key}` value.", context={"key": key})
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"Invalid `{key}` value; expected a string.", context={"key": key})
    return value


def _positive_int(payload: dict[str, Any], key: str, *, default: int) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(
            f"Invalid `{key}` value; expected a positive integer.", context={"key": key}
        )
    return value


def _positive_float(payload: dict[str, Any], key: str, *, default: float) -> float:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigError(
            f"Invalid `{key}` value; expected a positive number of seconds.",
            context={"key": key},
        )
    return float(value)


def _optional_str_list(payload: dict[str, Any], key: str) -> list[str] | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"Invalid `{key}` value; expected a list of strings.", context={"key": key})
    return list(value)


def _optional_path(payload: dict[str, Any], key: str, *, root: Path) -> Path | None:
    value = _optional_str(payload, key)
    if value is None:
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else root / path
