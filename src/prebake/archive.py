"""Gzip-compressed tar archives of build output trees."""

from __future__ import annotations

import io
import os
import tarfile
from collections.abc import Sequence
from pathlib import Path

from prebake.errors import ArchiveError

DEFAULT_INCLUDE: tuple[str, ...] = (".",)
_GLOB_CHARS = frozenset("*?[")


def collect_entries(base_dir: str | Path, include: Sequence[str] = DEFAULT_INCLUDE) -> list[str]:
    """Return archive member names selected by *include* under *base_dir*.

    Directories are walked recursively. Symlinks are reported as entries of
    their own and never followed; a directory reached twice (through
    overlapping patterns) is walked once.
    """
    base = Path(base_dir)
    if not base.is_dir():
        raise ArchiveError(
            "Archive base directory does not exist.",
            context={"operation": "collect_entries", "path": str(base)},
        )

    names: list[str] = []
    seen_names: set[str] = set()
    visited_dirs: set[Path] = set()

    def add(name: str) -> None:
        if name not in seen_names:
            seen_names.add(name)
            names.append(name)

    def walk(path: Path) -> None:
        name = _member_name(base, path)
        if path.is_symlink():
            add(name)
            return
        if path.is_dir():
            canonical = path.resolve()
            if canonical in visited_dirs:
                return
            visited_dirs.add(canonical)
            if name != ".":
                add(name)
            for child in sorted(path.iterdir()):
                walk(child)
            return
        if path.exists():
            add(name)

    for pattern in include or DEFAULT_INCLUDE:
        for match in _expand_pattern(base, pattern):
            walk(match)
    return names


def create_archive(
    archive_path: str | Path,
    base_dir: str | Path,
    include: Sequence[str] = DEFAULT_INCLUDE,
) -> int:
    """Write a ``.tar.gz`` of the selected entries and return its size in bytes."""
    destination = Path(archive_path)
    base = Path(base_dir)
    names = collect_entries(base, include)

    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_path = destination.with_name(f".{destination.name}.tmp")
    try:
        with tarfile.open(temp_path, mode="w:gz") as tar:
            for name in names:
                tar.add(base / name, arcname=name, recursive=False)
        os.replace(temp_path, destination)
    except (OSError, tarfile.TarError) as exc:
        temp_path.unlink(missing_ok=True)
        raise ArchiveError(
            "Cannot create precompiled archive.",
            hint=str(exc),
            context={"operation": "create_archive", "path": str(destination)},
        ) from exc
    return destination.stat().st_size


def extract_archive(source: str | Path | bytes, target_dir: str | Path) -> Path:
    """Unpack a ``.tar.gz`` given as a path or raw bytes into *target_dir*."""
    target = Path(target_dir)
    label = "<bytes>" if isinstance(source, bytes | bytearray) else str(source)
    try:
        target.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ArchiveError(
            "Cannot create extraction directory.",
            hint=str(exc),
            context={"operation": "extract_archive", "path": str(target)},
        ) from exc

    try:
        if isinstance(source, bytes | bytearray):
            tar = tarfile.open(fileobj=io.BytesIO(source), mode="r:gz")
        else:
            tar = tarfile.open(source, mode="r:gz")
        with tar:
            tar.extractall(target, filter="tar")
    except (OSError, EOFError, tarfile.TarError) as exc:
        raise ArchiveError(
            "Cannot decompress precompiled archive.",
            hint=str(exc),
            context={"operation": "extract_archive", "source": label, "path": str(target)},
        ) from exc
    return target


def _expand_pattern(base: Path, pattern: str) -> list[Path]:
    if any(char in _GLOB_CHARS for char in pattern):
        return sorted(base.glob(pattern))
    candidate = base / pattern
    if os.path.lexists(candidate):
        return [candidate]
    return []


def _member_name(base: Path, path: Path) -> str:
    try:
        relative = path.relative_to(base)
    except ValueError as exc:
        raise ArchiveError(
            "Include pattern escapes the archive base directory.",
            context={"operation": "collect_entries", "path": str(path), "base": str(base)},
        ) from exc
    name = relative.as_posix()
    if ".." in relative.parts:
        raise ArchiveError(
            "Include pattern escapes the archive base directory.",
            context={"operation": "collect_entries", "path": str(path), "base": str(base)},
        )
    return name or "."
