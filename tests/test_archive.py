import os
import sys
import tarfile
from pathlib import Path

import pytest

from prebake.archive import collect_entries, create_archive, extract_archive
from prebake.errors import ArchiveError

needs_symlinks = pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges")


def _tree(root: Path) -> None:
    (root / "lib" / "nested").mkdir(parents=True)
    (root / "lib" / "libmyapp.so").write_bytes(b"\x7fELF-binary")
    (root / "lib" / "nested" / "data.txt").write_text("nested\n", encoding="utf-8")
    (root / "include").mkdir()
    (root / "include" / "myapp.h").write_text("#pragma once\n", encoding="utf-8")
    (root / "README").write_text("readme\n", encoding="utf-8")


def _snapshot(root: Path) -> dict[str, object]:
    result: dict[str, object] = {}
    for path in sorted(root.rglob("*")):
        name = path.relative_to(root).as_posix()
        if path.is_symlink():
            result[name] = ("link", os.readlink(path))
        elif path.is_dir():
            result[name] = "dir"
        else:
            result[name] = path.read_bytes()
    return result


def test_archive_roundtrip_reproduces_whole_tree(tmp_path: Path) -> None:
    source = tmp_path / "src"
    _tree(source)
    archive = tmp_path / "out" / "myapp.tar.gz"

    written = create_archive(archive, source)
    restored = extract_archive(archive, tmp_path / "restored")

    assert written == archive.stat().st_size > 0
    assert _snapshot(restored) == _snapshot(source)


def test_archive_entries_are_relative_to_base(tmp_path: Path) -> None:
    source = tmp_path / "src"
    _tree(source)
    archive = tmp_path / "myapp.tar.gz"

    create_archive(archive, source)

    with tarfile.open(archive, "r:gz") as tar:
        names = tar.getnames()
    assert "lib/libmyapp.so" in names
    assert all(not name.startswith(("/", "..")) for name in names)


def test_patterns_select_subset(tmp_path: Path) -> None:
    source = tmp_path / "src"
    _tree(source)

    names = collect_entries(source, ["lib/**/*.txt", "include"])

    assert names == ["lib/nested/data.txt", "include", "include/myapp.h"]


def test_single_level_wildcard(tmp_path: Path) -> None:
    source = tmp_path / "src"
    _tree(source)

    assert collect_entries(source, ["lib/*.so"]) == ["lib/libmyapp.so"]


def test_overlapping_patterns_do_not_duplicate(tmp_path: Path) -> None:
    source = tmp_path / "src"
    _tree(source)

    names = collect_entries(source, [".", "lib", "lib/**"])

    assert len(names) == len(set(names))
    assert "lib/nested/data.txt" in names


def test_extract_from_bytes(tmp_path: Path) -> None:
    source = tmp_path / "src"
    _tree(source)
    archive = tmp_path / "myapp.tar.gz"
    create_archive(archive, source, ["README"])

    restored = extract_archive(archive.read_bytes(), tmp_path / "from-bytes")

    assert (restored / "README").read_text(encoding="utf-8") == "readme\n"
    assert not (restored / "lib").exists()


@needs_symlinks
def test_symlinks_are_archived_as_links(tmp_path: Path) -> None:
    source = tmp_path / "src"
    _tree(source)
    (source / "lib" / "libmyapp.so.1").symlink_to("libmyapp.so")
    (source / "linked-lib").symlink_to("lib", target_is_directory=True)
    archive = tmp_path / "myapp.tar.gz"

    create_archive(archive, source)
    restored = extract_archive(archive, tmp_path / "restored")

    assert (restored / "lib" / "libmyapp.so.1").is_symlink()
    assert os.readlink(restored / "lib" / "libmyapp.so.1") == "libmyapp.so"
    assert (restored / "linked-lib").is_symlink()
    assert _snapshot(restored) == _snapshot(source)


@needs_symlinks
def test_symlink_cycle_terminates(tmp_path: Path) -> None:
    source = tmp_path / "src"
    (source / "a").mkdir(parents=True)
    (source / "a" / "loop").symlink_to("..", target_is_directory=True)
    (source / "a" / "file").write_text("x", encoding="utf-8")

    names = collect_entries(source, ["**"])

    assert sorted(names) == ["a", "a/file", "a/loop"]


def test_extract_rejects_malformed_stream(tmp_path: Path) -> None:
    with pytest.raises(ArchiveError):
        extract_archive(b"definitely not a tarball", tmp_path / "out")


def test_extract_rejects_missing_archive(tmp_path: Path) -> None:
    with pytest.raises(ArchiveError):
        extract_archive(tmp_path / "missing.tar.gz", tmp_path / "out")


def test_pattern_escaping_base_is_rejected(tmp_path: Path) -> None:
    source = tmp_path / "src"
    _tree(source)
    (tmp_path / "outside.txt").write_text("x", encoding="utf-8")

    with pytest.raises(ArchiveError):
        collect_entries(source, ["../outside.txt"])


def test_missing_base_directory_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ArchiveError):
        create_archive(tmp_path / "x.tar.gz", tmp_path / "missing")


def test_pattern_roundtrip_reproduces_selected_subset(tmp_path: Path) -> None:
    source = tmp_path / "src"
    _tree(source)
    archive = tmp_path / "subset.tar.gz"

    create_archive(archive, source, ["lib/**", "include/*.h"])
    restored = extract_archive(archive, tmp_path / "restored")

    expected = {
        name: value
        for name, value in _snapshot(source).items()
        if name.split("/")[0] in ("lib", "include")
    }
    assert _snapshot(restored) == expected
