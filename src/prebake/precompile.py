"""Precompile, checksum and restore lifecycle for native artifacts.

A precompile run builds every target the host can produce, one at a time,
packages each output tree and records its checksum. At build time on a
consuming machine, the archive for the current host is fetched (or reused from
the cache), verified against the ledger and extracted into the live output
directory.
"""

from __future__ import annotations

import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Literal

from prebake.archive import create_archive, extract_archive
from prebake.checksum import (
    Artifact,
    ChecksumLedger,
    VerifyStatus,
    checksum_file,
    write_checksum_sidecar,
)
from prebake.config import URL_PLACEHOLDER, ProjectConfig
from prebake.download import Downloader, download, download_batch, write_atomic
from prebake.errors import (
    ArchiveError,
    BuildError,
    ConfigError,
    LedgerError,
    PolicyError,
    TargetResolutionError,
    UnavailableTargetError,
    ValidationError,
)
from prebake.metadata import write_metadata
from prebake.observability import Level, StructuredLogger
from prebake.policy import ensure_network_allowed
from prebake.precompiler import Precompiler, recovery_action
from prebake.targets import all_supported_targets

ChecksumMode = Literal["all", "only_local"]
TargetUrl = tuple[tuple[str, str], str]


class RestoreFailure(StrEnum):
    UNAVAILABLE_TARGET = "unavailable_target"
    FILE_EXISTS = "file_exists"
    FILE_INTEGRITY = "file_integrity"
    RESTORE_NIF = "restore_nif"


@dataclass(frozen=True, slots=True)
class LocatedArtifact:
    target: str
    nif_version: str
    url: str


@dataclass(frozen=True, slots=True)
class RestoreResult:
    restored: bool
    target: str | None = None
    archive_path: Path | None = None
    already_present: bool = False
    failure: RestoreFailure | None = None
    reason: str | None = None


@dataclass(slots=True)
class PrecompileReport:
    artifacts: list[tuple[str, Artifact]] = field(default_factory=list)
    ledger_path: Path | None = None
    restored_target: str | None = None


def archive_filename(app: str, version: str, nif_version: str, target: str) -> str:
    return f"{app}-nif-{nif_version}-{target}-{version}.tar.gz"


def select_nif_version(current: str, versions: Sequence[str]) -> str:
    """Pick the published version to use for the running *current* version.

    An exact match wins. Otherwise the highest minor version not above the
    running one within the same major is chosen; with no candidate the
    running version is returned unchanged.
    """
    if current in versions:
        return current
    major, minor = _version_tuple(current)
    candidates: list[tuple[int, str]] = []
    for version in versions:
        try:
            candidate_major, candidate_minor = _version_tuple(version)
        except ValidationError:
            continue
        if candidate_major == major and candidate_minor <= minor:
            candidates.append((minor - candidate_minor, version))
    if not candidates:
        return current
    return min(candidates)[1]


def resolve_nif_version(config: ProjectConfig, target: str) -> str:
    versions = config.versions_for(target)
    if config.nif_version in versions:
        return config.nif_version
    if config.fallback_version is not None:
        return config.fallback_version(target, versions)
    return select_nif_version(config.nif_version, versions)


def available_target_urls(config: ProjectConfig, precompiler: Precompiler) -> list[TargetUrl]:
    """Every ``((target, nif_version), url)`` pair the project publishes."""
    template = _require_url_template(config)
    urls: list[TargetUrl] = []
    for target in all_supported_targets(precompiler, "fetch"):
        for nif_version in config.versions_for(target):
            filename = archive_filename(config.app, config.version, nif_version, target)
            urls.append(((target, nif_version), template.replace(URL_PLACEHOLDER, filename)))
    return urls


def current_target_url(config: ProjectConfig, precompiler: Precompiler) -> LocatedArtifact:
    target = precompiler.current_target()
    nif_version = resolve_nif_version(config, target)
    available = available_target_urls(config, precompiler)
    for (candidate_target, candidate_version), url in available:
        if candidate_target == target and candidate_version == nif_version:
            return LocatedArtifact(target=target, nif_version=nif_version, url=url)
    known = ", ".join(f"{t}@{v}" for (t, v), _ in available)
    raise UnavailableTargetError(
        f"Cannot find download url for current target `{target}`.",
        target=target,
        hint=f"Available targets are: {known or 'none'}",
        context={"operation": "current_target_url", "nif_version": nif_version},
    )


def precompile_all(
    config: ProjectConfig,
    precompiler: Precompiler,
    args: Sequence[str] = (),
    *,
    logger: StructuredLogger | None = None,
) -> PrecompileReport:
    """Build, archive and checksum every ``compile`` target, in order.

    The first failing target aborts the run before the ledger is written.
    """
    cache = config.resolved_cache_dir()
    report = PrecompileReport()
    for target in all_supported_targets(precompiler, "compile"):
        artifact = _precompile_target(config, precompiler, args, target, cache, logger)
        report.artifacts.append((target, artifact))

    produced = ChecksumLedger()
    produced.record_all(artifact for _, artifact in report.artifacts)
    ledger = ChecksumLedger.load(config.checksum_path).merge(produced)
    report.ledger_path = ledger.persist(config.checksum_path)
    _log(logger, "precompile", None, "ledger", f"Checksums written to {report.ledger_path}")

    if precompiler.hooks.post_precompile is not None:
        precompiler.hooks.post_precompile()

    built = {target for target, _ in report.artifacts}
    report.restored_target = _restore_host_build(config, precompiler, built, cache, logger)
    return report


def restore_from_cache(
    config: ProjectConfig,
    precompiler: Precompiler,
    *,
    downloader: Downloader | None = None,
    logger: StructuredLogger | None = None,
) -> RestoreResult:
    """Install the current host's precompiled archive into the output directory."""
    if config.library_path.exists():
        return RestoreResult(restored=True, already_present=True)

    try:
        located = current_target_url(config, precompiler)
    except UnavailableTargetError as exc:
        return RestoreResult(
            restored=False,
            target=exc.target,
            failure=RestoreFailure.UNAVAILABLE_TARGET,
            reason=str(exc),
        )

    target = located.target
    cache = config.resolved_cache_dir()
    archive = cache / archive_filename(config.app, config.version, located.nif_version, target)
    download_error: str | None = None
    if not archive.is_file():
        download_error = _download_to(archive, located.url, config, downloader)
        if download_error is None:
            _log(logger, "restore", target, "download", f"Artifact cached at {archive}")
        else:
            _log(logger, "restore", target, "download", download_error, level="warning")

    if not archive.is_file():
        reason = "precompiled archive does not exist or cannot be downloaded"
        if download_error:
            reason = f"{reason}: {download_error}"
        return RestoreResult(
            restored=False,
            target=target,
            archive_path=archive,
            failure=RestoreFailure.FILE_EXISTS,
            reason=reason,
        )

    try:
        status = ChecksumLedger.load(config.checksum_path).verify_file(archive)
    except (LedgerError, OSError) as exc:
        return RestoreResult(
            restored=False,
            target=target,
            archive_path=archive,
            failure=RestoreFailure.FILE_INTEGRITY,
            reason=str(exc),
        )
    if status is not VerifyStatus.OK:
        return RestoreResult(
            restored=False,
            target=target,
            archive_path=archive,
            failure=RestoreFailure.FILE_INTEGRITY,
            reason=_integrity_reason(status, archive.name),
        )

    try:
        extract_archive(archive, config.priv_dir)
    except ArchiveError as exc:
        return RestoreResult(
            restored=False,
            target=target,
            archive_path=archive,
            failure=RestoreFailure.RESTORE_NIF,
            reason=str(exc),
        )

    write_metadata(
        config.app,
        {
            "app": config.app,
            "version": config.version,
            "target": target,
            "nif_version": located.nif_version,
            "cached_tar_gz": str(archive),
            "url": located.url,
        },
        cache,
    )
    _log(logger, "restore", target, "extract", f"Restored {archive.name} to {config.priv_dir}")
    return RestoreResult(restored=True, target=target, archive_path=archive)


def checksum_artifacts(
    config: ProjectConfig,
    precompiler: Precompiler,
    *,
    mode: ChecksumMode,
    ignore_unavailable: bool | None = None,
    use_checksum_files: bool = True,
    downloader: Downloader | None = None,
    logger: StructuredLogger | None = None,
) -> list[Artifact]:
    """Download published archives and merge their checksums into the ledger."""
    if mode == "all":
        urls = available_target_urls(config, precompiler)
    elif mode == "only_local":
        try:
            located = current_target_url(config, precompiler)
        except UnavailableTargetError as exc:
            if recovery_action(precompiler, exc.target) == "compile":
                raise
            _log(logger, "checksum", exc.target, "resolve", "Ignoring unavailable target")
            urls = []
        else:
            urls = [((located.target, located.nif_version), located.url)]
    else:
        raise ValidationError(f"Unsupported checksum mode: {mode}")

    if urls:
        ensure_network_allowed(policy=config.policy, operation="checksum")
    skip = config.policy.ignore_unavailable if ignore_unavailable is None else ignore_unavailable
    artifacts = download_batch(
        urls,
        cache_dir=config.resolved_cache_dir(),
        ignore_unavailable=skip,
        max_workers=config.max_workers,
        timeout=config.timeout,
        use_checksum_files=use_checksum_files,
        downloader=downloader,
        logger=logger,
    )
    produced = ChecksumLedger()
    produced.record_all(artifacts)
    ChecksumLedger.load(config.checksum_path).merge(produced).persist(config.checksum_path)
    return artifacts


def _precompile_target(
    config: ProjectConfig,
    precompiler: Precompiler,
    args: Sequence[str],
    target: str,
    cache: Path,
    logger: StructuredLogger | None,
) -> Artifact:
    _log(logger, "precompile", target, "building", f"Current compiling target: {target}")
    _reset_dir(config.priv_dir)
    hooks = precompiler.hooks
    toolchain = hooks.toolchain(target) if hooks.toolchain is not None else None
    try:
        precompiler.precompile(args, target, toolchain)
    except BuildError as exc:
        _log(logger, "precompile", target, "building", exc.args[0], level="error")
        raise

    archive = cache / archive_filename(config.app, config.version, config.nif_version, target)
    _log(logger, "precompile", target, "archiving", f"Creating precompiled archive: {archive}")
    create_archive(archive, config.priv_dir, config.include)

    artifact = checksum_file(archive)
    if config.write_sidecars:
        write_checksum_sidecar(artifact, cache)
    _log(
        logger,
        "precompile",
        target,
        "checksummed",
        f"{artifact.basename} {artifact.ledger_value}",
    )

    if hooks.post_precompile_target is not None:
        hooks.post_precompile_target(target)
    _log(logger, "precompile", target, "done", f"Precompiled {target}")
    return artifact


def _restore_host_build(
    config: ProjectConfig,
    precompiler: Precompiler,
    built: set[str],
    cache: Path,
    logger: StructuredLogger | None,
) -> str | None:
    try:
        target = precompiler.current_target()
    except TargetResolutionError as exc:
        _log(logger, "precompile", None, "restore", exc.args[0], level="warning")
        return None
    if target not in built:
        return None
    archive = cache / archive_filename(config.app, config.version, config.nif_version, target)
    ChecksumLedger.load(config.checksum_path).ensure_verified(archive)
    _reset_dir(config.priv_dir)
    extract_archive(archive, config.priv_dir)
    _log(logger, "precompile", target, "restore", f"Restored host build from {archive}")
    return target


def _download_to(
    archive: Path,
    url: str,
    config: ProjectConfig,
    downloader: Downloader | None,
) -> str | None:
    try:
        ensure_network_allowed(policy=config.policy, operation="restore")
    except PolicyError as exc:
        return exc.args[0]
    result = downloader(url) if downloader is not None else download(url, timeout=config.timeout)
    if not result.ok or result.body is None:
        return result.error or f"empty response from {url}"
    try:
        archive.parent.mkdir(parents=True, exist_ok=True)
        write_atomic(archive, result.body)
    except OSError as exc:
        return f"cannot write {archive.name} to the cache: {exc}"
    return None


def _integrity_reason(status: VerifyStatus, basename: str) -> str:
    if status is VerifyStatus.ENTRY_MISSING:
        return (
            f"precompiled {basename} does not exist in the checksum file; "
            "run `prebake checksum --only-local` to generate it"
        )
    if status is VerifyStatus.ALGORITHM_UNSUPPORTED:
        return f"checksum algorithm recorded for {basename} is not supported"
    return f"precompiled {basename} does not match its checksum"


def _reset_dir(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def _require_url_template(config: ProjectConfig) -> str:
    if not config.url_template:
        raise ConfigError(
            "`url` is not specified in [tool.prebake].",
            hint=f"Set a download URL template containing {URL_PLACEHOLDER}.",
        )
    return config.url_template


def _version_tuple(version: str) -> tuple[int, int]:
    parts = version.split(".")
    try:
        return int(parts[0]), int(parts[1])
    except (IndexError, ValueError) as exc:
        raise ValidationError(
            f"Invalid runtime ABI version: {version}",
            hint="Versions look like `major.minor`.",
        ) from exc


def _log(
    logger: StructuredLogger | None,
    operation: str,
    target: str | None,
    phase: str,
    message: str,
    *,
    level: Level = "info",
) -> None:
    if logger is not None:
        logger.log(operation=operation, target=target, phase=phase, message=message, level=level)
