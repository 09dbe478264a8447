"""Public package entrypoint for prebake."""

from .archive import create_archive, extract_archive
from .checksum import Artifact, ChecksumAlgorithm, ChecksumLedger, VerifyStatus, compute_checksum
from .config import MakeOptions, ProjectConfig, load_config
from .download import DownloadResult, download_batch
from .errors import (
    ArchiveError,
    BuildError,
    ConfigError,
    DownloadError,
    IntegrityError,
    LedgerError,
    PolicyError,
    PrebakeError,
    TargetResolutionError,
    UnavailableTargetError,
    ValidationError,
)
from .observability import StructuredLogger
from .policy import Policy
from .precompile import (
    PrecompileReport,
    RestoreFailure,
    RestoreResult,
    archive_filename,
    precompile_all,
    restore_from_cache,
    select_nif_version,
)
from .precompiler import MakePrecompiler, Precompiler, PrecompilerHooks, Toolchain
from .project import Project
from .targets import current_target

__all__ = [
    "ArchiveError",
    "Artifact",
    "BuildError",
    "ChecksumAlgorithm",
    "ChecksumLedger",
    "ConfigError",
    "DownloadError",
    "DownloadResult",
    "IntegrityError",
    "LedgerError",
    "MakeOptions",
    "MakePrecompiler",
    "Policy",
    "PolicyError",
    "PrebakeError",
    "PrecompileReport",
    "Precompiler",
    "PrecompilerHooks",
    "Project",
    "ProjectConfig",
    "RestoreFailure",
    "RestoreResult",
    "StructuredLogger",
    "TargetResolutionError",
    "Toolchain",
    "UnavailableTargetError",
    "ValidationError",
    "VerifyStatus",
    "archive_filename",
    "compute_checksum",
    "create_archive",
    "current_target",
    "download_batch",
    "extract_archive",
    "load_config",
    "precompile_all",
    "restore_from_cache",
    "select_nif_version",
]
