"""Checksum ledger for precompiled artifacts.

The ledger maps an archive basename to ``"{algorithm}:{hexdigest}"``. It is
meant to be committed alongside a release, so serialization is sorted and
byte-for-byte deterministic.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from prebake.errors import IntegrityError, LedgerError


class ChecksumAlgorithm(StrEnum):
    SHA256 = "sha256"


DEFAULT_ALGORITHM = ChecksumAlgorithm.SHA256
SUPPORTED_ALGORITHMS = frozenset(ChecksumAlgorithm)


class VerifyStatus(StrEnum):
    OK = "ok"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    ALGORITHM_UNSUPPORTED = "algorithm_unsupported"
    ENTRY_MISSING = "entry_missing"


@dataclass(frozen=True, slots=True)
class Artifact:
    basename: str
    checksum: str
    checksum_algo: ChecksumAlgorithm = DEFAULT_ALGORITHM

    @property
    def ledger_value(self) -> str:
        return f"{self.checksum_algo}:{self.checksum}"


def digest_bytes(payload: bytes, algorithm: ChecksumAlgorithm = DEFAULT_ALGORITHM) -> str:
    return hashlib.new(str(algorithm), payload).hexdigest()


def compute_checksum(basename: str, payload: bytes) -> Artifact:
    """Hash *payload* and return the artifact recorded under *basename*."""
    return Artifact(basename=basename, checksum=digest_bytes(payload))


def checksum_file(path: str | Path) -> Artifact:
    file_path = Path(path)
    return compute_checksum(file_path.name, file_path.read_bytes())


@dataclass(slots=True)
class ChecksumLedger:
    entries: dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, basename: object) -> bool:
        return basename in self.entries

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.entries))

    def record(self, basename: str, algorithm: ChecksumAlgorithm | str, digest: str) -> None:
        self.entries[basename] = f"{algorithm}:{digest}"

    def record_artifact(self, artifact: Artifact) -> None:
        self.record(artifact.basename, artifact.checksum_algo, artifact.checksum)

    def record_all(self, artifacts: Iterable[Artifact]) -> None:
        for artifact in artifacts:
            self.record_artifact(artifact)

    def merge(self, other: ChecksumLedger) -> ChecksumLedger:
        """Return a new ledger with *other*'s entries taking precedence."""
        return ChecksumLedger(entries={**self.entries, **other.entries})

    def lookup(self, basename: str) -> tuple[str, str] | None:
        value = self.entries.get(basename)
        if value is None:
            return None
        algorithm, _, digest = value.partition(":")
        return algorithm, digest

    def verify(self, basename: str, payload: bytes) -> VerifyStatus:
        entry = self.lookup(basename)
        if entry is None:
            return VerifyStatus.ENTRY_MISSING
        algorithm, expected = entry
        if algorithm not in SUPPORTED_ALGORITHMS:
            return VerifyStatus.ALGORITHM_UNSUPPORTED
        actual = digest_bytes(payload, ChecksumAlgorithm(algorithm))
        if actual != expected:
            return VerifyStatus.CHECKSUM_MISMATCH
        return VerifyStatus.OK

    def verify_file(self, path: str | Path) -> VerifyStatus:
        file_path = Path(path)
        return self.verify(file_path.name, file_path.read_bytes())

    def ensure_verified(self, path: str | Path) -> None:
        file_path = Path(path)
        status = self.verify_file(file_path)
        if status is not VerifyStatus.OK:
            raise IntegrityError(
                "Precompiled archive failed its integrity check.",
                hint="Regenerate the checksum ledger or clear the cached archive.",
                context={"path": str(file_path), "status": status.value},
            )

    def serialize(self) -> str:
        ordered = {basename: self.entries[basename] for basename in sorted(self.entries)}
        return json.dumps(ordered, indent=2) + "\n"

    def persist(self, path: str | Path) -> Path:
        ledger_path = Path(path)
        ledger_path.parent.mkdir(parents=True, exist_ok=True)
        ledger_path.write_text(self.serialize(), encoding="utf-8")
        return ledger_path

    @classmethod
    def parse(cls, raw: str) -> ChecksumLedger:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LedgerError("Invalid checksum ledger JSON.", hint=str(exc)) from exc
        if not isinstance(payload, dict):
            raise LedgerError("Invalid checksum ledger payload type.")
        entries: dict[str, str] = {}
        for basename, value in payload.items():
            if not isinstance(value, str) or ":" not in value:
                raise LedgerError(
                    "Invalid checksum ledger entry.",
                    hint='Entries must look like "sha256:<hexdigest>".',
                    context={"basename": str(basename)},
                )
            entries[basename] = value
        return cls(entries=entries)

    @classmethod
    def load(cls, path: str | Path) -> ChecksumLedger:
        """Read the ledger at *path*; a missing file yields an empty ledger."""
        ledger_path = Path(path)
        try:
            raw = ledger_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls()
        try:
            return cls.parse(raw)
        except LedgerError as exc:
            exc.context = {**exc.context, "path": str(ledger_path)}
            raise

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> ChecksumLedger:
        return cls(entries=dict(mapping))


def write_checksum_sidecar(artifact: Artifact, directory: str | Path) -> Path:
    """Write ``{basename}.{algo}`` holding ``"{digest}  {basename}"``."""
    sidecar = Path(directory) / f"{artifact.basename}.{artifact.checksum_algo}"
    sidecar.write_text(f"{artifact.checksum}  {artifact.basename}\n", encoding="utf-8")
    return sidecar


def parse_checksum_sidecar(raw: str) -> Artifact | None:
    parts = raw.split()
    if len(parts) != 2:
        return None
    digest, basename = parts
    if len(digest) != hashlib.sha256().digest_size * 2:
        return None
    try:
        int(digest, 16)
    except ValueError:
        return None
    return Artifact(basename=basename, checksum=digest.lower())


__all__ = [
    "Artifact",
    "ChecksumAlgorithm",
    "ChecksumLedger",
    "DEFAULT_ALGORITHM",
    "VerifyStatus",
    "checksum_file",
    "compute_checksum",
    "digest_bytes",
    "parse_checksum_sidecar",
    "write_checksum_sidecar",
]
