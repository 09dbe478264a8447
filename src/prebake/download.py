"""HTTP(S) artifact downloads with trust-store resolution and bounded fan-out."""

from __future__ import annotations

import http.client
import os
import ssl
import threading
import warnings
from collections.abc import Hashable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import unquote, urlparse
from urllib.request import HTTPSHandler, ProxyHandler, build_opener

from prebake.checksum import Artifact, compute_checksum, parse_checksum_sidecar
from prebake.errors import DownloadError
from prebake.observability import StructuredLogger

CACERTS_ENV = "PREBAKE_CACERTS_PATH"
DEFAULT_MAX_WORKERS = 8

# Well-known CA bundle locations, checked in order.
KNOWN_CA_BUNDLES = (
    "/etc/ssl/certs/ca-certificates.crt",
    "/etc/pki/tls/certs/ca-bundle.crt",
    "/etc/ssl/ca-bundle.pem",
    "/etc/pki/ca-trust/extracted/pem/tls-ca-bundle.pem",
    "/etc/pki/tls/cacert.pem",
    "/etc/ssl/cert.pem",
    "/usr/local/etc/openssl/cert.pem",
)


class TrustStoreWarning(UserWarning):
    """No certificate trust store could be resolved."""


class UnavailableArtifactWarning(UserWarning):
    """An artifact could not be downloaded and was skipped."""


@dataclass(frozen=True, slots=True)
class DownloadResult:
    url: str
    body: bytes | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.body is not None and self.error is None


class Downloader(Protocol):
    def __call__(self, url: str) -> DownloadResult:
        """Fetch *url*; transport failures are reported in the result."""


@dataclass(frozen=True, slots=True)
class TrustStore:
    source: Literal["override", "system", "bundle"]
    cafile: Path | None = None


def resolve_trust_store(cacert_path: str | Path | None = None) -> TrustStore | None:
    """Explicit path, then environment override, OS store, known bundle files."""
    override = cacert_path or os.environ.get(CACERTS_ENV) or os.environ.get("SSL_CERT_FILE")
    if override:
        return TrustStore(source="override", cafile=Path(override))
    if _system_store_available():
        return TrustStore(source="system")
    for candidate in KNOWN_CA_BUNDLES:
        if Path(candidate).is_file():
            return TrustStore(source="bundle", cafile=Path(candidate))
    return None


def ssl_context(trust: TrustStore) -> ssl.SSLContext:
    if trust.cafile is not None:
        context = ssl.create_default_context(cafile=str(trust.cafile))
    else:
        context = ssl.create_default_context()
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    return context


def proxies_from_env() -> dict[str, str]:
    proxies: dict[str, str] = {}
    http_proxy = os.environ.get("HTTP_PROXY") or os.environ.get("http_proxy")
    if http_proxy:
        proxies["http"] = http_proxy
    https_proxy = os.environ.get("HTTPS_PROXY") or os.environ.get("https_proxy")
    if https_proxy:
        proxies["https"] = https_proxy
    return proxies


def download(
    url: str,
    *,
    timeout: float | None = None,
    cacert_path: str | Path | None = None,
) -> DownloadResult:
    scheme = urlparse(url).scheme
    handlers: list[object] = [ProxyHandler(proxies_from_env())]
    if scheme == "https":
        trust = resolve_trust_store(cacert_path)
        if trust is None:
            warnings.warn(
                "No certificate trust store was found. Set PREBAKE_CACERTS_PATH to a "
                "CA bundle, or install the operating system certificate store.",
                TrustStoreWarning,
                stacklevel=2,
            )
            return DownloadResult(url=url, error=f"no certificate trust store to fetch {url}")
        try:
            handlers.append(HTTPSHandler(context=ssl_context(trust)))
        except (OSError, ssl.SSLError) as exc:
            return DownloadResult(url=url, error=f"cannot load trust store for {url}: {exc}")

    opener = build_opener(*handlers)
    try:
        if timeout is None:
            response = opener.open(url)
        else:
            response = opener.open(url, timeout=timeout)
        with response:
            status = getattr(response, "status", None)
            if scheme in ("http", "https") and status != 200:
                return DownloadResult(
                    url=url, error=f"couldn't fetch artifact from {url}: HTTP {status}"
                )
            body = response.read()
    except HTTPError as exc:
        return DownloadResult(
            url=url, error=f"couldn't fetch artifact from {url}: HTTP {exc.code} {exc.reason}"
        )
    except (URLError, OSError, http.client.HTTPException) as exc:
        return DownloadResult(url=url, error=f"couldn't fetch artifact from {url}: {exc}")
    return DownloadResult(url=url, body=body)


def basename_from_url(url: str) -> str:
    return unquote(urlparse(url).path.rsplit("/", 1)[-1])


def write_atomic(path: Path, payload: bytes) -> None:
    """Write *payload* to a temp file beside *path*, then rename it into place."""
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        temp_path.write_bytes(payload)
        os.replace(temp_path, path)
    except OSError:
        if temp_path.is_file():
            temp_path.unlink()
        raise


def download_batch(
    requests: Sequence[tuple[Hashable, str]],
    *,
    cache_dir: str | Path,
    ignore_unavailable: bool = False,
    max_workers: int = DEFAULT_MAX_WORKERS,
    timeout: float | None = None,
    use_checksum_files: bool = False,
    downloader: Downloader | None = None,
    logger: StructuredLogger | None = None,
) -> list[Artifact]:
    """Download every URL into *cache_dir* and checksum it.

    At most *max_workers* downloads are in flight; results arrive in
    completion order. A failure aborts the batch with ``DownloadError`` unless
    *ignore_unavailable* is set, in which case it is skipped with a warning.
    """
    cache = Path(cache_dir)
    cache.mkdir(parents=True, exist_ok=True)
    fetch: Downloader = downloader or _default_downloader(timeout)
    if not requests:
        return []

    artifacts: list[Artifact] = []
    workers = max(1, min(max_workers, len(requests)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="prebake-download") as pool:
        futures: dict[Future[_BatchOutcome], str] = {
            pool.submit(_fetch_one, url, cache, fetch, use_checksum_files): url
            for _key, url in requests
        }
        for future in as_completed(futures):
            url = futures[future]
            try:
                outcome = future.result()
            except DownloadError:
                _cancel_pending(futures)
                raise
            if outcome.artifact is not None:
                _log(
                    logger,
                    message=outcome.describe(),
                    extra={"url": url, "checksum": outcome.artifact.checksum},
                )
                artifacts.append(outcome.artifact)
                continue
            if ignore_unavailable:
                message = f"Skipped unavailable artifact {url}: {outcome.error}"
                warnings.warn(message, UnavailableArtifactWarning, stacklevel=2)
                _log(logger, message=message, level="warning", extra={"url": url})
                continue
            _cancel_pending(futures)
            raise DownloadError(
                "Could not finish the download of precompiled artifacts.",
                hint="Pass ignore_unavailable to skip artifacts that are not published.",
                context={"operation": "download_batch", "url": url, "reason": outcome.error or ""},
            )
    return artifacts


@dataclass(frozen=True, slots=True)
class _BatchOutcome:
    artifact: Artifact | None = None
    path: Path | None = None
    error: str | None = None

    def describe(self) -> str:
        if self.artifact is None:
            return f"Download failed: {self.error}"
        if self.path is None:
            return f"Checksum file for {self.artifact.basename}: {self.artifact.checksum}"
        return f"Artifact cached at {self.path} with checksum {self.artifact.checksum}"


def _fetch_one(url: str, cache: Path, fetch: Downloader, use_checksum_files: bool) -> _BatchOutcome:
    if use_checksum_files:
        sidecar = fetch(f"{url}.sha256")
        if sidecar.ok and sidecar.body is not None:
            parsed = parse_checksum_sidecar(sidecar.body.decode("utf-8", errors="replace"))
            if parsed is not None:
                return _BatchOutcome(artifact=parsed)

    result = fetch(url)
    if not result.ok or result.body is None:
        return _BatchOutcome(error=result.error or "empty response")

    basename = basename_from_url(url)
    path = cache / basename
    try:
        write_atomic(path, result.body)
    except OSError as exc:
        raise DownloadError(
            "Could not write downloaded artifact to disk.",
            hint=str(exc),
            context={"operation": "download_batch", "url": url, "path": str(path)},
        ) from exc
    return _BatchOutcome(artifact=compute_checksum(basename, result.body), path=path)


def _default_downloader(timeout: float | None) -> Downloader:
    def fetch(url: str) -> DownloadResult:
        return download(url, timeout=timeout)

    return fetch


def _cancel_pending(futures: dict[Future[_BatchOutcome], str]) -> None:
    for pending in futures:
        pending.cancel()


def _system_store_available() -> bool:
    context = ssl.create_default_context()
    if context.cert_store_stats().get("x509_ca", 0) > 0:
        return True
    paths = ssl.get_default_verify_paths()
    if paths.cafile and Path(paths.cafile).is_file():
        return True
    return bool(paths.capath and Path(paths.capath).is_dir() and any(Path(paths.capath).iterdir()))


def _log(
    logger: StructuredLogger | None,
    *,
    message: str,
    level: Literal["info", "warning"] = "info",
    extra: dict[str, str] | None = None,
) -> None:
    if logger is None:
        return
    logger.log(
        operation="download_batch",
        target=None,
        phase="download",
        message=message,
        level=level,
        extra=extra,
    )
