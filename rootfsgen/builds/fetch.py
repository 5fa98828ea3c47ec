"""Source download and extraction.

This module handles:
- Streaming downloads with SHA-256 verification
- Populating the shared download store (verified files only)
- Extracting source archives into a package's source directory
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

import httpx

from rootfsgen.builds.storage import SharedStorage
from rootfsgen.types import PackageDescriptor, SourceKind

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


class DownloadError(Exception):
    """Raised when a source download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        """Initialize DownloadError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class HashMismatchError(Exception):
    """Raised when downloaded content does not match its declared checksum."""

    def __init__(self, url: str, expected: str, actual: str, code: str = "hash_mismatch") -> None:
        super().__init__(f"Checksum mismatch for {url}: expected {expected}, got {actual}")
        self.url = url
        self.expected = expected
        self.actual = actual
        self.code = code


class ExtractionError(Exception):
    """Raised when archive extraction fails."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class DownloadResult:
    """Result of a download."""

    path: Path
    checksum: str
    size_bytes: int


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def archive_filename(url: str, fallback: str) -> str:
    """Derive a file name from a download URL."""
    name = urlsplit(url).path.rsplit("/", 1)[-1]
    return name or fallback


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    On a checksum mismatch the partial file is removed.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If download fails.
        HashMismatchError: If checksum verification fails.
    """
    logger.info("Downloading %s", url)

    try:
        with client.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(f"Network error downloading {url}: {e}", code="network_error") from e

    computed = sha256.hexdigest()
    if expected_checksum and computed != expected_checksum.lower():
        dest_path.unlink(missing_ok=True)
        raise HashMismatchError(url, expected_checksum.lower(), computed)

    logger.info("Downloaded %s (%d bytes, checksum: %s...)", url, total_bytes, computed[:16])
    return DownloadResult(path=dest_path, checksum=computed, size_bytes=total_bytes)


def fetch_package_source(
    client: httpx.Client,
    storage: SharedStorage,
    package: PackageDescriptor,
    offline: bool = False,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """Ensure the source archive for a URL-sourced package is in the store.

    Args:
        client: HTTPX client instance.
        storage: Shared storage.
        package: Package with a URL source and its archive sha256.
        offline: Refuse to download; only use the store.
        timeout: Download timeout in seconds.

    Returns:
        Path of the verified archive in the download store.

    Raises:
        DownloadError: If the download fails or offline mode has no copy.
        HashMismatchError: If the content does not match the checksum.
        CacheIOError: If the store cannot be written.
    """
    if package.source.kind != SourceKind.URL:
        raise DownloadError(f"{package.name} has no URL source", code="no_url")

    url = package.source.location
    filename = archive_filename(url, f"{package.name}-{package.version}.tar.gz")
    checksum = package.source_checksum or package.checksum

    if storage.download_exists(package.name, package.version, checksum, filename):
        return storage.download_path(package.name, package.version, checksum, filename)
    if offline:
        raise DownloadError(
            f"Offline mode: source for {package.spec} is not in the download store",
            code="offline",
        )

    with storage.key_lock(f"download-{package.name}-{package.version}-{checksum[:16]}"):
        # Another writer may have finished while we waited
        if storage.download_exists(package.name, package.version, checksum, filename):
            return storage.download_path(package.name, package.version, checksum, filename)

        staged = storage.staging_file(filename)
        try:
            download_file(client, url, staged, expected_checksum=checksum, timeout=timeout)
            return storage.store_download(
                package.name, package.version, checksum, staged, filename
            )
        finally:
            staged.unlink(missing_ok=True)


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a source archive into dest_dir.

    A single top-level directory in the archive is stripped, so dest_dir
    holds the source tree directly. dest_dir is replaced if it exists.

    Args:
        archive_path: Path to the archive (.tar, .tar.gz, .tar.xz, .tar.bz2).
        dest_dir: Directory to extract into.

    Returns:
        dest_dir.

    Raises:
        ExtractionError: If extraction fails.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(dir=dest_dir.parent, prefix=".extract-") as tmp:
        tmp_dir = Path(tmp)
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                tar.extractall(tmp_dir, filter="data")
        except tarfile.TarError as e:
            raise ExtractionError(f"Failed to extract {archive_path}: {e}", code="tar_error") from e
        except OSError as e:
            raise ExtractionError(f"OS error extracting {archive_path}: {e}", code="os_error") from e

        entries = list(tmp_dir.iterdir())
        root = entries[0] if len(entries) == 1 and entries[0].is_dir() else tmp_dir

        if dest_dir.exists():
            shutil.rmtree(dest_dir)
        if root is tmp_dir:
            shutil.copytree(tmp_dir, dest_dir, symlinks=True)
        else:
            root.rename(dest_dir)

    return dest_dir


__all__ = [
    "DOWNLOAD_TIMEOUT",
    "DownloadError",
    "DownloadResult",
    "ExtractionError",
    "HashMismatchError",
    "archive_filename",
    "compute_file_sha256",
    "download_file",
    "extract_archive",
    "fetch_package_source",
]
