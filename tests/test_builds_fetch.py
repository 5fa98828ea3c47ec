"""Tests for source downloads and extraction."""

import hashlib
import io
import tarfile

import httpx
import pytest
import respx
from conftest import make_package

from rootfsgen.builds.fetch import (
    DownloadError,
    DownloadResult,
    ExtractionError,
    HashMismatchError,
    archive_filename,
    compute_file_sha256,
    download_file,
    extract_archive,
    fetch_package_source,
)
from rootfsgen.types import SourceKind, SourceLocator

URL = "https://example.com/zlib-1.3.1.tar.gz"


def _tarball(files: dict[str, bytes], top: str = "zlib-1.3.1") -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(f"{top}/{name}" if top else name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class TestComputeFileSha256:
    """Test compute_file_sha256 function."""

    def test_compute_checksum(self, tmp_path) -> None:
        """Should compute the SHA-256 of a file."""
        path = tmp_path / "f"
        path.write_bytes(b"Hello, World!")
        assert compute_file_sha256(path) == hashlib.sha256(b"Hello, World!").hexdigest()


class TestArchiveFilename:
    """Test archive_filename function."""

    def test_from_url(self) -> None:
        """The last path component is used."""
        assert archive_filename("https://x.org/a/zlib-1.3.tar.xz?dl=1", "f") == "zlib-1.3.tar.xz"

    def test_fallback(self) -> None:
        """URLs without a file name use the fallback."""
        assert archive_filename("https://x.org/", "zlib.tar.gz") == "zlib.tar.gz"


class TestDownloadFile:
    """Test download_file function."""

    @respx.mock
    def test_successful_download(self, tmp_path) -> None:
        """Should download and checksum the content."""
        content = b"archive bytes"
        respx.get(URL).mock(return_value=httpx.Response(200, content=content))

        with httpx.Client() as client:
            result = download_file(client, URL, tmp_path / "a.tgz")

        assert isinstance(result, DownloadResult)
        assert result.checksum == hashlib.sha256(content).hexdigest()
        assert result.size_bytes == len(content)

    @respx.mock
    def test_hash_mismatch_removes_file(self, tmp_path) -> None:
        """A checksum mismatch raises and leaves no file behind."""
        respx.get(URL).mock(return_value=httpx.Response(200, content=b"tampered"))
        dest = tmp_path / "a.tgz"

        with httpx.Client() as client, pytest.raises(HashMismatchError) as exc_info:
            download_file(client, URL, dest, expected_checksum="0" * 64)

        assert exc_info.value.code == "hash_mismatch"
        assert not dest.exists()

    @respx.mock
    def test_http_error(self, tmp_path) -> None:
        """Should raise DownloadError on HTTP error."""
        respx.get(URL).mock(return_value=httpx.Response(404))

        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            download_file(client, URL, tmp_path / "a.tgz")

        assert exc_info.value.code == "http_error"

    @respx.mock
    def test_timeout_error(self, tmp_path) -> None:
        """Should raise DownloadError on timeout."""
        respx.get(URL).mock(side_effect=httpx.TimeoutException("Connection timed out"))

        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            download_file(client, URL, tmp_path / "a.tgz")

        assert exc_info.value.code == "timeout"


class TestFetchPackageSource:
    """Test fetch_package_source function."""

    @pytest.fixture
    def archive(self):
        """A gzipped source tarball and its digest."""
        data = _tarball({"configure": b"#!/bin/sh\n"})
        return data, hashlib.sha256(data).hexdigest()

    def _package(self, checksum: str):
        return make_package(
            "zlib",
            "1.3.1",
            source=SourceLocator(SourceKind.URL, URL),
            checksum=checksum,
            source_checksum=checksum,
        )

    @respx.mock
    def test_download_once(self, storage, archive) -> None:
        """A second fetch is served from the download store."""
        data, digest = archive
        route = respx.get(URL).mock(return_value=httpx.Response(200, content=data))
        package = self._package(digest)

        with httpx.Client() as client:
            first = fetch_package_source(client, storage, package)
            second = fetch_package_source(client, storage, package)

        assert first == second
        assert first.read_bytes() == data
        assert first.name == "zlib-1.3.1.tar.gz"
        assert route.call_count == 1

    @respx.mock
    def test_mismatch_not_stored(self, storage, archive) -> None:
        """Content that does not match is never stored."""
        data, _ = archive
        respx.get(URL).mock(return_value=httpx.Response(200, content=data))
        package = self._package("f" * 64)

        with httpx.Client() as client, pytest.raises(HashMismatchError):
            fetch_package_source(client, storage, package)

        assert not storage.download_exists("zlib", "1.3.1", "f" * 64, "zlib-1.3.1.tar.gz")
        assert [p for p in storage.downloads_dir.rglob("*") if p.is_file()] == []

    def test_offline_without_copy(self, storage) -> None:
        """Offline mode fails when the archive is not in the store."""
        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            fetch_package_source(client, storage, self._package("a" * 64), offline=True)

        assert exc_info.value.code == "offline"

    def test_requires_url_source(self, storage) -> None:
        """Packages without a URL source cannot be fetched."""
        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            fetch_package_source(client, storage, make_package("zlib"))

        assert exc_info.value.code == "no_url"


class TestExtractArchive:
    """Test extract_archive function."""

    def test_strips_single_top_directory(self, tmp_path) -> None:
        """A single top-level directory is stripped."""
        archive = tmp_path / "src.tar.gz"
        archive.write_bytes(_tarball({"configure": b"x", "src/main.c": b"int main;"}))

        dest = extract_archive(archive, tmp_path / "out")

        assert (dest / "configure").read_bytes() == b"x"
        assert (dest / "src" / "main.c").exists()

    def test_flat_archive(self, tmp_path) -> None:
        """Archives without a top directory extract as-is."""
        archive = tmp_path / "src.tar.gz"
        archive.write_bytes(_tarball({"a.txt": b"a", "b.txt": b"b"}, top=""))

        dest = extract_archive(archive, tmp_path / "out")

        assert sorted(p.name for p in dest.iterdir()) == ["a.txt", "b.txt"]

    def test_replaces_destination(self, tmp_path) -> None:
        """Existing content in the destination is replaced."""
        archive = tmp_path / "src.tar.gz"
        archive.write_bytes(_tarball({"new.txt": b"n"}))
        dest = tmp_path / "out"
        dest.mkdir()
        (dest / "old.txt").write_text("o")

        extract_archive(archive, dest)

        assert not (dest / "old.txt").exists()
        assert (dest / "new.txt").exists()

    def test_corrupt_archive(self, tmp_path) -> None:
        """A corrupt archive raises ExtractionError."""
        archive = tmp_path / "bad.tar.gz"
        archive.write_bytes(b"not a tarball")

        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, tmp_path / "out")

        assert exc_info.value.code == "tar_error"
