"""Package registry client.

This module handles:
- Fetching package indexes, package definitions and board definitions over HTTP
- Caching every successful response on disk
- Offline mode (serve only from the cache) and falling back to the cache
  when the registry is unreachable
- Fetching auxiliary build files (scripts, patches) for registry packages

Registry layout, relative to the base URL:
    packages/<name>/index.toml          versions = ["1.0.0", ...]
    packages/<name>/<version>.toml      package definition
    packages/<name>/<version>/<file>    build scripts and patches
    boards/<name>/board.toml            board definition
"""

from __future__ import annotations

import hashlib
import logging
import tomllib
from pathlib import Path

import httpx

from rootfsgen.project.io import (
    ManifestError,
    parse_board_definition,
    parse_package_definition,
    write_text_atomic,
)
from rootfsgen.resolver.versions import sort_versions
from rootfsgen.types import BoardDescriptor, PackageDescriptor, PackageOrigin

logger = logging.getLogger(__name__)

# Timeout for metadata requests (seconds)
REGISTRY_TIMEOUT = 30


class RegistryError(Exception):
    """Raised when the registry cannot be queried."""

    def __init__(self, message: str, code: str = "registry_error") -> None:
        """Initialize RegistryError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class PackageNotFoundError(RegistryError):
    """Raised when a package (or package version) does not exist."""

    def __init__(self, name: str, version: str | None = None) -> None:
        what = f"{name}@{version}" if version else name
        super().__init__(f"Package not found: {what}", code="package_not_found")
        self.name = name
        self.version = version


class BoardNotFoundError(RegistryError):
    """Raised when a board does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Board not found: {name}", code="board_not_found")
        self.name = name


class HttpRegistry:
    """Read-only client for an HTTP package registry.

    Args:
        base_url: Registry base URL.
        cache_dir: Directory holding cached responses.
        offline: Serve only from the cache.
        timeout: Request timeout in seconds.
        client: Optional pre-configured httpx client.
    """

    def __init__(
        self,
        base_url: str,
        cache_dir: Path,
        offline: bool = False,
        timeout: float = REGISTRY_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.cache_dir = cache_dir
        self.offline = offline
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._versions: dict[str, list[str]] = {}
        self._packages: dict[tuple[str, str], PackageDescriptor] = {}

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, follow_redirects=True)
        return self._client

    def close(self) -> None:
        """Close the underlying HTTP client if this registry created it."""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def __enter__(self) -> HttpRegistry:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _cache_path(self, rel_path: str) -> Path:
        return self.cache_dir / rel_path

    def _fetch_text(self, rel_path: str) -> str | None:
        """Fetch a registry file, returning None on 404.

        Raises:
            RegistryError: If the file is unavailable online and not cached.
        """
        cache_path = self._cache_path(rel_path)

        if self.offline:
            if cache_path.is_file():
                return cache_path.read_text(encoding="utf-8")
            raise RegistryError(
                f"Offline mode: {rel_path} is not in the registry cache",
                code="offline",
            )

        url = f"{self.base_url}/{rel_path}"
        logger.debug("Fetching %s", url)
        try:
            response = self.client.get(url, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RegistryError(
                f"HTTP error fetching {url}: {e.response.status_code}",
                code="http_error",
            ) from e
        except httpx.RequestError as e:
            if cache_path.is_file():
                logger.warning("Registry unreachable (%s), using cached %s", e, rel_path)
                return cache_path.read_text(encoding="utf-8")
            raise RegistryError(
                f"Network error fetching {url}: {e}",
                code="network_error",
            ) from e

        write_text_atomic(cache_path, response.text)
        return response.text

    def available_versions(self, name: str) -> list[str]:
        """List published versions of a package, sorted ascending.

        Raises:
            PackageNotFoundError: If the package does not exist.
            RegistryError: If the registry cannot be queried.
        """
        if name in self._versions:
            return self._versions[name]

        text = self._fetch_text(f"packages/{name}/index.toml")
        if text is None:
            raise PackageNotFoundError(name)
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise RegistryError(f"Invalid index for {name}: {e}", code="invalid_index") from e

        versions = sort_versions(str(v) for v in data.get("versions", []))
        if not versions:
            raise PackageNotFoundError(name)
        self._versions[name] = versions
        return versions

    def get_package(self, name: str, version: str) -> PackageDescriptor:
        """Fetch the definition of one package version.

        Raises:
            PackageNotFoundError: If the version does not exist.
            RegistryError: If the definition is invalid or unavailable.
        """
        key = (name, version)
        if key in self._packages:
            return self._packages[key]

        text = self._fetch_text(f"packages/{name}/{version}.toml")
        if text is None:
            raise PackageNotFoundError(name, version)
        try:
            definition = parse_package_definition(tomllib.loads(text))
        except (tomllib.TOMLDecodeError, ManifestError) as e:
            raise RegistryError(
                f"Invalid definition for {name}@{version}: {e}",
                code="invalid_package",
            ) from e

        meta = definition.package
        if meta.name != name or meta.version != version:
            raise RegistryError(
                f"Registry returned {meta.name}@{meta.version} for {name}@{version}",
                code="invalid_package",
            )

        # The source archive digest identifies the content; without a source,
        # the definition itself is the content
        checksum = definition.source.sha256 or hashlib.sha256(text.encode("utf-8")).hexdigest()

        files_dir = self._cache_path(f"packages/{name}/{version}")
        aux_files = [*definition.build.patches]
        if definition.build.script:
            aux_files.append(definition.build.script)
        for rel in aux_files:
            # Cached alongside the definition; build steps read them from files_dir
            if self._fetch_text(f"packages/{name}/{version}/{rel}") is None:
                raise RegistryError(
                    f"Registry file missing for {name}@{version}: {rel}",
                    code="missing_file",
                )

        # Only packages with scripts or patches have a files directory to mount
        descriptor = definition.to_descriptor(
            checksum=checksum.lower(),
            origin=PackageOrigin.REGISTRY,
            package_dir=files_dir if aux_files else None,
        )
        self._packages[key] = descriptor
        return descriptor

    def get_board(self, name: str) -> BoardDescriptor:
        """Fetch a board definition.

        Raises:
            BoardNotFoundError: If the board does not exist.
            RegistryError: If the definition is invalid or unavailable.
        """
        text = self._fetch_text(f"boards/{name}/board.toml")
        if text is None:
            raise BoardNotFoundError(name)
        try:
            return parse_board_definition(tomllib.loads(text)).to_descriptor()
        except (tomllib.TOMLDecodeError, ManifestError) as e:
            raise RegistryError(f"Invalid board {name}: {e}", code="invalid_board") from e


__all__ = [
    "BoardNotFoundError",
    "HttpRegistry",
    "PackageNotFoundError",
    "REGISTRY_TIMEOUT",
    "RegistryError",
]
