"""Manifest, package and board file I/O.

This module provides helpers for reading TOML definitions, validating them
against the schema, and editing the manifest in place. Manifest edits go
through tomlkit so user comments and formatting survive add/remove/update,
and every write is validated first and then moved into place atomically.
"""

import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any

import tomlkit
from pydantic import ValidationError
from tomlkit.exceptions import TOMLKitError
from tomlkit.toml_document import TOMLDocument

from rootfsgen.project.schema import BoardDefinition, ManifestSchema, PackageDefinition


class ManifestError(Exception):
    """Raised when a manifest or definition file is missing or invalid."""

    def __init__(self, message: str, path: Path | None = None, code: str = "manifest_error") -> None:
        super().__init__(message)
        self.path = path
        self.code = code


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "(root)"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def write_text_atomic(path: Path, text: str) -> None:
    """Write text to path via a temp file in the same directory and a rename.

    Args:
        path: Destination path.
        text: Content to write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file and return its contents as a dict.

    Args:
        path: Path to the TOML file.

    Returns:
        Parsed TOML content.

    Raises:
        ManifestError: If the file is missing or not valid TOML.
    """
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ManifestError(f"File not found: {path}", path=path, code="not_found") from e
    except tomllib.TOMLDecodeError as e:
        raise ManifestError(f"Invalid TOML in {path}: {e}", path=path, code="invalid_toml") from e


# =============================================================================
# Manifest
# =============================================================================


def parse_manifest(data: dict[str, Any], path: Path | None = None) -> ManifestSchema:
    """Validate manifest data.

    Raises:
        ManifestError: If data does not match the schema.
    """
    try:
        return ManifestSchema.model_validate(data)
    except ValidationError as e:
        where = f" {path}" if path else ""
        raise ManifestError(
            f"Invalid manifest{where}: {_format_validation_error(e)}",
            path=path,
            code="invalid_manifest",
        ) from e


def load_manifest(path: Path) -> ManifestSchema:
    """Load and validate the manifest at path.

    Raises:
        ManifestError: If the manifest is missing or invalid.
    """
    return parse_manifest(load_toml(path), path)


def load_manifest_document(path: Path) -> TOMLDocument:
    """Load the manifest as an editable tomlkit document.

    Raises:
        ManifestError: If the manifest is missing or not valid TOML.
    """
    try:
        return tomlkit.parse(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest not found: {path}", path=path, code="not_found") from e
    except TOMLKitError as e:
        raise ManifestError(f"Invalid TOML in {path}: {e}", path=path, code="invalid_toml") from e


def save_manifest_document(doc: TOMLDocument, path: Path) -> ManifestSchema:
    """Validate and atomically write a manifest document.

    Args:
        doc: Edited manifest document.
        path: Destination path.

    Returns:
        The validated manifest.

    Raises:
        ManifestError: If the edited document is not a valid manifest.
    """
    manifest = parse_manifest(doc.unwrap(), path)
    write_text_atomic(path, tomlkit.dumps(doc))
    return manifest


def new_manifest_document(
    name: str,
    board: str | None = None,
    description: str | None = None,
) -> TOMLDocument:
    """Create a fresh manifest document.

    Args:
        name: Project name.
        board: Optional board name.
        description: Optional project description.

    Returns:
        tomlkit document with [project], [board], [build] and [packages].
    """
    doc = tomlkit.document()

    project = tomlkit.table()
    project.add("name", name)
    project.add("version", "0.1.0")
    if description:
        project.add("description", description)
    doc.add("project", project)

    board_table = tomlkit.table()
    if board:
        board_table.add("name", board)
    doc.add("board", board_table)

    build = tomlkit.table()
    build.add("compress", False)
    build.add("image_format", "ext4")
    build.add("rootfs_size", "256M")
    build.add("hostname", name)
    doc.add("build", build)

    doc.add("packages", tomlkit.table())
    return doc


def set_package_constraint(doc: TOMLDocument, name: str, version: str) -> None:
    """Add or update [packages.<name>] with a version constraint."""
    if "packages" not in doc:
        doc.add("packages", tomlkit.table())
    packages = doc["packages"]
    if name in packages:
        packages[name]["version"] = version
    else:
        entry = tomlkit.table()
        entry.add("version", version)
        packages.add(name, entry)


def remove_package_entry(doc: TOMLDocument, name: str) -> bool:
    """Remove [packages.<name>]; return False when it was not present."""
    packages = doc.get("packages")
    if packages is None or name not in packages:
        return False
    del packages[name]
    return True


# =============================================================================
# Package and board definitions
# =============================================================================


def parse_package_definition(data: dict[str, Any], path: Path | None = None) -> PackageDefinition:
    """Validate package definition data.

    Raises:
        ManifestError: If data does not match the schema.
    """
    try:
        return PackageDefinition.model_validate(data)
    except ValidationError as e:
        where = f" {path}" if path else ""
        raise ManifestError(
            f"Invalid package definition{where}: {_format_validation_error(e)}",
            path=path,
            code="invalid_package",
        ) from e


def load_package_definition(path: Path) -> PackageDefinition:
    """Load and validate a package.toml."""
    return parse_package_definition(load_toml(path), path)


def parse_board_definition(data: dict[str, Any], path: Path | None = None) -> BoardDefinition:
    """Validate board definition data.

    Raises:
        ManifestError: If data does not match the schema.
    """
    try:
        return BoardDefinition.model_validate(data)
    except ValidationError as e:
        where = f" {path}" if path else ""
        raise ManifestError(
            f"Invalid board definition{where}: {_format_validation_error(e)}",
            path=path,
            code="invalid_board",
        ) from e


def load_board_definition(path: Path) -> BoardDefinition:
    """Load and validate a board.toml."""
    return parse_board_definition(load_toml(path), path)


__all__ = [
    "ManifestError",
    "load_board_definition",
    "load_manifest",
    "load_manifest_document",
    "load_package_definition",
    "load_toml",
    "new_manifest_document",
    "parse_board_definition",
    "parse_manifest",
    "parse_package_definition",
    "remove_package_entry",
    "save_manifest_document",
    "set_package_constraint",
    "write_text_atomic",
]
