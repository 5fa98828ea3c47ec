"""Tests for local package definitions and the local-first lookup."""

import pytest
from conftest import FakeSource, write_local_board, write_local_package

from rootfsgen.project.io import ManifestError
from rootfsgen.project.layout import ProjectLayout
from rootfsgen.registry.client import BoardNotFoundError, PackageNotFoundError
from rootfsgen.registry.local import LocalPackages, compute_tree_hash
from rootfsgen.registry.lookup import PackageLookup
from rootfsgen.types import PackageOrigin, SourceKind


@pytest.fixture
def layout(tmp_path):
    """Empty project layout."""
    return ProjectLayout(tmp_path)


class TestComputeTreeHash:
    """Test directory hashing."""

    def test_stable(self, tmp_path) -> None:
        """The same tree hashes the same."""
        (tmp_path / "a.txt").write_text("a")
        assert compute_tree_hash(tmp_path) == compute_tree_hash(tmp_path)

    def test_content_change(self, tmp_path) -> None:
        """Editing a file changes the hash."""
        (tmp_path / "a.txt").write_text("a")
        before = compute_tree_hash(tmp_path)
        (tmp_path / "a.txt").write_text("b")
        assert compute_tree_hash(tmp_path) != before

    def test_mode_change(self, tmp_path) -> None:
        """Making a script executable changes the hash."""
        script = tmp_path / "build.sh"
        script.write_text("true\n")
        script.chmod(0o644)
        before = compute_tree_hash(tmp_path)
        script.chmod(0o755)
        assert compute_tree_hash(tmp_path) != before

    def test_missing_directory(self, tmp_path) -> None:
        """A missing directory hashes as empty."""
        assert compute_tree_hash(tmp_path / "nope") == compute_tree_hash(tmp_path)


class TestLocalPackages:
    """Test LocalPackages."""

    def test_list_and_load(self, layout) -> None:
        """Local packages are listed and loaded with a path source."""
        write_local_package(layout.root, "hello", "2.12", depends=("musl",))
        write_local_package(layout.root, "busybox", "1.36.1")
        local = LocalPackages(layout)

        assert local.list_packages() == ["busybox", "hello"]
        package = local.get_package("hello")
        assert package.version == "2.12"
        assert package.depends == ("musl",)
        assert package.origin == PackageOrigin.LOCAL
        assert package.source.kind == SourceKind.PATH
        assert package.source.location == "packages/hello"
        assert package.package_dir == layout.package_dir("hello")

    def test_checksum_tracks_scripts(self, layout) -> None:
        """Editing the build script changes the package checksum."""
        write_local_package(layout.root, "hello")
        before = LocalPackages(layout).get_package("hello").checksum

        (layout.package_dir("hello") / "build.sh").write_text("echo changed\n")

        assert LocalPackages(layout).get_package("hello").checksum != before

    def test_source_path(self, layout) -> None:
        """[source].path points the source at a subdirectory."""
        write_local_package(layout.root, "hello", extra='\n[source]\npath = "src"\n')
        (layout.package_dir("hello") / "src").mkdir()

        package = LocalPackages(layout).get_package("hello")

        assert package.source.location == "packages/hello/src"

    def test_name_mismatch(self, layout) -> None:
        """A definition naming another package is rejected."""
        package_dir = write_local_package(layout.root, "hello")
        (package_dir / "package.toml").write_text('[package]\nname = "other"\nversion = "1"\n')

        with pytest.raises(ManifestError) as exc_info:
            LocalPackages(layout).get_package("hello")
        assert exc_info.value.code == "name_mismatch"

    def test_missing(self, layout) -> None:
        """Unknown names raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            LocalPackages(layout).get_package("ghost")

    def test_board(self, layout) -> None:
        """Local boards load from boards/<name>/board.toml."""
        write_local_board(layout.root, "myboard", "aarch64-linux-musl", features=("neon",))
        local = LocalPackages(layout)

        assert local.has_board("myboard")
        assert local.get_board("myboard").features == ("neon",)


class TestPackageLookup:
    """Test local-first lookup."""

    def test_local_shadows_registry(self, layout) -> None:
        """A local package hides every registry version of the same name."""
        write_local_package(layout.root, "busybox", "1.36.1")
        registry = FakeSource()
        registry.add("busybox", "1.37.0")
        lookup = PackageLookup(LocalPackages(layout), registry)

        assert lookup.is_local("busybox")
        assert lookup.available_versions("busybox") == ["1.36.1"]
        assert lookup.get_package("busybox", "1.36.1").origin == PackageOrigin.LOCAL
        assert registry.lookups == []

    def test_falls_back_to_registry(self, layout) -> None:
        """Names without a local definition go to the registry."""
        registry = FakeSource()
        registry.add("zlib", "1.3.1")
        lookup = PackageLookup(LocalPackages(layout), registry)

        assert not lookup.is_local("zlib")
        assert lookup.available_versions("zlib") == ["1.3.1"]

    def test_without_registry(self, layout) -> None:
        """Without a registry, unknown names are not found."""
        lookup = PackageLookup(LocalPackages(layout))

        with pytest.raises(PackageNotFoundError):
            lookup.available_versions("zlib")
        with pytest.raises(BoardNotFoundError):
            lookup.get_board("rpi4")

    def test_local_wrong_version(self, layout) -> None:
        """Asking for another version of a local package fails."""
        write_local_package(layout.root, "busybox", "1.36.1")
        lookup = PackageLookup(LocalPackages(layout))

        with pytest.raises(PackageNotFoundError):
            lookup.get_package("busybox", "1.37.0")
