"""Tests for the dependency resolution service."""

import pytest
from conftest import FakeSource

from rootfsgen.project.schema import ManifestSchema
from rootfsgen.resolver.errors import (
    BoardIncompatibleError,
    CircularDependencyError,
    NoMatchingVersionError,
    PackageConflictError,
    UnknownPackageError,
    VersionConflictError,
)
from rootfsgen.resolver.service import DEFAULT_TARGET, resolve
from rootfsgen.types import PackageOrigin


def _manifest(packages: dict[str, str], board: str | None = None) -> ManifestSchema:
    return ManifestSchema.model_validate(
        {
            "project": {"name": "test-image"},
            "board": {"name": board} if board else {},
            "packages": {name: {"version": version} for name, version in packages.items()},
        }
    )


class TestClosure:
    """Test dependency closure."""

    def test_transitive_closure(self, fake_source) -> None:
        """P -> Q -> R resolves to all three packages, R first."""
        fake_source.add("p", depends=("q",))
        fake_source.add("q", depends=("r",))
        fake_source.add("r")

        resolution = resolve(_manifest({"p": "*"}), fake_source)

        assert sorted(resolution.graph.names) == ["p", "q", "r"]
        assert resolution.order == ["r", "q", "p"]
        assert resolution.roots == ["p"]
        assert resolution.target == DEFAULT_TARGET

    def test_shared_dependency_once(self, fake_source) -> None:
        """A diamond resolves to four nodes with one copy of the base."""
        fake_source.add("app", depends=("lib1", "lib2"))
        fake_source.add("lib1", depends=("base",))
        fake_source.add("lib2", depends=("base",))
        fake_source.add("base")

        resolution = resolve(_manifest({"app": "*"}), fake_source)

        assert len(resolution.graph) == 4
        assert resolution.order[0] == "base"
        assert resolution.graph.dependents("base") == ["lib1", "lib2"]

    def test_lock_entries(self, fake_source) -> None:
        """The lock records exact versions, checksums and dependencies."""
        zlib = fake_source.add("zlib", "1.3.1")
        fake_source.add("openssl", "3.2.0", depends=("zlib@>=1.2",))

        resolution = resolve(_manifest({"openssl": "*"}), fake_source)

        entry = resolution.lock.get("zlib")
        assert entry is not None
        assert entry.version == "1.3.1"
        assert entry.checksum == zlib.checksum
        assert resolution.lock.get("openssl").dependencies == ("zlib",)

    def test_deterministic_lock(self, fake_source) -> None:
        """Resolving the same inputs twice renders byte-identical locks."""
        fake_source.add("app", depends=("b", "a"))
        fake_source.add("a", depends=("c",))
        fake_source.add("b", depends=("c",))
        fake_source.add("c")

        first = resolve(_manifest({"app": "*"}), fake_source)
        second = resolve(_manifest({"app": "*"}), fake_source)

        assert first.lock.render() == second.lock.render()
        assert first.order == second.order


class TestErrors:
    """Test resolution failures."""

    def test_unknown_package(self, fake_source) -> None:
        """A missing dependency names the package and its requester."""
        fake_source.add("app", depends=("ghost",))

        with pytest.raises(UnknownPackageError) as exc_info:
            resolve(_manifest({"app": "*"}), fake_source)

        assert exc_info.value.name == "ghost"
        assert exc_info.value.requested_by == "app"
        assert exc_info.value.code == "unknown_package"

    def test_no_matching_version(self, fake_source) -> None:
        """A constraint no published version meets fails with the versions seen."""
        fake_source.add("zlib", "1.2.13")

        with pytest.raises(NoMatchingVersionError) as exc_info:
            resolve(_manifest({"zlib": ">=1.3"}), fake_source)

        assert exc_info.value.available == ["1.2.13"]

    @pytest.mark.parametrize("entry", ["a", "b", "c"])
    def test_cycle_detected_from_any_entry(self, entry: str) -> None:
        """A cycle is reported no matter which member the manifest names."""
        source = FakeSource()
        source.add("a", depends=("b",))
        source.add("b", depends=("c",))
        source.add("c", depends=("a",))

        with pytest.raises(CircularDependencyError) as exc_info:
            resolve(_manifest({entry: "*"}), source)

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1] == entry
        assert set(cycle) == {"a", "b", "c"}

    def test_version_conflict(self, fake_source) -> None:
        """Disjoint requests for one package fail with every requester."""
        fake_source.add("zlib", "1.2.13")
        fake_source.add("zlib", "1.3.1")
        fake_source.add("old", depends=("zlib@<1.3",))
        fake_source.add("new", depends=("zlib@>=1.3",))

        with pytest.raises(VersionConflictError) as exc_info:
            resolve(_manifest({"new": "*", "old": "*"}), fake_source)

        requesters = {who for who, _ in exc_info.value.requests}
        assert requesters == {"new", "old"}
        assert exc_info.value.code == "version_conflict"


class TestVersionSelection:
    """Test version choice across requests."""

    def test_highest_version(self, fake_source) -> None:
        """Without constraints the newest version is chosen."""
        fake_source.add("zlib", "1.2.13")
        fake_source.add("zlib", "1.3.1")

        resolution = resolve(_manifest({"zlib": "*"}), fake_source)

        assert resolution.graph.get("zlib").version == "1.3.1"

    def test_restart_on_later_constraint(self, fake_source) -> None:
        """A later, narrower request moves an earlier choice to a common version."""
        fake_source.add("zlib", "1.2.13")
        fake_source.add("zlib", "1.3.1")
        fake_source.add("a-first", depends=("zlib",))
        fake_source.add("b-second", depends=("zlib@<1.3",))

        resolution = resolve(_manifest({"a-first": "*", "b-second": "*"}), fake_source)

        assert resolution.graph.get("zlib").version == "1.2.13"

    def test_preferred_versions_kept(self, fake_source) -> None:
        """Locked versions are kept while they still satisfy every request."""
        fake_source.add("zlib", "1.2.13")
        fake_source.add("zlib", "1.3.1")

        resolution = resolve(_manifest({"zlib": ">=1.2"}), fake_source, preferred={"zlib": "1.2.13"})

        assert resolution.graph.get("zlib").version == "1.2.13"

    def test_local_package_wins(self, fake_source) -> None:
        """A local definition is used even when the registry has newer versions."""
        fake_source.add("busybox", "1.36.1", local=True)

        resolution = resolve(_manifest({"busybox": "*"}), fake_source)

        package = resolution.graph.get("busybox")
        assert package.version == "1.36.1"
        assert package.origin == PackageOrigin.LOCAL


class TestBoards:
    """Test board handling during resolution."""

    def test_board_target_and_requires(self, fake_source) -> None:
        """Board requirements join the roots and the board sets the target."""
        fake_source.add("busybox")
        fake_source.add("musl")
        fake_source.add_board("rpi4", "aarch64-linux-musl", requires=("musl",))

        board = fake_source.get_board("rpi4")
        resolution = resolve(_manifest({"busybox": "*"}, board="rpi4"), fake_source, board=board)

        assert resolution.target == "aarch64-linux-musl"
        assert resolution.roots == ["busybox", "musl"]

    def test_incompatible_arch(self, fake_source) -> None:
        """A package restricted to another architecture is rejected."""
        fake_source.add("x86-only", arch=("x86_64",))
        board = fake_source.add_board("rpi4", "aarch64-linux-musl")

        with pytest.raises(BoardIncompatibleError) as exc_info:
            resolve(_manifest({"x86-only": "*"}), fake_source, board=board)

        assert exc_info.value.package == "x86-only"
        assert exc_info.value.board == "rpi4"

    def test_missing_capability(self, fake_source) -> None:
        """Required capabilities must come from the board or another package."""
        fake_source.add("gpu-demo", requires=("gpu",))
        board = fake_source.add_board("rpi4", "aarch64-linux-musl", features=("neon",))

        with pytest.raises(BoardIncompatibleError):
            resolve(_manifest({"gpu-demo": "*"}), fake_source, board=board)

    def test_capability_provided_by_package(self, fake_source) -> None:
        """A capability provided by a resolved package satisfies requires."""
        fake_source.add("gpu-demo", depends=("mesa",), requires=("gpu",))
        fake_source.add("mesa", provides=("gpu",))
        board = fake_source.add_board("rpi4", "aarch64-linux-musl")

        resolution = resolve(_manifest({"gpu-demo": "*"}), fake_source, board=board)

        assert "mesa" in resolution.graph


class TestConflicts:
    """Test conflicts between resolved packages."""

    def test_direct_conflict(self, fake_source) -> None:
        """Two packages that conflict cannot be resolved together."""
        fake_source.add("dropbear", conflicts=("openssh",))
        fake_source.add("openssh")

        with pytest.raises(PackageConflictError) as exc_info:
            resolve(_manifest({"dropbear": "*", "openssh": "*"}), fake_source)

        assert exc_info.value.package == "dropbear"
        assert exc_info.value.conflicts_with == "openssh"
        assert exc_info.value.code == "package_conflict"

    def test_conflict_through_dependency(self, fake_source) -> None:
        """A conflict pulled in transitively is still rejected."""
        fake_source.add("app", depends=("openssh",))
        fake_source.add("openssh")
        fake_source.add("dropbear", conflicts=("openssh",))

        with pytest.raises(PackageConflictError):
            resolve(_manifest({"app": "*", "dropbear": "*"}), fake_source)

    def test_conflict_with_capability(self, fake_source) -> None:
        """A conflict naming a capability matches any package that provides it."""
        fake_source.add("dropbear", provides=("ssh-server",))
        fake_source.add("openssh", provides=("ssh-server",), conflicts=("ssh-server",))

        with pytest.raises(PackageConflictError) as exc_info:
            resolve(_manifest({"dropbear": "*", "openssh": "*"}), fake_source)

        assert exc_info.value.conflicts_with == "dropbear"

    def test_absent_conflict_allowed(self, fake_source) -> None:
        """Conflicts with packages outside the graph are ignored."""
        fake_source.add("dropbear", conflicts=("openssh",))

        resolution = resolve(_manifest({"dropbear": "*"}), fake_source)

        assert resolution.graph.names == ["dropbear"]
