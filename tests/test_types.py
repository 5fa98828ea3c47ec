"""Tests for shared types module."""

from rootfsgen.types import (
    BoardDescriptor,
    BuildType,
    ContainerRuntime,
    NodeOutcome,
    PackageDescriptor,
    SourceKind,
    SourceLocator,
)


class TestEnums:
    """Test enum definitions."""

    def test_node_outcome_values(self) -> None:
        """NodeOutcome should have expected values."""
        assert NodeOutcome.BUILT.value == "built"
        assert NodeOutcome.RESTORED.value == "restored"
        assert NodeOutcome.UP_TO_DATE.value == "up-to-date"
        assert NodeOutcome.FAILED.value == "failed"
        assert NodeOutcome.CANCELLED.value == "cancelled"
        assert NodeOutcome.NOT_ATTEMPTED.value == "not-attempted"

    def test_node_outcome_flags(self) -> None:
        """Only built and restored outputs count as changed."""
        assert NodeOutcome.BUILT.changed
        assert NodeOutcome.RESTORED.changed
        assert not NodeOutcome.UP_TO_DATE.changed
        assert NodeOutcome.UP_TO_DATE.succeeded
        assert not NodeOutcome.FAILED.succeeded
        assert not NodeOutcome.CANCELLED.succeeded

    def test_build_type_values(self) -> None:
        """BuildType should cover every supported build system."""
        assert {t.value for t in BuildType} == {"script", "make", "autotools", "cmake", "custom"}

    def test_container_runtime_preference(self) -> None:
        """Docker is listed before podman."""
        assert [r.value for r in ContainerRuntime] == ["docker", "podman"]


class TestSourceLocator:
    """Test SourceLocator rendering."""

    def test_render_none(self) -> None:
        """A package without source renders as 'none'."""
        assert SourceLocator().render() == "none"

    def test_render_and_parse_url(self) -> None:
        """URL locators survive a render/parse cycle."""
        locator = SourceLocator(SourceKind.URL, "https://example.com/zlib-1.3.tar.gz")
        assert locator.render() == "url+https://example.com/zlib-1.3.tar.gz"
        assert SourceLocator.parse(locator.render()) == locator

    def test_parse_unknown_is_none(self) -> None:
        """Strings without a kind prefix parse as no source."""
        assert SourceLocator.parse("none").kind == SourceKind.NONE


class TestDescriptors:
    """Test descriptor dataclasses."""

    def test_package_spec(self) -> None:
        """spec should be name@version."""
        package = PackageDescriptor(name="busybox", version="1.36.1")
        assert package.spec == "busybox@1.36.1"
        assert package.depends == ()

    def test_board_arch(self) -> None:
        """arch is the first component of the target triple."""
        board = BoardDescriptor(name="rpi4", target="aarch64-linux-musl")
        assert board.arch == "aarch64"
