"""Tests for version parsing and constraint matching."""

import pytest

from rootfsgen.resolver.errors import InvalidConstraintError
from rootfsgen.resolver.versions import (
    Version,
    VersionConstraint,
    is_exact_pin,
    parse_requirement,
    satisfies,
    select_version,
    sort_versions,
)


class TestVersion:
    """Test Version parsing."""

    def test_parse_full(self) -> None:
        """Should parse major.minor.patch with prerelease."""
        version = Version.parse("1.36.1-rc.2")
        assert version is not None
        assert version.release == (1, 36, 1)
        assert version.pre == ("rc", "2")

    def test_parse_short(self) -> None:
        """Missing components default to zero."""
        version = Version.parse("3")
        assert version is not None
        assert version.release == (3, 0, 0)
        assert version.parts == 1

    def test_parse_opaque(self) -> None:
        """Non-semantic versions return None."""
        assert Version.parse("2023a") is None

    def test_prerelease_sorts_below_release(self) -> None:
        """1.0.0-rc1 < 1.0.0."""
        assert sort_versions(["1.0.0", "1.0.0-rc1", "0.9.9"]) == ["0.9.9", "1.0.0-rc1", "1.0.0"]

    def test_numeric_ordering(self) -> None:
        """Components compare numerically, not lexically."""
        assert sort_versions(["1.10.0", "1.2.0", "1.9.3"]) == ["1.2.0", "1.9.3", "1.10.0"]


class TestVersionConstraint:
    """Test constraint matching."""

    @pytest.mark.parametrize(
        ("constraint", "version", "expected"),
        [
            ("*", "0.0.1", True),
            ("1.2.3", "1.2.3", True),
            ("1.2.3", "1.2.4", False),
            ("=1.2.3", "1.2.3", True),
            (">=1.2", "1.3.0", True),
            (">=1.2", "1.1.9", False),
            ("<2.0.0", "1.99.0", True),
            (">=1.0, <2.0", "2.0.0", False),
            ("^1.2", "1.9.0", True),
            ("^1.2", "2.0.0", False),
            ("^0.2.3", "0.2.9", True),
            ("^0.2.3", "0.3.0", False),
            ("~1.2", "1.2.7", True),
            ("~1.2", "1.3.0", False),
        ],
    )
    def test_matches(self, constraint: str, version: str, expected: bool) -> None:
        """Constraint operators should match as documented."""
        assert satisfies(version, constraint) is expected

    def test_prerelease_excluded_from_ranges(self) -> None:
        """Ranges do not pick up prereleases unless they name one."""
        assert not satisfies("2.0.0-rc1", ">=1.0")
        assert satisfies("2.0.0-rc2", ">=2.0.0-rc1")

    def test_opaque_exact_pin(self) -> None:
        """Opaque versions can only be pinned exactly."""
        assert satisfies("2023a", "2023a")
        assert not satisfies("2023b", "2023a")

    def test_invalid_range(self) -> None:
        """Range operators on opaque versions are rejected."""
        with pytest.raises(InvalidConstraintError) as exc_info:
            VersionConstraint(">=banana")
        assert exc_info.value.code == "invalid_constraint"

    def test_empty_is_any(self) -> None:
        """An empty constraint accepts everything."""
        assert VersionConstraint("").is_any


class TestRequirements:
    """Test requirement helpers."""

    def test_parse_requirement_with_constraint(self) -> None:
        """name@constraint splits on the first @."""
        assert parse_requirement("zlib@>=1.2") == ("zlib", ">=1.2")

    def test_parse_requirement_without_constraint(self) -> None:
        """A bare name means any version."""
        assert parse_requirement("zlib") == ("zlib", "*")
        assert parse_requirement("zlib@") == ("zlib", "*")

    def test_is_exact_pin(self) -> None:
        """Only bare semantic versions are exact pins."""
        assert is_exact_pin("1.36.1")
        assert not is_exact_pin(">=1.36")
        assert not is_exact_pin("*")


class TestSelectVersion:
    """Test version selection."""

    def test_highest_satisfying(self) -> None:
        """The highest version matching every constraint wins."""
        available = ["1.0.0", "1.2.0", "1.3.0", "2.0.0"]
        assert select_version(available, [">=1.0", "<2.0"]) == "1.3.0"

    def test_hint_kept_when_valid(self) -> None:
        """A hint is kept while it satisfies the constraints."""
        available = ["1.0.0", "1.2.0", "1.3.0"]
        assert select_version(available, ["^1.0"], hint="1.2.0") == "1.2.0"

    def test_hint_ignored_when_invalid(self) -> None:
        """A hint outside the constraints falls back to the highest match."""
        available = ["1.0.0", "1.2.0", "1.3.0"]
        assert select_version(available, [">=1.3"], hint="1.2.0") == "1.3.0"

    def test_no_match(self) -> None:
        """Returns None when nothing satisfies."""
        assert select_version(["1.0.0"], [">=2.0"]) is None
