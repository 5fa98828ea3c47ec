"""Tests for per-package build stamps."""

from rootfsgen.builds.stamps import BuildStamp, clear_stamp, read_stamp, stamp_matches, write_stamp


class TestStamps:
    """Test stamp persistence."""

    def test_write_and_read(self, tmp_path) -> None:
        """A written stamp reads back."""
        path = tmp_path / "stamps" / "zlib.stamp"
        write_stamp(path, BuildStamp(package="zlib", version="1.3.1", cache_key="k1"))

        stamp = read_stamp(path)

        assert stamp is not None
        assert stamp.package == "zlib"
        assert stamp.cache_key == "k1"

    def test_matches_only_same_key(self, tmp_path) -> None:
        """A stamp matches only the key it records."""
        path = tmp_path / "zlib.stamp"
        write_stamp(path, BuildStamp(package="zlib", version="1.3.1", cache_key="k1"))

        assert stamp_matches(path, "k1")
        assert not stamp_matches(path, "k2")

    def test_missing_stamp(self, tmp_path) -> None:
        """A missing stamp never matches."""
        assert read_stamp(tmp_path / "none.stamp") is None
        assert not stamp_matches(tmp_path / "none.stamp", "k1")

    def test_corrupt_stamp_ignored(self, tmp_path) -> None:
        """An unreadable stamp is treated as missing."""
        path = tmp_path / "zlib.stamp"
        path.write_text("{not json")

        assert read_stamp(path) is None

    def test_clear(self, tmp_path) -> None:
        """clear_stamp removes the file and tolerates absence."""
        path = tmp_path / "zlib.stamp"
        write_stamp(path, BuildStamp(package="zlib", version="1", cache_key="k"))

        clear_stamp(path)
        clear_stamp(path)

        assert not path.exists()
