"""Tests for the shared cache index and pruning."""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rootfsgen.builds.cache_index import (
    _format_size,
    _utcnow,
    get_cache_info,
    list_cache_entries,
    prune_cache,
    record_cache_entry,
    touch_cache_entry,
)
from rootfsgen.db import Base

OLD_KEY = "aa" + "0" * 62
NEW_KEY = "bb" + "1" * 62


@pytest.fixture
def session():
    """In-memory cache index session."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


def _record(session, storage, key: str, package: str, files: int = 1):
    out = storage.build_cache_dir.parent / "out" / key
    out.mkdir(parents=True)
    for i in range(files):
        (out / f"f{i}").write_bytes(b"x" * 100)
    storage.store_build_output(key, out)
    return record_cache_entry(
        session,
        key=key,
        package=package,
        version="1.0.0",
        checksum="c" * 64,
        target="x86_64-linux-musl",
        toolchain="0.13.0",
        size_bytes=100 * files,
    )


class TestRecord:
    """Test recording entries."""

    def test_record_new(self, session, storage) -> None:
        """A new key creates a row with last_used_at set."""
        entry = _record(session, storage, OLD_KEY, "zlib")

        assert entry.id is not None
        assert entry.last_used_at is not None
        assert [e.key for e in list_cache_entries(session)] == [OLD_KEY]

    def test_record_existing_refreshes(self, session, storage) -> None:
        """Recording an existing key updates its last use, not a new row."""
        entry = _record(session, storage, OLD_KEY, "zlib")
        entry.last_used_at = _utcnow() - timedelta(days=90)
        session.flush()

        record_cache_entry(session, OLD_KEY, "zlib", "1.0.0", "c" * 64, "x86_64-linux-musl", "0.13.0")

        entries = list_cache_entries(session)
        assert len(entries) == 1
        assert entries[0].last_used_at > _utcnow() - timedelta(minutes=5)
        assert entries[0].size_bytes == 100

    def test_touch(self, session, storage) -> None:
        """touch_cache_entry reports whether the key is indexed."""
        _record(session, storage, OLD_KEY, "zlib")

        assert touch_cache_entry(session, OLD_KEY) is True
        assert touch_cache_entry(session, NEW_KEY) is False

    def test_list_filter(self, session, storage) -> None:
        """Entries can be filtered by package."""
        _record(session, storage, OLD_KEY, "zlib")
        _record(session, storage, NEW_KEY, "busybox")

        assert [e.package for e in list_cache_entries(session)] == ["busybox", "zlib"]
        assert [e.key for e in list_cache_entries(session, package="zlib")] == [OLD_KEY]


class TestCacheInfo:
    """Test get_cache_info."""

    def test_info(self, session, storage) -> None:
        """Info reports entries, packages and sizes."""
        _record(session, storage, OLD_KEY, "zlib", files=2)
        _record(session, storage, NEW_KEY, "zlib")

        info = get_cache_info(session, storage)

        assert info["entries"] == 2
        assert info["packages"] == 1
        assert info["build_cache_size_bytes"] == 300
        assert info["build_cache_size_human"] == "300.0 B"
        assert info["downloads_size_bytes"] == 0


class TestPrune:
    """Test prune_cache."""

    @pytest.fixture
    def aged(self, session, storage):
        """One entry unused for 60 days and one used now."""
        old = _record(session, storage, OLD_KEY, "zlib")
        old.last_used_at = _utcnow() - timedelta(days=60)
        _record(session, storage, NEW_KEY, "busybox")
        session.flush()
        return session

    def test_prune_old_entries(self, aged, storage) -> None:
        """Entries older than the cutoff are removed from disk and index."""
        pruned = prune_cache(aged, storage, unused_days=30)

        assert [p.key for p in pruned] == [OLD_KEY]
        assert not storage.cache_exists(OLD_KEY)
        assert storage.cache_exists(NEW_KEY)
        assert [e.key for e in list_cache_entries(aged)] == [NEW_KEY]

    def test_dry_run(self, aged, storage) -> None:
        """A dry run reports without deleting."""
        pruned = prune_cache(aged, storage, unused_days=30, dry_run=True)

        assert [p.package for p in pruned] == ["zlib"]
        assert storage.cache_exists(OLD_KEY)
        assert len(list_cache_entries(aged)) == 2

    def test_nothing_to_prune(self, aged, storage) -> None:
        """A long retention prunes nothing."""
        assert prune_cache(aged, storage, unused_days=365) == []


class TestFormatSize:
    """Test _format_size."""

    def test_units(self) -> None:
        """Sizes scale through the units."""
        assert _format_size(512) == "512.0 B"
        assert _format_size(2048) == "2.0 KB"
        assert _format_size(5 * 1024 * 1024) == "5.0 MB"
