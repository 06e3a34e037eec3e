"""
Tests for the SQLite job store: upsert, favorites, eviction and queries.
"""

import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

from federal_job_finder.db import JobDatabase, from_iso, to_iso
from federal_job_finder.errors import NotFoundError

from conftest import FakeClock, make_job


def test_initialize_schema():
    """Test database schema creation."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = JobDatabase(Path(tmpdir) / "test.db")
        db.initialize_schema()

        cursor = db.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = [row[0] for row in cursor.fetchall()]
        assert "jobs" in tables

        cursor = db.conn.execute("SELECT name FROM sqlite_master WHERE type='index'")
        indexes = [row[0] for row in cursor.fetchall()]
        for index in ["idx_jobs_cached_at", "idx_jobs_favorited", "idx_jobs_deadline"]:
            assert index in indexes, f"Index {index} not found"

        # Verify WAL mode enabled
        journal_mode = db.conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert journal_mode.lower() == "wal", f"Expected WAL mode, got {journal_mode}"

        db.close()


def test_initialize_schema_idempotent():
    """Test that initialize_schema() can be called multiple times without errors."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = JobDatabase(Path(tmpdir) / "test.db")
        db.initialize_schema()
        db.initialize_schema()  # Should not raise

        assert db.count() == 0
        db.close()


def test_in_memory_database():
    """Test that ':memory:' gives a working throwaway store."""
    with JobDatabase(":memory:") as db:
        db.initialize_schema()
        db.upsert_job(make_job("1"))
        assert db.db_path is None
        assert db.count() == 1


def test_iso_round_trip_is_utc():
    """Naive datetimes are treated as UTC."""
    clock = FakeClock()
    naive = clock.now.replace(tzinfo=None)
    assert from_iso(to_iso(naive)) == clock.now
    assert to_iso(None) is None
    assert from_iso("") is None


# ========== Upsert ==========


def test_upsert_stamps_cached_at(db, clock):
    """The stored record carries the clock's time, not the caller's."""
    stored = db.upsert_job(make_job("1", cached_at=clock.now - timedelta(days=30)))
    assert stored.cached_at == clock.now


def test_upsert_twice_keeps_one_record(db, clock):
    """Upserting the same job_id twice leaves one record with the second write's data."""
    db.upsert_job(make_job("1", title="First"))
    clock.advance(minutes=5)
    db.upsert_job(make_job("1", title="Second"))

    assert db.count() == 1
    job = db.get_job("1")
    assert job.title == "Second"
    assert job.cached_at == clock.now


def test_upsert_preserves_favorite(db, clock):
    """A remote refresh (is_favorited=False) never clears a favorite."""
    db.upsert_job(make_job("1"))
    db.set_favorite("1", True)

    clock.advance(hours=1)
    refreshed = db.upsert_job(make_job("1", title="Updated", is_favorited=False))

    assert refreshed.is_favorited is True
    assert refreshed.title == "Updated"


def test_upsert_older_write_is_ignored(db, clock):
    """Last write wins by cached_at."""
    db.upsert_job(make_job("1", title="Newer"))
    clock.rewind(hours=1)
    db.upsert_job(make_job("1", title="Older"))

    assert db.get_job("1").title == "Newer"


def test_upsert_job_returns_row_that_won(db, clock):
    """An ignored older write returns the stored newer row."""
    db.upsert_job(make_job("1", title="Newer"))
    clock.rewind(hours=1)

    stored = db.upsert_job(make_job("1", title="Older"))

    assert stored.title == "Newer"


def test_upsert_job_raises_when_row_cannot_be_read_back(db, monkeypatch):
    """A missing read-back is reported as NotFoundError, not silently returned."""
    monkeypatch.setattr(db, "get_job", lambda job_id: None)

    with pytest.raises(NotFoundError) as exc_info:
        db.upsert_job(make_job("1"))

    assert exc_info.value.job_id == "1"


def test_upsert_jobs_batch(db):
    """Test batch upsert returns the number written."""
    count = db.upsert_jobs([make_job(str(i)) for i in range(5)])
    assert count == 5
    assert db.count() == 5
    assert db.upsert_jobs([]) == 0


def test_upsert_round_trips_fields(db, clock):
    """Every field survives storage."""
    job = make_job(
        "42",
        is_remote_eligible=True,
        date_posted=clock.now - timedelta(days=2),
        application_deadline=clock.now + timedelta(days=10),
        requirements="US Citizenship\nBackground check",
        major_duties="Manage servers",
    )
    stored = db.upsert_job(job)

    assert stored.model_dump(exclude={"cached_at"}) == job.model_dump(exclude={"cached_at"})


# ========== Favorites ==========


def test_set_favorite_on_missing_job_raises(db):
    """set_favorite on an unknown ID raises and leaves the store unchanged."""
    db.upsert_job(make_job("1"))
    before = db.get_jobs()

    with pytest.raises(NotFoundError):
        db.set_favorite("missing", True)

    assert db.get_jobs() == before
    assert db.count() == 1


def test_set_favorite_stamps_cached_at(db, clock):
    """Test favoriting refreshes cached_at."""
    db.upsert_job(make_job("1"))
    clock.advance(days=3)

    job = db.set_favorite("1", True)
    assert job.is_favorited is True
    assert job.cached_at == clock.now

    job = db.set_favorite("1", False)
    assert job.is_favorited is False


def test_toggle_favorite(db):
    """Test toggling flips the flag and reports the new state."""
    db.upsert_job(make_job("1"))

    assert db.toggle_favorite("1") is True
    assert db.get_job("1").is_favorited is True
    assert db.toggle_favorite("1") is False
    assert db.get_job("1").is_favorited is False

    with pytest.raises(NotFoundError):
        db.toggle_favorite("missing")


def test_get_favorites_ordered_newest_first(db, clock):
    """Test favorites come back most recently cached first."""
    for job_id in ["a", "b", "c"]:
        db.upsert_job(make_job(job_id))
    db.set_favorite("a", True)
    clock.advance(minutes=1)
    db.set_favorite("c", True)

    assert [job.job_id for job in db.get_favorites()] == ["c", "a"]


# ========== Eviction ==========


def test_delete_expired_respects_age_and_favorites(db, clock):
    """Jobs 10, 5 and 1 days old with a 7 day max age: only the 10 day one goes."""
    for job_id, days_old in [("old", 10), ("mid", 5), ("new", 1)]:
        clock.now = FakeClock().now - timedelta(days=days_old)
        db.upsert_job(make_job(job_id))

    clock.now = FakeClock().now
    deleted = db.delete_expired(timedelta(days=7))

    assert deleted == 1
    assert db.get_job("old") is None
    assert db.get_job("mid") is not None
    assert db.get_job("new") is not None


def test_delete_expired_keeps_old_favorites(db, clock):
    """A favorite survives expiry no matter how old it is."""
    db.upsert_job(make_job("fav"))
    db.set_favorite("fav", True)
    db.upsert_job(make_job("plain"))

    clock.advance(days=30)
    deleted = db.delete_expired(timedelta(days=7))

    assert deleted == 1
    assert db.get_job("fav") is not None
    assert db.get_job("plain") is None


def test_clear_all_except_favorites(db):
    """With 5 favorites and 5 others, clearing leaves exactly the 5 favorites."""
    for i in range(10):
        db.upsert_job(make_job(str(i)))
    for i in range(5):
        db.set_favorite(str(i), True)

    deleted = db.clear_all_except_favorites()

    assert deleted == 5
    assert db.count() == 5
    assert all(job.is_favorited for job in db.get_jobs())


# ========== Reads ==========


def test_get_jobs_limit_and_order(db, clock):
    """Test get_jobs returns newest first and honors limit."""
    for i in range(4):
        db.upsert_job(make_job(str(i)))
        clock.advance(minutes=1)

    assert [job.job_id for job in db.get_jobs()] == ["3", "2", "1", "0"]
    assert [job.job_id for job in db.get_jobs(limit=2)] == ["3", "2"]


def test_query_jobs_filters(db):
    """Test composable offline filters."""
    db.upsert_job(make_job("1", title="Data Scientist", location="Denver, CO", is_remote_eligible=True))
    db.upsert_job(make_job("2", title="IT Specialist", department="Department of Energy", salary_max=60000))
    db.upsert_job(make_job("3", title="Senior Data Engineer", location="Washington, DC"))
    db.set_favorite("3", True)

    assert {j.job_id for j in db.query_jobs(keyword="data")} == {"1", "3"}
    assert [j.job_id for j in db.query_jobs(location="denver")] == ["1"]
    assert [j.job_id for j in db.query_jobs(department="energy")] == ["2"]
    assert [j.job_id for j in db.query_jobs(remote_only=True)] == ["1"]
    assert {j.job_id for j in db.query_jobs(min_salary=100000)} == {"1", "3"}
    assert [j.job_id for j in db.query_jobs(favorites_only=True)] == ["3"]
    assert [j.job_id for j in db.query_jobs(keyword="data", favorites_only=True)] == ["3"]
    assert len(db.query_jobs(limit=1)) == 1


def test_get_job_missing_returns_none(db):
    assert db.get_job("nope") is None


def test_cache_aggregates(db, clock):
    """Test counts and cached_at range come back together."""
    empty = db.get_cache_aggregates()
    assert empty == {"total": 0, "favorited": 0, "oldest_cached_at": None, "newest_cached_at": None}

    start = clock.now
    db.upsert_job(make_job("1"))
    clock.advance(days=2)
    db.upsert_job(make_job("2"))
    db.set_favorite("2", True)

    aggregates = db.get_cache_aggregates()
    assert aggregates["total"] == 2
    assert aggregates["favorited"] == 1
    assert aggregates["oldest_cached_at"] == start
    assert aggregates["newest_cached_at"] == clock.now
