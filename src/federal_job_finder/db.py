"""
SQLite database layer for the offline job cache.

Provides persistent storage with:
- Upsert keyed by job_id (last write wins by cached_at)
- Favorites that are exempt from age-based eviction
- Filtered/sorted retrieval for offline browsing
- Aggregates used by cache statistics
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from loguru import logger

from federal_job_finder.errors import NotFoundError
from federal_job_finder.models import JobRecord

Clock = Callable[[], datetime]

JOB_COLUMNS = [
    "job_id", "title", "department", "location",
    "salary_min", "salary_max",
    "date_posted", "application_deadline", "cached_at",
    "is_favorited", "is_remote_eligible",
    "grade", "application_url", "summary", "requirements", "major_duties",
]

_DATETIME_COLUMNS = ("date_posted", "application_deadline", "cached_at")
_BOOL_COLUMNS = ("is_favorited", "is_remote_eligible")


def default_clock() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as a sortable UTC ISO-8601 string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def record_to_row(record: JobRecord) -> dict:
    row = record.model_dump(include=set(JOB_COLUMNS))
    for col in _DATETIME_COLUMNS:
        row[col] = to_iso(row[col])
    for col in _BOOL_COLUMNS:
        row[col] = 1 if row[col] else 0
    return row


def row_to_record(row: sqlite3.Row) -> JobRecord:
    data = dict(row)
    for col in _DATETIME_COLUMNS:
        data[col] = from_iso(data[col])
    for col in _BOOL_COLUMNS:
        data[col] = bool(data[col])
    return JobRecord(**data)


class JobDatabase:
    """
    SQLite store of JobRecord keyed by job_id.

    Features:
    - WAL mode so UI reads are not blocked by the sync writer
    - Every write stamps cached_at from the injected clock
    - Favorited rows survive age-based eviction
    """

    def __init__(self, db_path: Path | str, clock: Clock | None = None):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file (":memory:" for a throwaway store)
            clock: Callable returning the current UTC time, injectable for tests
        """
        self.clock = clock or default_clock
        self._lock = threading.RLock()

        if str(db_path) == ":memory:":
            self.db_path = None
            target = ":memory:"
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self.db_path)

        self.conn = sqlite3.connect(
            target,
            check_same_thread=False,
            timeout=30.0,
        )
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")

        logger.info(f"Database initialized at {target}")

    def initialize_schema(self) -> None:
        """
        Create the jobs table and its indexes.

        Idempotent - safe to call multiple times.
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    title TEXT,
                    department TEXT,
                    location TEXT,

                    salary_min INTEGER NOT NULL DEFAULT 0,
                    salary_max INTEGER NOT NULL DEFAULT 0,

                    date_posted TEXT,
                    application_deadline TEXT,
                    cached_at TEXT NOT NULL,

                    is_favorited INTEGER NOT NULL DEFAULT 0,
                    is_remote_eligible INTEGER NOT NULL DEFAULT 0,

                    grade TEXT,
                    application_url TEXT,
                    summary TEXT,
                    requirements TEXT,
                    major_duties TEXT
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_cached_at ON jobs(cached_at DESC)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_favorited ON jobs(is_favorited) WHERE is_favorited = 1")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_deadline ON jobs(application_deadline)")

            self.conn.commit()
        logger.info("Database schema initialized successfully")

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            logger.info("Database connection closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ========== Writes ==========

    def upsert_job(self, record: JobRecord) -> JobRecord:
        """
        Insert a record or overwrite the one with the same job_id.

        cached_at is always set to now. A favorite is never cleared by an
        upsert; only set_favorite/toggle_favorite can do that.

        Args:
            record: Job record to store

        Returns:
            The stored record as read back from the database
        """
        with self._lock:
            self.upsert_jobs([record])
            stored = self.get_job(record.job_id)
        if stored is None:
            raise NotFoundError(record.job_id, f"Job {record.job_id} vanished while being cached")
        return stored

    def upsert_jobs(self, records: list[JobRecord]) -> int:
        """
        Insert or update records in batch.

        Args:
            records: Job records to store

        Returns:
            Number of records written
        """
        if not records:
            return 0

        now = to_iso(self.clock())
        rows = []
        for record in records:
            row = record_to_row(record)
            row["cached_at"] = now
            rows.append([row[col] for col in JOB_COLUMNS])

        placeholders = ", ".join(["?" for _ in JOB_COLUMNS])
        updates = ", ".join(
            f"{col} = excluded.{col}"
            for col in JOB_COLUMNS
            if col not in ("job_id", "is_favorited")
        )
        sql = (
            f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(job_id) DO UPDATE SET {updates}, "
            "is_favorited = MAX(jobs.is_favorited, excluded.is_favorited) "
            "WHERE excluded.cached_at >= jobs.cached_at"
        )

        with self._lock:
            cursor = self.conn.executemany(sql, rows)
            self.conn.commit()

        count = cursor.rowcount
        logger.debug(f"Upserted {count} jobs")
        return count

    def set_favorite(self, job_id: str, value: bool) -> JobRecord:
        """
        Set the favorite flag and stamp cached_at.

        Raises:
            NotFoundError: If no record exists for job_id
        """
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE jobs SET is_favorited = ?, cached_at = ? WHERE job_id = ?",
                (1 if value else 0, to_iso(self.clock()), job_id),
            )
            self.conn.commit()
            record = self.get_job(job_id) if cursor.rowcount else None

        if record is None:
            logger.warning(f"Cannot set favorite on job {job_id}: job not found")
            raise NotFoundError(job_id)

        logger.info(f"Job {job_id} favorite set to {value}")
        return record

    def toggle_favorite(self, job_id: str) -> bool:
        """
        Flip the favorite flag of a cached job.

        Returns:
            The new favorite state

        Raises:
            NotFoundError: If no record exists for job_id
        """
        with self._lock:
            current = self.get_job(job_id)
            if current is None:
                logger.warning(f"Cannot toggle favorite on job {job_id}: job not found")
                raise NotFoundError(job_id)
            return self.set_favorite(job_id, not current.is_favorited).is_favorited

    def delete_expired(self, max_age: timedelta) -> int:
        """
        Delete non-favorited jobs cached before now - max_age.

        Args:
            max_age: Maximum age of a cached entry

        Returns:
            Number of jobs deleted
        """
        cutoff = to_iso(self.clock() - max_age)

        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM jobs WHERE cached_at < ? AND is_favorited = 0",
                (cutoff,),
            )
            self.conn.commit()

        count = cursor.rowcount
        logger.info(f"Deleted {count} expired jobs (older than {max_age})")
        return count

    def clear_all_except_favorites(self) -> int:
        """Delete every non-favorited job. Returns the number deleted."""
        with self._lock:
            cursor = self.conn.execute("DELETE FROM jobs WHERE is_favorited = 0")
            self.conn.commit()

        count = cursor.rowcount
        logger.info(f"Cleared {count} non-favorited jobs")
        return count

    # ========== Reads ==========

    def get_job(self, job_id: str) -> JobRecord | None:
        """
        Retrieve a single job by ID.

        Returns:
            JobRecord or None if not found
        """
        cursor = self.conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
        row = cursor.fetchone()
        if row:
            return row_to_record(row)
        return None

    def get_favorites(self) -> list[JobRecord]:
        """All favorited jobs, most recently cached first."""
        cursor = self.conn.execute(
            "SELECT * FROM jobs WHERE is_favorited = 1 ORDER BY cached_at DESC"
        )
        return [row_to_record(row) for row in cursor.fetchall()]

    def get_jobs(self, limit: int | None = None) -> list[JobRecord]:
        """All jobs, most recently cached first, optionally capped at limit."""
        if limit is not None:
            cursor = self.conn.execute(
                "SELECT * FROM jobs ORDER BY cached_at DESC LIMIT ?", (limit,)
            )
        else:
            cursor = self.conn.execute("SELECT * FROM jobs ORDER BY cached_at DESC")
        return [row_to_record(row) for row in cursor.fetchall()]

    def query_jobs(
        self,
        keyword: str | None = None,
        location: str | None = None,
        department: str | None = None,
        remote_only: bool = False,
        min_salary: int | None = None,
        favorites_only: bool = False,
        limit: int = 50,
    ) -> list[JobRecord]:
        """
        Query cached jobs with composable filters.

        Args:
            keyword: Case-insensitive match on title, summary or requirements
            location: Case-insensitive partial match on location
            department: Case-insensitive partial match on department
            remote_only: Only remote-eligible jobs
            min_salary: Only jobs whose salary_max reaches this amount
            favorites_only: Only favorited jobs
            limit: Maximum number of results

        Returns:
            Matching jobs, most recently cached first
        """
        where_clauses = []
        params: list = []

        if keyword:
            where_clauses.append(
                "(LOWER(title) LIKE LOWER(?) OR LOWER(summary) LIKE LOWER(?) "
                "OR LOWER(requirements) LIKE LOWER(?))"
            )
            params.extend([f"%{keyword}%"] * 3)

        if location:
            where_clauses.append("LOWER(location) LIKE LOWER(?)")
            params.append(f"%{location}%")

        if department:
            where_clauses.append("LOWER(department) LIKE LOWER(?)")
            params.append(f"%{department}%")

        if remote_only:
            where_clauses.append("is_remote_eligible = 1")

        if min_salary:
            where_clauses.append("salary_max >= ?")
            params.append(min_salary)

        if favorites_only:
            where_clauses.append("is_favorited = 1")

        query = "SELECT * FROM jobs"
        if where_clauses:
            query += " WHERE " + " AND ".join(where_clauses)
        query += " ORDER BY cached_at DESC LIMIT ?"
        params.append(limit)

        cursor = self.conn.execute(query, params)
        return [row_to_record(row) for row in cursor.fetchall()]

    def count(self) -> int:
        """Total number of cached jobs."""
        return self.conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0]

    def get_cache_aggregates(self) -> dict:
        """
        Totals and cached_at range, read in a single statement so the counts
        are consistent with each other.

        Returns:
            Dictionary with total, favorited, oldest_cached_at, newest_cached_at
        """
        row = self.conn.execute(
            """
            SELECT
                COUNT(*),
                COALESCE(SUM(is_favorited), 0),
                MIN(cached_at),
                MAX(cached_at)
            FROM jobs
            """
        ).fetchone()
        return {
            "total": row[0],
            "favorited": row[1],
            "oldest_cached_at": from_iso(row[2]),
            "newest_cached_at": from_iso(row[3]),
        }
