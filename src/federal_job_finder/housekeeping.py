"""Cache statistics and age-based eviction over the local job store."""

from datetime import datetime, timedelta

from loguru import logger

from federal_job_finder.db import JobDatabase
from federal_job_finder.models import CacheStatistics


class CacheHousekeeper:
    """Read-side aggregation plus eviction. Holds no state of its own."""

    def __init__(self, db: JobDatabase, max_age: timedelta = timedelta(days=7)):
        self.db = db
        self.max_age = max_age

    def get_statistics(self, last_sync_date: datetime | None = None) -> CacheStatistics:
        aggregates = self.db.get_cache_aggregates()
        total = aggregates["total"]
        favorited = aggregates["favorited"]
        return CacheStatistics(
            total_cached_jobs=total,
            favorited_jobs=favorited,
            non_favorited_jobs=total - favorited,
            oldest_cache_date=aggregates["oldest_cached_at"],
            newest_cache_date=aggregates["newest_cached_at"],
            last_sync_date=last_sync_date,
        )

    def evict_expired(self, max_age: timedelta | None = None) -> int:
        return self.db.delete_expired(self.max_age if max_age is None else max_age)

    def run(self) -> dict[str, int]:
        """Evict non-favorited entries older than max_age."""
        evicted = self.evict_expired()
        logger.info(f"Housekeeping evicted {evicted} expired jobs")
        return {"evicted": evicted}

    def clear_all(self, last_sync_date: datetime | None = None) -> CacheStatistics:
        """Drop every non-favorited job and return the recomputed statistics."""
        self.db.clear_all_except_favorites()
        return self.get_statistics(last_sync_date)
