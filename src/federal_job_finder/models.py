"""Pydantic models for cached jobs, search requests and sync metadata"""

import math
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord(BaseModel):
    """Cached representation of one job posting.

    ``job_id`` is the only identity; every other field is refreshed whenever
    fresher data for the same posting arrives.
    """

    job_id: str
    title: str | None = None
    department: str | None = None
    location: str | None = None

    salary_min: int = Field(default=0, ge=0)  # 0 means unknown
    salary_max: int = Field(default=0, ge=0)

    date_posted: datetime | None = None
    application_deadline: datetime | None = None
    cached_at: datetime | None = None

    is_favorited: bool = False
    is_remote_eligible: bool = False

    grade: str | None = None
    application_url: str | None = None
    summary: str | None = None
    requirements: str | None = None
    major_duties: str | None = None

    @property
    def is_expired(self) -> bool:
        if self.application_deadline is None:
            return False
        return utcnow() > self.application_deadline

    @property
    def days_until_deadline(self) -> int | None:
        if self.application_deadline is None:
            return None
        delta = self.application_deadline - utcnow()
        return math.floor(delta.total_seconds() / 86400)

    @property
    def salary_display(self) -> str:
        if self.salary_min > 0 and self.salary_max > 0:
            return f"${self.salary_min:,} - ${self.salary_max:,}"
        if self.salary_min > 0:
            return f"${self.salary_min:,}+"
        if self.salary_max > 0:
            return f"Up to ${self.salary_max:,}"
        return "Salary not specified"


class SearchCriteria(BaseModel):
    """Filters and paging for a remote job search."""

    keyword: str | None = None
    location: str | None = None
    department: str | None = None
    salary_min: int | None = None
    salary_max: int | None = None
    remote_only: bool = False
    page: int = Field(default=1, ge=1)
    results_per_page: int = Field(default=25, ge=1, le=500)


class SearchResponse(BaseModel):
    """One page of remote search results."""

    total_count: int = 0
    page: int = 1
    page_size: int = 25
    items: list[JobRecord] = Field(default_factory=list)

    @property
    def has_more_results(self) -> bool:
        return self.page * self.page_size < self.total_count


class SyncState(BaseModel):
    """Process-wide synchronization metadata."""

    is_offline_mode: bool = True
    is_syncing: bool = False
    last_sync_date: datetime | None = None
    has_pending_changes: bool = False


def _relative(moment: datetime, now: datetime) -> str:
    seconds = max(int((now - moment).total_seconds()), 0)
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


class CacheStatistics(BaseModel):
    """Derived snapshot of the local cache, computed on demand."""

    total_cached_jobs: int
    favorited_jobs: int
    non_favorited_jobs: int
    oldest_cache_date: datetime | None = None
    newest_cache_date: datetime | None = None
    last_sync_date: datetime | None = None

    @property
    def cache_age_description(self) -> str:
        if self.oldest_cache_date is None:
            return "No cached data"
        return f"Oldest: {_relative(self.oldest_cache_date, utcnow())}"

    @property
    def last_sync_description(self) -> str:
        if self.last_sync_date is None:
            return "Never synced"
        return f"Last sync: {_relative(self.last_sync_date, utcnow())}"


class ConnectionType(str, Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    UNKNOWN = "unknown"


class ConnectionQuality(str, Enum):
    NONE = "none"
    LIMITED = "limited"
    GOOD = "good"


class OfflineFeature(str, Enum):
    VIEW_FAVORITES = "view_favorites"
    VIEW_CACHED_JOBS = "view_cached_jobs"
    VIEW_APPLICATION_TRACKING = "view_application_tracking"
    VIEW_SAVED_SEARCHES = "view_saved_searches"
    SEARCH_JOBS = "search_jobs"
    APPLY_TO_JOBS = "apply_to_jobs"
