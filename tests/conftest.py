"""Shared fixtures: a controllable clock, job factory and temporary stores"""

from datetime import datetime, timedelta, timezone

import pytest

from federal_job_finder.db import JobDatabase
from federal_job_finder.models import JobRecord
from federal_job_finder.state import SyncStateStore


class FakeClock:
    """Mutable UTC clock for deterministic cached_at values"""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def rewind(self, **kwargs) -> datetime:
        self.now = self.now - timedelta(**kwargs)
        return self.now


def make_job(job_id: str = "100", **overrides) -> JobRecord:
    """Build a JobRecord with realistic defaults"""
    data = {
        "job_id": job_id,
        "title": f"IT Specialist {job_id}",
        "department": "Department of Veterans Affairs",
        "location": "Washington, DC",
        "salary_min": 85000,
        "salary_max": 120000,
        "grade": "12",
        "application_url": f"https://www.usajobs.gov/job/{job_id}",
        "summary": "Supports enterprise infrastructure.",
    }
    data.update(overrides)
    return JobRecord(**data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path, clock):
    """On-disk JobDatabase with the schema created"""
    database = JobDatabase(tmp_path / "jobs.db", clock=clock)
    database.initialize_schema()
    yield database
    database.close()


@pytest.fixture
def state_store(tmp_path):
    return SyncStateStore(tmp_path / "sync_state.jsonl")
