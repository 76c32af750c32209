"""Shared test fixtures."""

from datetime import datetime, timezone

import pytest

from scheduler import claim_next_job, enqueue_job
from storage import Storage

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db(tmp_path):
    storage = Storage(str(tmp_path / "queue.db"))
    yield storage
    storage.close()


@pytest.fixture()
def processing_job(db):
    """Enqueue and claim one job, returning the claimed record."""

    def _make(job_id="job-1", command="false", max_retries=3, now=T0):
        enqueue_job(db, job_id, command, max_retries=max_retries, now=now)
        job = claim_next_job(db, "test-worker", now=now)
        assert job is not None and job.id == job_id
        return job

    return _make
