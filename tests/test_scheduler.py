import threading
from datetime import timedelta

import pytest

from conftest import T0
from models import PENDING, PROCESSING
from scheduler import claim_next_job, enqueue_job, parse_run_at
from storage import DuplicateJobError, Storage


def test_enqueue_defaults(db):
    job = enqueue_job(db, "a", "echo hi", now=T0)
    stored = db.get_job("a")
    assert stored == job
    assert stored.state == PENDING
    assert stored.attempts == 0
    assert stored.priority == 0
    assert stored.job_timeout == 30000
    assert stored.max_retries == 3
    assert stored.run_at is None


def test_enqueue_snapshots_max_retries_from_config(db):
    db.set_config("max-retries", "5")
    assert enqueue_job(db, "a", "true", now=T0).max_retries == 5
    db.set_config("max_retries", "1")
    assert enqueue_job(db, "b", "true", now=T0).max_retries == 1
    assert db.get_job("a").max_retries == 5


def test_enqueue_explicit_max_retries_wins(db):
    db.set_config("max_retries", "5")
    assert enqueue_job(db, "a", "true", max_retries=2, now=T0).max_retries == 2


def test_enqueue_duplicate_id_rejected(db):
    enqueue_job(db, "a", "echo 1", now=T0)
    with pytest.raises(DuplicateJobError):
        enqueue_job(db, "a", "echo 2", now=T0)
    assert db.get_job("a").command == "echo 1"


@pytest.mark.parametrize("kwargs", [
    {"job_id": "", "command": "true"},
    {"job_id": "a", "command": ""},
    {"job_id": "a", "command": "true", "timeout_ms": 0},
    {"job_id": "a", "command": "true", "run_at": "not-a-date"},
    {"job_id": "a", "command": "true", "run_at": "+99999999999999"},
])
def test_enqueue_invalid_input(db, kwargs):
    with pytest.raises(ValueError):
        enqueue_job(db, **kwargs)
    assert db.list_jobs() == []


def test_parse_run_at_forms():
    assert parse_run_at(None) is None
    assert parse_run_at("2026-01-01T12:00:10Z") == "2026-01-01T12:00:10.000000+00:00"
    assert parse_run_at("2026-01-01T14:00:10+02:00") == "2026-01-01T12:00:10.000000+00:00"
    assert parse_run_at("2026-01-01T12:00:10") == "2026-01-01T12:00:10.000000+00:00"
    assert parse_run_at("+30", now=T0) == "2026-01-01T12:00:30.000000+00:00"


def test_claim_empty_queue(db):
    assert claim_next_job(db, "w1", now=T0) is None


def test_claim_marks_processing(db):
    enqueue_job(db, "a", "true", now=T0)
    job = claim_next_job(db, "w1", now=T0 + timedelta(seconds=1))
    assert job.state == PROCESSING
    assert job.worker_id == "w1"
    assert job.processing_at == "2026-01-01T12:00:01.000000+00:00"
    assert job.updated_at == job.processing_at
    assert claim_next_job(db, "w2", now=T0 + timedelta(seconds=2)) is None


def test_claim_prefers_higher_priority(db):
    enqueue_job(db, "A", "true", priority=5, now=T0)
    enqueue_job(db, "B", "true", priority=1, now=T0 + timedelta(seconds=1))
    enqueue_job(db, "C", "true", priority=9, now=T0 + timedelta(seconds=2))
    later = T0 + timedelta(seconds=3)
    assert [claim_next_job(db, now=later).id for _ in range(3)] == ["C", "A", "B"]


def test_claim_oldest_first_within_priority(db):
    enqueue_job(db, "new", "true", priority=1, now=T0 + timedelta(seconds=5))
    enqueue_job(db, "old", "true", priority=1, now=T0)
    enqueue_job(db, "low", "true", priority=-1, now=T0 - timedelta(seconds=5))
    later = T0 + timedelta(seconds=10)
    assert [claim_next_job(db, now=later).id for _ in range(3)] == ["old", "new", "low"]


def test_claim_respects_run_at(db):
    enqueue_job(db, "later", "true", run_at="+10", now=T0)
    assert claim_next_job(db, now=T0 + timedelta(seconds=5)) is None
    assert db.get_job("later").state == PENDING
    assert claim_next_job(db, now=T0 + timedelta(seconds=10)).id == "later"


def test_future_job_does_not_block_eligible_lower_priority(db):
    enqueue_job(db, "future", "true", priority=10, run_at="+60", now=T0)
    enqueue_job(db, "now", "true", priority=0, now=T0)
    assert claim_next_job(db, now=T0 + timedelta(seconds=1)).id == "now"
    assert claim_next_job(db, now=T0 + timedelta(seconds=61)).id == "future"


def test_concurrent_claims_never_share_a_job(db):
    for i in range(30):
        enqueue_job(db, f"job-{i:02d}", "true", now=T0 + timedelta(milliseconds=i))

    n_workers = 8
    barrier = threading.Barrier(n_workers)
    claimed = [[] for _ in range(n_workers)]
    errors = []

    def claim_all(idx):
        storage = Storage(db.db_path)
        try:
            barrier.wait()
            while True:
                job = claim_next_job(storage, f"w{idx}")
                if job is None:
                    break
                claimed[idx].append(job.id)
        except Exception as e:  # noqa: BLE001
            errors.append(e)
        finally:
            storage.close()

    threads = [threading.Thread(target=claim_all, args=(i,)) for i in range(n_workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    all_ids = [job_id for ids in claimed for job_id in ids]
    assert len(all_ids) == 30
    assert len(set(all_ids)) == 30
    assert db.count_by_state() == {PROCESSING: 30}
