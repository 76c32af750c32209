from datetime import timedelta

import pytest

from conftest import T0
from models import COMPLETED, PENDING, Job, to_iso
from scheduler import enqueue_job
from storage import SQL, DuplicateJobError, Storage, StorageError


def test_open_unusable_path_raises_storage_error(tmp_path):
    with pytest.raises(StorageError):
        Storage(str(tmp_path / "missing-dir" / "queue.db"))


def test_insert_and_get_round_trip(db):
    job = Job(id="a", command="echo 1", priority=3, created_at=to_iso(T0), updated_at=to_iso(T0))
    db.insert_job(job)
    assert db.get_job("a") == job
    assert db.get_job("nope") is None


def test_duplicate_insert_is_distinct_error(db):
    db.insert_job(Job(id="a", command="x"))
    with pytest.raises(DuplicateJobError) as exc:
        db.insert_job(Job(id="a", command="y"))
    assert exc.value.job_id == "a"


def test_other_insert_failures_are_plain_storage_errors(db):
    with pytest.raises(StorageError) as exc:
        db.insert_job(Job(id="a", command=None))
    assert not isinstance(exc.value, DuplicateJobError)


def test_find_one_and_update_respects_order_and_filter(db):
    for job_id, prio in (("a", 1), ("b", 7), ("c", 7)):
        db.insert_job(Job(id=job_id, command="true", priority=prio))
    picked = db.find_one_and_update("state = ?", (PENDING,), {"output": "picked"},
                                    order_by="priority DESC, rowid ASC")
    assert picked.id == "b"
    assert picked.output == "picked"
    assert db.find_one_and_update("state = ?", ("nothing",), {"output": "x"}) is None


def test_find_one_and_update_raw_expression(db):
    db.insert_job(Job(id="a", command="true", attempts=2))
    job = db.update_job("a", {"attempts": SQL("attempts + 1")})
    assert job.attempts == 3


def test_update_job_rejects_unknown_column(db):
    db.insert_job(Job(id="a", command="true"))
    with pytest.raises(ValueError):
        db.update_job("a", {"nonsense": 1})


def test_update_job_state_guard(db):
    db.insert_job(Job(id="a", command="true"))
    assert db.update_job("a", {"output": "x"}, expected_state=COMPLETED) is None
    assert db.update_job("a", {"output": "x"}, expected_state=PENDING).output == "x"


def test_list_and_count(db):
    enqueue_job(db, "a", "true", now=T0)
    enqueue_job(db, "b", "true", now=T0 + timedelta(seconds=1))
    db.update_job("b", {"state": COMPLETED})
    assert [j.id for j in db.list_jobs()] == ["a", "b"]
    assert [j.id for j in db.list_jobs(PENDING)] == ["a"]
    assert db.count_by_state() == {COMPLETED: 1, PENDING: 1}


def test_duration_stats(db):
    assert db.duration_stats() == {"count": 0, "min_ms": None, "avg_ms": None, "max_ms": None}
    for job_id, ms in (("a", 100), ("b", 300)):
        db.insert_job(Job(
            id=job_id, command="true", state=COMPLETED,
            processing_at=to_iso(T0), completed_at=to_iso(T0 + timedelta(milliseconds=ms)),
        ))
    db.insert_job(Job(id="c", command="true", processing_at=to_iso(T0)))
    assert db.duration_stats() == {"count": 2, "min_ms": 100.0, "avg_ms": 200.0, "max_ms": 300.0}


def test_recent_jobs_orders_by_updated_at(db):
    for job_id, offset in (("old", 0), ("newest", 20), ("middle", 10)):
        db.insert_job(Job(id=job_id, command="true", updated_at=to_iso(T0 + timedelta(seconds=offset))))
    assert [j.id for j in db.recent_jobs(2)] == ["newest", "middle"]


def test_config_upsert_and_key_normalisation(db):
    assert db.get_config("max_retries") is None
    assert db.get_config("max_retries", default="3") == "3"
    assert db.set_config("max-retries", 5) == "max_retries"
    db.set_config("max_retries", "7")
    assert db.get_config("max-retries") == "7"
    assert [(k, v) for k, v, _ in db.list_config()] == [("max_retries", "7")]
