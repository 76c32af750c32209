# dlq.py
import logging
from datetime import timedelta

from models import DEAD, PENDING, PROCESSING, to_iso, utcnow

logger = logging.getLogger(__name__)


def list_dead_jobs(db):
    return db.list_jobs(DEAD)


def requeue_dead_job(db, job_id, now=None):
    """Move a dead job back to pending with a fresh retry budget.

    Returns the requeued Job, or None if the job is not currently dead
    (missing, or already requeued by an earlier call).
    """
    now_iso = to_iso(now or utcnow())
    job = db.update_job(
        job_id,
        {
            "state": PENDING,
            "attempts": 0,
            "updated_at": now_iso,
            "worker_id": None,
            "processing_at": None,
            "completed_at": None,
        },
        expected_state=DEAD,
    )
    if job:
        logger.info("Job %s: %s → %s (manual requeue, attempts reset)", job_id, DEAD, PENDING)
    return job


def rescue_stale_jobs(db, older_than_seconds, now=None):
    """Return jobs stuck in processing (e.g. after a worker crash) to pending.

    Only jobs claimed more than ``older_than_seconds`` ago are touched; each
    move is guarded on the job still being processing.
    """
    now = now or utcnow()
    cutoff = to_iso(now - timedelta(seconds=older_than_seconds))
    rescued = []
    for job in db.list_jobs(PROCESSING):
        if job.processing_at is None or job.processing_at > cutoff:
            continue
        moved = db.find_one_and_update(
            "id = ? AND state = ? AND processing_at = ?",
            (job.id, PROCESSING, job.processing_at),
            {"state": PENDING, "worker_id": None, "updated_at": to_iso(now)},
        )
        if moved:
            logger.info("Job %s: %s → %s (stale since %s)", job.id, PROCESSING, PENDING, job.processing_at)
            rescued.append(job.id)
    return rescued
