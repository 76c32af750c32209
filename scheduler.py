# scheduler.py
import logging
from datetime import timedelta

from models import DEFAULT_TIMEOUT_MS, PENDING, PROCESSING, Job, QueueConfig, parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

# Highest priority first, then oldest; rowid breaks ties within one timestamp.
CLAIM_ORDER = "priority DESC, created_at ASC, rowid ASC"


def parse_run_at(run_at, now=None):
    """Accept an ISO timestamp (UTC if naive) or ``+N`` seconds from now."""
    if run_at is None or run_at == "":
        return None
    now = now or utcnow()
    if run_at.startswith("+"):
        try:
            delay = int(run_at[1:])
        except ValueError:
            raise ValueError(f"Invalid run_at value: {run_at}") from None
        try:
            return to_iso(now + timedelta(seconds=delay))
        except OverflowError:
            raise ValueError(f"run_at is too far in the future: {run_at}") from None
    try:
        return to_iso(parse_iso(run_at))
    except ValueError:
        raise ValueError(f"Invalid run_at value: {run_at}") from None


def enqueue_job(db, job_id, command, timeout_ms=DEFAULT_TIMEOUT_MS, priority=0,
                run_at=None, max_retries=None, now=None):
    """Submit a new pending job.

    max_retries is snapshotted from the config store unless given explicitly.
    Raises DuplicateJobError if the id is taken, ValueError on bad input.
    """
    if not job_id:
        raise ValueError("Job id is required")
    if not command:
        raise ValueError("Job command is required")
    if timeout_ms is None:
        timeout_ms = DEFAULT_TIMEOUT_MS
    if int(timeout_ms) <= 0:
        raise ValueError(f"Job timeout must be positive, got {timeout_ms}")

    now = now or utcnow()
    if max_retries is None:
        max_retries = QueueConfig.load(db).max_retries
    now_iso = to_iso(now)
    job = Job(
        id=job_id,
        command=command,
        state=PENDING,
        priority=int(priority or 0),
        run_at=parse_run_at(run_at, now),
        attempts=0,
        max_retries=int(max_retries),
        job_timeout=int(timeout_ms),
        created_at=now_iso,
        updated_at=now_iso,
    )
    db.insert_job(job)
    logger.info("Job %s enqueued (priority=%s, run_at=%s, max_retries=%s)",
                job.id, job.priority, job.run_at or "-", job.max_retries)
    return job


def claim_next_job(db, worker_id=None, now=None):
    """Atomically move the best eligible pending job to processing.

    Returns the claimed Job, or None when nothing is eligible or another
    worker won the race.
    """
    now_iso = to_iso(now or utcnow())
    job = db.find_one_and_update(
        "state = ? AND (run_at IS NULL OR run_at <= ?)",
        (PENDING, now_iso),
        {
            "state": PROCESSING,
            "processing_at": now_iso,
            "updated_at": now_iso,
            "worker_id": worker_id,
            "completed_at": None,
        },
        order_by=CLAIM_ORDER,
    )
    if job:
        logger.info("Job %s: %s → %s (claimed by %s)", job.id, PENDING, PROCESSING, worker_id or "-")
    return job
