# retry.py
import logging
from datetime import timedelta

from models import DEAD, FAILED, PENDING, PROCESSING, QueueConfig, parse_iso, to_iso, utcnow
from storage import SQL

logger = logging.getLogger(__name__)


def backoff_delay(base, attempts):
    """Seconds a failed job waits before it may be retried: base ** attempts."""
    return base ** attempts


def retry_eligible_at(job, base):
    """When a failed job may be retried, or None if that is beyond any datetime."""
    try:
        return parse_iso(job.updated_at) + timedelta(seconds=backoff_delay(base, job.attempts))
    except OverflowError:
        return None


def record_failure(db, job, detail, now=None):
    """Count a failed attempt and decide failed vs dead in one update.

    This is the only place a job becomes dead: when the incremented
    attempts reach the job's max_retries.
    """
    now_iso = to_iso(now or utcnow())
    updated = db.update_job(
        job.id,
        {
            "attempts": SQL("attempts + 1"),
            "state": SQL(f"CASE WHEN attempts + 1 >= max_retries THEN '{DEAD}' ELSE '{FAILED}' END"),
            "output": detail,
            "updated_at": now_iso,
        },
        expected_state=PROCESSING,
    )
    if updated is None:
        logger.warning("Job %s was no longer processing; failure not recorded", job.id)
        return None
    if updated.state == DEAD:
        logger.error("Job %s: %s → %s (attempts=%s/%s, error=%s)",
                     updated.id, PROCESSING, DEAD, updated.attempts, updated.max_retries, detail)
    else:
        logger.warning("Job %s: %s → %s (attempts=%s/%s, error=%s)",
                       updated.id, PROCESSING, FAILED, updated.attempts, updated.max_retries, detail)
    return updated


def retry_failed_jobs(db, config=None, now=None):
    """Requeue every failed job whose backoff interval has elapsed.

    Each requeue is guarded on the job still being the failed record that
    was read: if another worker requeued, ran and failed it again meanwhile,
    its backoff restarts and this sweep leaves it alone. Returns the
    requeued ids.
    """
    config = config or QueueConfig.load(db)
    now = now or utcnow()
    requeued = []
    for job in db.list_jobs(FAILED):
        eligible_at = retry_eligible_at(job, config.backoff_base)
        if eligible_at is None or now < eligible_at:
            continue
        moved = db.find_one_and_update(
            "id = ? AND state = ? AND updated_at = ? AND attempts = ?",
            (job.id, FAILED, job.updated_at, job.attempts),
            {"state": PENDING, "updated_at": to_iso(now)},
        )
        if moved:
            logger.info("Job %s: %s → %s (retry after %ss backoff, attempts=%s)",
                        job.id, FAILED, PENDING, backoff_delay(config.backoff_base, job.attempts), job.attempts)
            requeued.append(job.id)
    return requeued
