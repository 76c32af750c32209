# executor.py
import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from typing import Optional

from models import COMPLETED, PROCESSING, to_iso, utcnow
from retry import record_failure

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None   # timeout or spawn failure

    @property
    def ok(self):
        return self.error is None and self.exit_code == 0

    def failure_detail(self):
        if self.error:
            return self.error
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.exit_code}"


def run_command(command, timeout_ms):
    """Run a shell command, blocking until it exits or the timeout fires."""
    timeout = timeout_ms / 1000.0 if timeout_ms else None
    try:
        # Own session: a Ctrl+C aimed at the worker must not kill the job,
        # and a timeout must take down the whole process group.
        proc = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except OSError as e:
        return ExecutionResult(exit_code=None, error=f"failed to start command: {e}")
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        stdout, stderr = proc.communicate()
        return ExecutionResult(exit_code=None, stdout=stdout or "", stderr=stderr or "",
                               error=f"timed out after {timeout_ms}ms")
    return ExecutionResult(exit_code=proc.returncode, stdout=stdout or "", stderr=stderr or "")


def execute_job(db, job, now=None):
    """Run a claimed job and record its outcome. Returns the updated Job."""
    logger.debug("Executing job %s: %s", job.id, job.command)
    result = run_command(job.command, job.job_timeout)
    finished = now or utcnow()

    if not result.ok:
        return record_failure(db, job, result.failure_detail(), now=finished)

    now_iso = to_iso(finished)
    updated = db.update_job(
        job.id,
        {"state": COMPLETED, "output": result.stdout, "completed_at": now_iso, "updated_at": now_iso},
        expected_state=PROCESSING,
    )
    if updated:
        logger.info("Job %s: %s → %s (exit_code=0, duration=%.3fs)",
                    job.id, PROCESSING, COMPLETED, (updated.duration_ms or 0) / 1000.0)
    else:
        logger.warning("Job %s was no longer processing; completion not recorded", job.id)
    return updated
