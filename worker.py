# worker.py
import logging
import os
import signal
import threading
import uuid

from executor import execute_job
from models import QueueConfig
from retry import retry_failed_jobs
from scheduler import claim_next_job
from storage import Storage

logger = logging.getLogger(__name__)


class Worker:
    """One single-threaded poll loop: claim and execute, or sweep retries and idle.

    Workers share nothing but the job store. Stopping is cooperative: the
    stop event is checked between jobs, so an in-flight job always runs to
    completion or timeout first.
    """

    def __init__(self, db=None, worker_id=None, poll_interval=None, stop_event=None):
        self.db = db or Storage()
        self.worker_id = worker_id or f"worker-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self.poll_interval = poll_interval
        self.stop_event = stop_event or threading.Event()
        self.config = None

    def install_signal_handlers(self):
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._on_signal)

    def _on_signal(self, signum, frame):
        logger.info("%s received %s, finishing current job before exit", self.worker_id, signal.Signals(signum).name)
        self.stop_event.set()

    def stop(self):
        self.stop_event.set()

    def run_once(self, now=None):
        """One poll cycle without the idle wait. Returns the executed Job or None."""
        job = claim_next_job(self.db, self.worker_id, now=now)
        if job:
            return execute_job(self.db, job) or job
        self.config = QueueConfig.load(self.db)
        retry_failed_jobs(self.db, self.config, now=now)
        return None

    def run(self):
        logger.info("%s started (db=%s)", self.worker_id, self.db.db_path)
        while not self.stop_event.is_set():
            if self.run_once() is not None:
                continue
            self.stop_event.wait(self.poll_interval or self.config.poll_interval)
        logger.info("%s stopped", self.worker_id)
