# supervisor.py
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PID_DIR = ".queuectl_pids"


def pid_dir(path=None):
    d = Path(path or os.environ.get("QUEUECTL_PID_DIR", DEFAULT_PID_DIR))
    d.mkdir(parents=True, exist_ok=True)
    return d


def start_workers(count, path=None, db_path=None):
    """Spawn ``count`` detached worker processes and record their pids."""
    d = pid_dir(path)
    env = dict(os.environ)
    if db_path:
        env["QUEUECTL_DB"] = str(db_path)
    cli_dir = str(Path(__file__).resolve().parent)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (cli_dir, env.get("PYTHONPATH")) if p)

    pids = []
    with open(d / "workers.log", "a") as log:
        for _ in range(count):
            proc = subprocess.Popen(
                [sys.executable, "-m", "cli", "worker", "run"],
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=log,
                env=env,
                start_new_session=True,
            )
            (d / f"worker-{proc.pid}.pid").write_text(str(proc.pid))
            logger.info("Started worker with PID %s", proc.pid)
            pids.append(proc.pid)
    return pids


def active_workers(path=None):
    pids = []
    for f in sorted(pid_dir(path).glob("worker-*.pid")):
        try:
            pids.append(int(f.read_text().strip()))
        except ValueError:
            logger.warning("Ignoring unreadable pid file %s", f)
    return pids


def stop_workers(path=None):
    """SIGTERM every recorded worker; workers finish their current job first.

    Pid files are removed whether or not the process was still alive.
    Returns the pids that were signalled.
    """
    stopped = []
    for f in sorted(pid_dir(path).glob("worker-*.pid")):
        try:
            pid = int(f.read_text().strip())
            os.kill(pid, signal.SIGTERM)
            stopped.append(pid)
            logger.info("Sent SIGTERM to worker %s", pid)
        except (ValueError, ProcessLookupError, PermissionError) as e:
            logger.warning("Error stopping worker (file: %s): %s. Removing stale file.", f.name, e)
        f.unlink(missing_ok=True)
    return stopped
