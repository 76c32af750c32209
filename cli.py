# cli.py
import logging

import click

from dlq import list_dead_jobs, requeue_dead_job, rescue_stale_jobs
from models import STATES, ConfigError
from scheduler import enqueue_job
from storage import DuplicateJobError, Storage, StorageError
from supervisor import active_workers, start_workers, stop_workers

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


@click.group()
@click.option("--db", "db_path", envvar="QUEUECTL_DB", default=None, help="Path to the queue database (default: queue.db)")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, db_path, verbose):
    """queuectl - A persistent background job queue"""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    ctx.obj = {"db_path": db_path}


def _db(ctx):
    """Open the store once per invocation; a dead store is a hard error."""
    if "db" not in ctx.obj:
        try:
            ctx.obj["db"] = Storage(ctx.obj["db_path"])
        except StorageError as e:
            raise click.ClickException(str(e)) from e
    return ctx.obj["db"]


def _fmt_job(job):
    run_at = job.run_at or "-"
    return (f"{job.id} | {job.command} | state={job.state} | attempts={job.attempts}/{job.max_retries} "
            f"| priority={job.priority} | run_at={run_at} | updated={job.updated_at}")


# ---------------- Enqueue ----------------
@cli.command()
@click.option("--id", "job_id", required=True, help="Unique job ID")
@click.option("--command", required=True, help="Shell command to run")
@click.option("--timeout", "timeout_ms", default=30000, show_default=True, type=int, help="Job timeout in milliseconds")
@click.option("--priority", default=0, type=int, help="Job priority (higher runs first)")
@click.option("--run-at", default=None, help="ISO timestamp (UTC if no offset) or +seconds delay")
@click.option("--max-retries", default=None, type=int, help="Override the configured max_retries for this job")
@click.pass_context
def enqueue(ctx, job_id, command, timeout_ms, priority, run_at, max_retries):
    """Add a new job to the queue"""
    db = _db(ctx)
    try:
        job = enqueue_job(db, job_id, command, timeout_ms=timeout_ms, priority=priority,
                          run_at=run_at, max_retries=max_retries)
    except DuplicateJobError:
        raise click.ClickException(f"A job with id \"{job_id}\" already exists.")
    except (ValueError, StorageError) as e:
        raise click.ClickException(f"Failed to enqueue job: {e}")
    ra = f", run_at={job.run_at}" if job.run_at else ""
    click.echo(f"✅ Job {job.id} enqueued (priority={job.priority}{ra}).")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--state", default=None, type=click.Choice(STATES), help="Filter jobs by state")
@click.pass_context
def list_jobs(ctx, state):
    """List jobs in the queue"""
    jobs = _db(ctx).list_jobs(state)
    if not jobs:
        click.echo(f"No jobs found with state: {state}" if state else "No jobs found.")
        return
    for job in jobs:
        click.echo(_fmt_job(job))


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show a summary of job states and active workers"""
    counts = _db(ctx).count_by_state()
    click.echo("--- Job Status ---")
    if not counts:
        click.echo("No jobs in the system.")
    for state, count in counts.items():
        click.echo(f"  {state}: {count}")

    pids = active_workers()
    click.echo("--- Active Workers ---")
    click.echo(f"  Count: {len(pids)}")
    for pid in pids:
        click.echo(f"  - worker-{pid}")


# ---------------- Stats ----------------
@cli.command()
@click.pass_context
def stats(ctx):
    """Show job counts and execution time stats"""
    db = _db(ctx)
    click.echo("--- Job Counts ---")
    for state, count in db.count_by_state().items():
        click.echo(f"  {state}: {count}")

    s = db.duration_stats()
    click.echo("--- Execution Stats (Completed Jobs) ---")
    if not s["count"]:
        click.echo("  No completed jobs with stats yet.")
        return
    click.echo(f"  Avg runtime: {s['avg_ms']:.2f} ms")
    click.echo(f"  Min runtime: {s['min_ms']:.2f} ms")
    click.echo(f"  Max runtime: {s['max_ms']:.2f} ms")


@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    job = _db(ctx).get_job(job_id)
    if not job:
        raise click.ClickException(f"Job {job_id} not found.")

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Command: {job.command}")
    click.echo(f"  State: {job.state}")
    click.echo(f"  Attempts: {job.attempts}/{job.max_retries}")
    click.echo(f"  Priority: {job.priority}")
    click.echo(f"  Timeout: {job.job_timeout} ms")
    click.echo(f"  Run at: {job.run_at or '-'}")
    click.echo(f"  Created: {job.created_at}")
    click.echo(f"  Claimed: {job.processing_at or '-'}")
    click.echo(f"  Completed: {job.completed_at or '-'}")
    click.echo(f"  Duration: {job.duration_ms:.2f} ms" if job.duration_ms is not None else "  Duration: -")
    click.echo("  Output:")
    click.echo(job.output or "(no output)")


# ---------------- Worker ----------------
@cli.group()
def worker():
    """Manage worker processes"""


@worker.command("run")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval in seconds (uses config if unset)")
@click.pass_context
def worker_run(ctx, poll_interval):
    """Run one worker in the foreground until SIGTERM/Ctrl+C"""
    from worker import Worker

    w = Worker(db=_db(ctx), poll_interval=poll_interval)
    w.install_signal_handlers()
    try:
        w.run()
    except (StorageError, ConfigError) as e:
        raise click.ClickException(f"{w.worker_id} stopped: {e}") from e


@worker.command("start")
@click.option("--count", default=1, type=click.IntRange(min=1), help="Number of workers to start")
@click.pass_context
def worker_start(ctx, count):
    """Start detached worker processes"""
    _db(ctx)  # fail fast if the store is unusable
    click.echo(f"🚀 Starting {count} worker(s)...")
    for pid in start_workers(count, db_path=ctx.obj["db_path"]):
        click.echo(f"Started worker with PID: {pid}")


@worker.command("stop")
def worker_stop():
    """Stop all workers gracefully (each finishes its current job)"""
    stopped = stop_workers()
    if not stopped:
        click.echo("No workers found to stop.")
        return
    for pid in stopped:
        click.echo(f"🛑 Sent SIGTERM to worker {pid}")


# ---------------- Dead Letter Queue ----------------
@cli.group()
def dlq():
    """Dead Letter Queue operations"""


@dlq.command("list")
@click.pass_context
def dlq_list(ctx):
    """List jobs in DLQ"""
    jobs = list_dead_jobs(_db(ctx))
    if not jobs:
        click.echo("DLQ is empty.")
        return
    for job in jobs:
        click.echo(f"{job.id} | {job.command} | attempts={job.attempts} | error={job.output}")


@dlq.command("retry")
@click.argument("job_id")
@click.pass_context
def dlq_retry(ctx, job_id):
    """Retry a DLQ job by resetting it to pending"""
    if requeue_dead_job(_db(ctx), job_id) is None:
        raise click.ClickException(f"Job \"{job_id}\" not found in DLQ.")
    click.echo(f"♻️ Job {job_id} moved back to pending.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration (max-retries, backoff-base, poll-interval)"""


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    key = _db(ctx).set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx, key):
    """Get a config key"""
    value = _db(ctx).get_config(key)
    click.echo(f"{key}={value}" if value is not None else f"{key} not set")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = _db(ctx).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for key, value, updated_at in rows:
        click.echo(f"{key}={value} (updated_at={updated_at})")


# ---------------- Rescue operations ----------------
@cli.group()
def rescue():
    """Recovery tools for stuck jobs"""


@rescue.command("stale")
@click.option("--older-than-seconds", default=300, type=int, show_default=True, help="Claim age after which a processing job is stale")
@click.pass_context
def rescue_stale(ctx, older_than_seconds):
    """Return jobs stuck in processing to pending"""
    ids = rescue_stale_jobs(_db(ctx), older_than_seconds)
    if not ids:
        click.echo("No stale jobs found.")
        return
    click.echo(f"🔧 Returned {len(ids)} job(s) to pending: {', '.join(ids)}")


# ---------------- Dashboard ----------------
@cli.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=3000, type=int)
@click.pass_context
def dashboard(ctx, host, port):
    """Serve the read-only web dashboard"""
    import uvicorn

    import dashboard as dashboard_app

    dashboard_app._db = _db(ctx)
    uvicorn.run(dashboard_app.app, host=host, port=port)


# ---------------- Entrypoint ----------------
def main():
    try:
        cli()
    except (StorageError, ConfigError) as e:
        logging.getLogger("queuectl").error("%s", e)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
