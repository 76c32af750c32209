# dashboard.py
from html import escape

from fastapi import Depends, FastAPI
from fastapi.responses import HTMLResponse, JSONResponse

from dlq import list_dead_jobs
from storage import Storage

app = FastAPI(title="queuectl dashboard")

RECENT_LIMIT = 10

_db = None


def get_db():
    global _db
    if _db is None:
        _db = Storage()
    return _db


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{escape(title)}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{escape(title)}</h1>
      <div class="navbar">
        <a href="/">Home</a>
        <a href="/dlq">DLQ</a>
        <a href="/api/stats">JSON</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _ms(value):
    return f"{value:.2f} ms" if value is not None else "-"


def _job_rows(jobs):
    rows = ""
    for j in jobs:
        rows += (
            f"<tr><td><a href='/job/{escape(j.id)}'>{escape(j.id)}</a></td><td>{escape(j.command)}</td>"
            f"<td>{j.state}</td><td>{j.attempts}/{j.max_retries}</td><td>{j.priority}</td>"
            f"<td>{j.updated_at}</td></tr>"
        )
    return rows


JOB_TABLE_HEAD = "<tr><th>ID</th><th>Command</th><th>State</th><th>Attempts</th><th>Priority</th><th>Updated</th></tr>"


# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(db: Storage = Depends(get_db)):
    counts = db.count_by_state()
    stats = db.duration_stats()

    cards = "".join(f"<div class='card'><h3>{state}</h3><p>{n}</p></div>" for state, n in counts.items())
    body = f"""
      <h2>Job counts</h2>
      <div class="cards">{cards or "<p class='muted'>No jobs in the system.</p>"}</div>

      <h2>Execution stats (completed jobs)</h2>
      <div class="cards">
        <div class="card"><h3>Avg runtime</h3><p>{_ms(stats["avg_ms"])}</p></div>
        <div class="card"><h3>Min runtime</h3><p>{_ms(stats["min_ms"])}</p></div>
        <div class="card"><h3>Max runtime</h3><p>{_ms(stats["max_ms"])}</p></div>
      </div>

      <h2>Recently updated</h2>
      <table>{JOB_TABLE_HEAD}{_job_rows(db.recent_jobs(RECENT_LIMIT))}</table>
    """
    return page("Queue Dashboard", body)


# ---------- Stats (JSON) ----------
@app.get("/api/stats", response_class=JSONResponse)
def api_stats(db: Storage = Depends(get_db)):
    return {
        "counts": db.count_by_state(),
        "exec_stats": db.duration_stats(),
        "recent_jobs": [j.as_dict() for j in db.recent_jobs(RECENT_LIMIT)],
    }


# ---------- DLQ ----------
@app.get("/dlq", response_class=HTMLResponse)
def dlq_page(db: Storage = Depends(get_db)):
    jobs = list_dead_jobs(db)
    body = "<h2>Dead letter queue</h2>"
    if not jobs:
        body += "<p class='muted'>DLQ is empty.</p>"
    else:
        rows = "".join(
            f"<tr><td><a href='/job/{escape(j.id)}'>{escape(j.id)}</a></td><td>{escape(j.command)}</td>"
            f"<td>{j.attempts}</td><td><pre>{escape(j.output or '-')}</pre></td></tr>"
            for j in jobs
        )
        body += f"<table><tr><th>ID</th><th>Command</th><th>Attempts</th><th>Last error</th></tr>{rows}</table>"
        body += "<p class='muted'>Use `queuectl dlq retry &lt;id&gt;` to requeue.</p>"
    return page("Dead Letter Queue", body)


# ---------- Job detail ----------
@app.get("/job/{job_id}", response_class=HTMLResponse)
def job_detail(job_id: str, db: Storage = Depends(get_db)):
    job = db.get_job(job_id)
    if not job:
        return HTMLResponse(page("Job not found", f"<p>Job {escape(job_id)} not found.</p>"), status_code=404)

    body = f"""
      <h2>Job {escape(job.id)}</h2>
      <div class="cards">
        <div class="card"><b>State</b><p>{job.state}</p></div>
        <div class="card"><b>Attempts</b><p>{job.attempts}/{job.max_retries}</p></div>
        <div class="card"><b>Priority</b><p>{job.priority}</p></div>
        <div class="card"><b>Timeout</b><p>{job.job_timeout} ms</p></div>
        <div class="card"><b>Duration</b><p>{_ms(job.duration_ms)}</p></div>
      </div>

      <h3>Command</h3>
      <pre>{escape(job.command)}</pre>

      <h3>Timestamps</h3>
      <table>
        <tr><th>Created</th><td>{job.created_at}</td></tr>
        <tr><th>Run at</th><td>{job.run_at or '-'}</td></tr>
        <tr><th>Claimed</th><td>{job.processing_at or '-'}</td></tr>
        <tr><th>Completed</th><td>{job.completed_at or '-'}</td></tr>
        <tr><th>Updated</th><td>{job.updated_at}</td></tr>
      </table>

      <h3>Output</h3>
      <pre>{escape(job.output or "(no output)")}</pre>
    """
    return page(f"Job {job.id}", body)
