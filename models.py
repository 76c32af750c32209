# models.py
import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Optional

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
DEAD = "dead"

STATES = (PENDING, PROCESSING, COMPLETED, FAILED, DEAD)

DEFAULT_TIMEOUT_MS = 30000


class ConfigError(ValueError):
    """A config value cannot be used; fatal to the worker."""


def utcnow():
    return datetime.now(timezone.utc)


def to_iso(dt):
    """Serialise a datetime as a sortable UTC ISO string.

    Every timestamp in the store goes through here so that plain string
    comparison in SQL matches chronological order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value):
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Job:
    id: str
    command: str
    state: str = PENDING   # pending | processing | completed | failed | dead
    priority: int = 0
    run_at: Optional[str] = None
    attempts: int = 0
    max_retries: int = 3
    job_timeout: int = DEFAULT_TIMEOUT_MS  # milliseconds
    output: Optional[str] = None
    worker_id: Optional[str] = None
    created_at: str = field(default_factory=lambda: to_iso(utcnow()))
    updated_at: str = field(default_factory=lambda: to_iso(utcnow()))
    processing_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        names = {f.name for f in fields(cls)}
        return cls(**{k: row[k] for k in row.keys() if k in names})

    def as_dict(self):
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @property
    def duration_ms(self):
        if not (self.processing_at and self.completed_at):
            return None
        delta = parse_iso(self.completed_at) - parse_iso(self.processing_at)
        return delta.total_seconds() * 1000.0


@dataclass
class QueueConfig:
    max_retries: int = 3
    backoff_base: float = 2
    poll_interval: float = 1.0

    @classmethod
    def load(cls, db):
        """Read the tunables from the config table.

        Called per submission and per retry sweep, never cached across
        poll cycles.
        """
        defaults = cls()
        values = {}
        for name, cast in (("max_retries", int), ("backoff_base", float), ("poll_interval", float)):
            raw = db.get_config(name)
            if raw is None:
                values[name] = getattr(defaults, name)
                continue
            try:
                value = cast(raw)
            except ValueError:
                raise ConfigError(f"config '{name}' has malformed value {raw!r}") from None
            if not math.isfinite(value):
                raise ConfigError(f"config '{name}' must be a finite number, got {raw!r}")
            # max_retries may be 0 (dead on first failure), the rest must be positive
            if value < 0 or (value == 0 and name != "max_retries"):
                raise ConfigError(f"config '{name}' is out of range: {raw!r}")
            values[name] = value
        if values["backoff_base"] == int(values["backoff_base"]):
            values["backoff_base"] = int(values["backoff_base"])
        return cls(**values)
