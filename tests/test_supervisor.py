import os
import signal

from supervisor import active_workers, start_workers, stop_workers


def test_no_workers_recorded(tmp_path):
    assert active_workers(tmp_path) == []
    assert stop_workers(tmp_path) == []


def test_stop_removes_stale_pid_files(tmp_path):
    (tmp_path / "worker-999999.pid").write_text("999999")
    (tmp_path / "worker-bad.pid").write_text("not-a-pid")
    assert active_workers(tmp_path) == [999999]
    assert stop_workers(tmp_path) == []
    assert list(tmp_path.glob("*.pid")) == []


def test_stop_signals_recorded_pids(tmp_path, monkeypatch):
    sent = []
    monkeypatch.setattr(os, "kill", lambda pid, sig: sent.append((pid, sig)))
    (tmp_path / "worker-4242.pid").write_text("4242")
    assert stop_workers(tmp_path) == [4242]
    assert sent == [(4242, signal.SIGTERM)]


def test_start_records_pid_files(tmp_path, monkeypatch):
    spawned = []

    class FakeProc:
        def __init__(self, args, **kwargs):
            self.pid = 1000 + len(spawned)
            spawned.append((args, kwargs))

    monkeypatch.setattr("supervisor.subprocess.Popen", FakeProc)
    pids = start_workers(2, path=tmp_path, db_path=tmp_path / "q.db")
    assert pids == [1000, 1001]
    assert active_workers(tmp_path) == [1000, 1001]
    args, kwargs = spawned[0]
    assert args[-3:] == ["cli", "worker", "run"]
    assert kwargs["env"]["QUEUECTL_DB"] == str(tmp_path / "q.db")
    assert kwargs["start_new_session"] is True
