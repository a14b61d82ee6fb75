import json
import subprocess
from types import SimpleNamespace

import pytest

from manageability import executil
from manageability.deadline import Deadline


def _records(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def test_log_writes_jsonl_records(isolated_logs):
    executil.info("agent.start", version="0.1.0")
    executil.trace("exec.start", cmd=["rpc", "amtinfo"])

    data = _records(isolated_logs)
    assert [r["event"] for r in data] == ["agent.start", "exec.start"]
    assert data[0]["level"] == "INFO"
    assert data[0]["version"] == "0.1.0"
    assert data[0]["ts"].endswith("Z")


def test_level_threshold_filters(isolated_logs, monkeypatch):
    assert executil.set_level("warning")
    assert executil.LOG_LEVEL == "WARN"
    executil.debug("quiet")
    executil.error("loud")
    assert [r["event"] for r in _records(isolated_logs)] == ["loud"]
    assert executil.set_level("verbose") is False


def test_echo_to_stderr(monkeypatch, capsys):
    monkeypatch.setattr(executil, "ECHO_STDERR", True)
    executil.warn("dm.connect_retry", retry_in=10.0)
    assert '"event": "dm.connect_retry"' in capsys.readouterr().err


def test_log_dirs_fall_back_when_unwritable(tmp_path, monkeypatch):
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    monkeypatch.setattr(executil, "LOG_DIRS", [str(blocker / "sub"), str(tmp_path / "ok")])
    assert executil.resolve_log_path() == str(tmp_path / "ok" / executil.LOG_FILENAME)


def test_run_merges_output_and_raises(monkeypatch):
    seen = {}

    def fake_run(cmd, stdout=None, stderr=None, text=True, timeout=None, env=None):
        seen["stderr"] = stderr
        return SimpleNamespace(returncode=3, stdout="bad things")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    with pytest.raises(subprocess.CalledProcessError) as info:
        executil.run(["rpc", "amtinfo"])
    assert info.value.output == "bad things"
    assert seen["stderr"] == subprocess.STDOUT

    result = executil.run(["rpc", "amtinfo"], check=False)
    assert (result.rc, result.out) == (3, "bad things")


def test_run_timeout_decodes_partial_output(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"], output=b"half")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    with pytest.raises(subprocess.TimeoutExpired) as info:
        executil.run(["rpc", "activate"], timeout=1)
    assert info.value.output == "half"


def test_with_backoff_eventually_succeeds():
    attempts = {"count": 0}

    def flaky():
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise RuntimeError("try again")
        return "ok"

    assert executil.with_backoff(flaky, tries=5, base=0.001, max_delay=0.001) == "ok"

    def always_fail():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        executil.with_backoff(always_fail, tries=2, base=0.0, max_delay=0.0)


def test_with_backoff_until_deadline():
    calls = []

    def never():
        calls.append(1)
        raise ValueError("still waiting")

    with pytest.raises(ValueError):
        executil.with_backoff(never, tries=None, base=0.01, max_delay=0.02, deadline=Deadline(0.1))
    assert len(calls) >= 2

