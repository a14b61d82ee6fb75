from __future__ import annotations

"""Subprocess wrapper, JSONL trace logging and retry helpers."""

import datetime as _dt
import json
import os
import subprocess
import sys
import time
from typing import Callable, Sequence

from .paths import pma_logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_FILENAME = "pma.jsonl"

LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("PMA_LOG_LEVEL", "INFO").upper()
ECHO_STDERR = False


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        pma_logs_dir(),
        "/var/log/platform-manageability-agent",
        "/tmp/pma-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_FILENAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def set_level(level: str) -> bool:
    """Set the trace threshold; returns False for an unknown level name."""
    global LOG_LEVEL
    name = (level or "").strip().upper()
    if name == "WARNING":
        name = "WARN"
    if name not in LEVELS:
        return False
    LOG_LEVEL = name
    return True


def _write_jsonl(obj: dict):
    line = json.dumps(obj, default=str)
    path = _ensure_logger()
    try:
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
    except OSError:
        pass
    if ECHO_STDERR:
        print(line, file=sys.stderr)


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def debug(event: str, **fields):
    log("DEBUG", event, **fields)


def info(event: str, **fields):
    log("INFO", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def error(event: str, **fields):
    log("ERROR", event, **fields)


class Result:
    def __init__(self, rc: int, out: str, duration: float):
        self.rc, self.out, self.duration = rc, out, duration


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float | None = 60.0,
    env: dict | None = None,
) -> Result:
    """Run ``cmd`` with stdout and stderr merged.

    Raises ``subprocess.CalledProcessError`` on a non-zero exit when ``check``
    is set and lets ``subprocess.TimeoutExpired`` propagate; both carry the
    combined output captured so far.
    """
    trace("exec.start", cmd=list(cmd), timeout=timeout)
    started = time.monotonic()
    env2 = (env or os.environ).copy()
    try:
        proc = subprocess.run(
            list(cmd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            env=env2,
        )
    except subprocess.TimeoutExpired as exc:
        dur = time.monotonic() - started
        warn("exec.timeout", cmd=list(cmd), dur=dur, timeout=timeout)
        exc.output = _as_text(exc.output)
        raise
    dur = time.monotonic() - started
    out = _as_text(proc.stdout)
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), out)
    return Result(proc.returncode, out, dur)


def with_backoff(
    fn: Callable,
    tries: int | None = 3,
    base: float = 0.5,
    max_delay: float = 4.0,
    deadline=None,
):
    """Call ``fn`` until it returns without raising.

    Delays start at ``base`` and double up to ``max_delay``. The loop ends
    after ``tries`` attempts or, when a deadline is given, once it has run
    out; the last exception is re-raised either way.
    """
    delay = base
    attempt = 0
    last = None
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            last = e
        if tries is not None and attempt >= max(1, tries):
            break
        if deadline is not None:
            if not deadline.sleep(delay):
                break
        else:
            time.sleep(delay)
        delay = min(max_delay, delay * 2)
    raise last

