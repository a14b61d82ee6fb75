import ast
import sys
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, Set

import pytest

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "manageability").absolute()

_EXECUTED: Dict[Path, Set[int]] = defaultdict(set)
_STATEMENTS: Dict[Path, Set[int]] = {}
_SAVED_TRACE = None
_SAVED_THREAD_TRACE = None
_TRACING = False


def _package_files(directory: Path) -> Iterable[Path]:
    for path in sorted(directory.rglob("*.py")):
        if path.is_file():
            yield path.absolute()


def _statement_lines(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()
    source_lines = source.splitlines()
    lines: Set[int] = set()
    for node in ast.walk(tree):
        if not isinstance(node, ast.stmt):
            continue
        start = node.lineno
        end = getattr(node, "end_lineno", None) or start
        for lineno in range(start, min(end, len(source_lines)) + 1):
            text = source_lines[lineno - 1].strip()
            if text and not text.startswith("#"):
                lines.add(lineno)
    return lines


for _path in _package_files(_PACKAGE_DIR):
    _STATEMENTS[_path] = _statement_lines(_path)


def _trace(frame, event, arg):
    if event == "line":
        filename = Path(frame.f_code.co_filename).absolute()
        if filename in _STATEMENTS:
            _EXECUTED[filename].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    global _SAVED_TRACE, _SAVED_THREAD_TRACE, _TRACING
    if _TRACING:
        return
    _TRACING = True
    _EXECUTED.clear()
    _SAVED_TRACE = sys.gettrace()
    _SAVED_THREAD_TRACE = threading.gettrace()
    sys.settrace(_trace)
    # the deactivation worker runs on its own thread
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    global _TRACING
    if not _TRACING:
        return
    _TRACING = False
    sys.settrace(_SAVED_TRACE)
    threading.settrace(_SAVED_THREAD_TRACE)
    _report(session)


def _report(session) -> None:
    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print

    total = hit = 0
    write_line("")
    write_line("Coverage summary for 'manageability':")
    header = f"{'Name':<48} {'Stmts':>6} {'Miss':>6} {'Cover':>7}"
    write_line(header)
    write_line("-" * len(header))
    for path, candidates in sorted(_STATEMENTS.items()):
        if not candidates:
            continue
        missing = sorted(candidates - _EXECUTED.get(path, set()))
        covered = len(candidates) - len(missing)
        total += len(candidates)
        hit += covered
        name = str(path.relative_to(_ROOT_DIR))
        write_line(f"{name:<48} {len(candidates):>6} {len(missing):>6} {covered / len(candidates) * 100.0:>6.1f}%")
        if missing:
            more = "..." if len(missing) > 10 else ""
            write_line(f"    Missing: {', '.join(map(str, missing[:10]))}{more}")
    if total:
        write_line("-" * len(header))
        write_line(f"{'TOTAL':<48} {total:>6} {total - hit:>6} {hit / total * 100.0:>6.1f}%")


# Shared fakes. Package imports stay inside the fixtures so module bodies are
# imported after the tracer is installed.


def amtinfo_text(ras="not connected", features="AMT Pro Corporate", mode="pre-provisioning state"):
    return (
        "Version                : 16.1.27\n"
        "Build Number           : 2176\n"
        f"Features               : {features}\n"
        f"Control Mode           : {mode}\n"
        "DNS Suffix             : \n"
        f"RAS Remote Status      : {ras}\n"
    )


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path, monkeypatch):
    from manageability import executil

    log_dir = tmp_path / "pma-logs"
    monkeypatch.setattr(executil, "LOG_DIRS", [str(log_dir)])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(executil, "LOG_LEVEL", "TRACE")
    monkeypatch.setattr(executil, "ECHO_STDERR", False)
    return log_dir / executil.LOG_FILENAME


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeTool:
    """Scriptable stand-in for RpcTool.

    ``ras`` is what amtinfo reports; entries queued in ``amtinfo_script`` take
    precedence (a string is a RAS value, an exception is raised).
    """

    def __init__(self, ras="not connected"):
        self.ras = ras
        self.features = "AMT Pro Corporate"
        self.amtinfo_script = []
        self.activate_output = 'time="..." level=info msg="CIRA: Configured"'
        self.activate_error = None
        self.ras_after_activate = "connecting"
        self.deactivate_error = None
        self.ras_after_deactivate = "not connected"
        self.calls = []

    def amtinfo(self, deadline=None):
        self.calls.append(("amtinfo",))
        if self.amtinfo_script:
            item = self.amtinfo_script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return amtinfo_text(item, self.features)
        return amtinfo_text(self.ras, self.features)

    def activate(self, rps_url, profile, password, deadline=None):
        self.calls.append(("activate", rps_url, profile, password))
        if self.activate_error is not None:
            raise self.activate_error
        if self.ras_after_activate is not None:
            self.ras = self.ras_after_activate
        return self.activate_output

    def deactivate(self, rps_url, password, deadline=None):
        self.calls.append(("deactivate", rps_url, password))
        if self.deactivate_error is not None:
            raise self.deactivate_error
        self.ras = self.ras_after_deactivate
        return "deactivation successful"

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def tool():
    return FakeTool()


@pytest.fixture
def dm():
    from manageability.model import ActivationIntent, Operation

    class FakeDM:
        def __init__(self):
            self.operation = Operation.ACTIVATE
            self.profile = "edge-profile"
            self.password = "s3cret"
            self.intent_error = None
            self.amt_error = None
            self.result_error = None
            self.amt_reports = []
            self.results = []

        def report_amt_status(self, host_id, status, feature, deadline=None):
            self.amt_reports.append((host_id, status, feature))
            if self.amt_error is not None:
                raise self.amt_error

        def retrieve_activation_details(self, host_id, deadline=None):
            if self.intent_error is not None:
                raise self.intent_error
            return ActivationIntent(host_id, self.operation, self.profile, self.password)

        def report_activation_results(self, host_id, status, deadline=None):
            self.results.append((host_id, status))
            if self.result_error is not None:
                raise self.result_error

    return FakeDM()


@pytest.fixture
def workers():
    """Worker factory that records workers and leaves them unstarted.

    Tests drive ``run()`` themselves, which keeps interleavings deterministic.
    """
    from manageability.deactivation import DeactivationWorker

    class DeferredWorker(DeactivationWorker):
        def start(self):
            self.started = True
            return self

    class Factory:
        def __init__(self):
            self.created = []

        def __call__(self, *args, **kwargs):
            kwargs.setdefault("poll_timeout", 0.5)
            kwargs.setdefault("poll_initial", 0.0)
            kwargs.setdefault("poll_max", 0.0)
            worker = DeferredWorker(*args, **kwargs)
            worker.started = False
            self.created.append(worker)
            return worker

        @property
        def last(self):
            return self.created[-1] if self.created else None

    return Factory()


@pytest.fixture
def config():
    from manageability.config import config_from_dict

    return config_from_dict(
        {
            "GUID": "host-guid-1",
            "manageability": {
                "serviceURL": "dm.example.com:443",
                "rpsAddress": "rps.example.com",
                "heartbeatInterval": "10s",
            },
        }
    )


@pytest.fixture
def controller(tool, dm, clock, workers):
    from manageability.controller import ActivationController

    return ActivationController(tool, dm, clock=clock, worker_factory=workers)
