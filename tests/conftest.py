import sys
import threading
import time

import pytest

from shipyard.config import SchedulerConfig
from shipyard.model import TriggerEvent
from shipyard.scheduler import Scheduler

if sys.platform == "win32":
    collect_ignore_glob = ["test_*.py"]


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def config(tmp_path, workspace):
    return SchedulerConfig(
        workspace=workspace,
        cache_root=tmp_path / "cache",
        logs_dir=tmp_path / "logs",
        max_concurrency=4,
        kill_grace=0.5,
    )


@pytest.fixture
def push_main():
    return TriggerEvent(kind="push", ref="main")


class RecordingSink:
    def __init__(self):
        self.results = []

    def emit(self, result):
        self.results.append(result)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def scheduler(config, sink):
    s = Scheduler(config, report_sink=sink)
    yield s
    s.shutdown(cancel=True, timeout=10)


def wait_until(predicate, timeout=10.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


def run_in_thread(fn, *args, **kwargs):
    box = {}

    def target():
        box["result"] = fn(*args, **kwargs)

    t = threading.Thread(target=target, daemon=True)
    t.start()
    return t, box
