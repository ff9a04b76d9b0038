import itertools
import json
import threading
import time

import pytest

from shared.config import ConfigStore
from shared.models import Provider, RemoteConnection
from streamer.rclone import RcloneCommands
from streamer.registry import RemoteRegistry
from streamer.supervisor import CommandResult

_pids = itertools.count(40000)


class FakeHandle:
    """Stand-in for a supervised process; tests drive its output and exit."""

    def __init__(self, args, name, lines=()):
        self.args = list(args)
        self.name = name
        self.pid = next(_pids)
        self.started_at = time.time()
        self._returncode = None
        self._lines = list(lines)
        self._line_listeners = []
        self._exit_callbacks = []
        self._lock = threading.Lock()
        self._exited = threading.Event()

    @property
    def returncode(self):
        return self._returncode

    def poll(self):
        return self._returncode

    def is_alive(self):
        return self._returncode is None

    def wait(self, timeout=None):
        self._exited.wait(timeout)
        return self._returncode

    def output_tail(self, lines=20):
        return "\n".join(self._lines[-lines:])

    def add_line_listener(self, callback):
        self._line_listeners.append(callback)
        for line in list(self._lines):
            callback(line)

    def add_exit_callback(self, callback):
        with self._lock:
            if not self._exited.is_set():
                self._exit_callbacks.append(callback)
                return
        callback(self)

    def emit(self, line):
        self._lines.append(line)
        for callback in list(self._line_listeners):
            callback(line)

    def exit(self, code=0, lines=()):
        for line in lines:
            self.emit(line)
        with self._lock:
            if self._exited.is_set():
                return
            self._returncode = code
            self._exited.set()
            callbacks = list(self._exit_callbacks)
            self._exit_callbacks.clear()
        for callback in callbacks:
            callback(self)


class FakeSupervisor:
    """Records commands; ``run_handler`` and ``on_spawn`` script the engine."""

    def __init__(self):
        self.runs = []
        self.spawned = []
        self.terminated = []
        self.run_handler = None
        self.on_spawn = None
        self.spawn_error = None
        self._lock = threading.Lock()

    def run(self, args, timeout=None, env=None):
        with self._lock:
            self.runs.append(list(args))
        if self.run_handler is not None:
            return self.run_handler(list(args))
        return result(args=args)

    def spawn(self, args, env=None, name=None):
        if self.spawn_error is not None:
            raise self.spawn_error
        handle = FakeHandle(args, name or args[0])
        with self._lock:
            self.spawned.append(handle)
        if self.on_spawn is not None:
            self.on_spawn(handle)
        return handle

    def terminate(self, handle, grace=None):
        self.terminated.append(handle)
        if handle.is_alive():
            handle.exit(-15)
        return handle.returncode

    def health(self, handle, probe=None):
        if handle is None or not handle.is_alive():
            return False
        if probe is None:
            return True
        try:
            return bool(probe())
        except Exception:
            return False

    def live_handles(self):
        return [h for h in self.spawned if h.is_alive()]

    def shutdown(self):
        for handle in self.live_handles():
            self.terminate(handle)

    def runs_of(self, subcommand):
        return [r for r in self.runs if subcommand in r]


def result(stdout="", stderr="", returncode=0, args=None):
    return CommandResult(args=list(args or []), returncode=returncode,
                         stdout=stdout, stderr=stderr, duration=0.01)


def wait_for(predicate, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


MOVIES_LISTING = json.dumps([
    {"Path": "b.mkv", "Name": "b.mkv", "Size": 2000, "ModTime": "2024-03-02T10:00:00Z", "IsDir": False},
    {"Path": "Sub", "Name": "Sub", "Size": -1, "ModTime": "2024-03-01T10:00:00Z", "IsDir": True},
    {"Path": "a.mkv", "Name": "a.mkv", "Size": 1000, "ModTime": "2024-03-01T09:00:00Z", "IsDir": False},
])


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("CLOUDREEL_CONFIG_DIR", "CLOUDREEL_CACHE_DIR", "CLOUDREEL_RCLONE", "HEADLESS"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def store(tmp_path):
    store = ConfigStore(str(tmp_path / "config"))
    store.load()
    store.update(cache_dir=str(tmp_path / "cache"))
    return store


@pytest.fixture
def registry(store):
    return RemoteRegistry(store)


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def commands(store):
    return RcloneCommands("rclone", str(store.rclone_config_path))


@pytest.fixture
def remote(registry):
    return registry.add(RemoteConnection.create("Work Drive", Provider.DRIVE))
