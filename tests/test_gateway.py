import threading
import time

import pytest

from shared.errors import AuthError, BusyError, ConfigError, NotFoundError, RetryableError, StartupTimeout
from shared.models import AuthState, Provider, RemoteConnection, StreamConfig
from streamer.gateway import StreamGateway
from conftest import wait_for


class Probe:
    """Readiness switch shared with the gateway's watcher thread."""

    def __init__(self, ready=True):
        self.ready = threading.Event()
        if ready:
            self.ready.set()

    def __call__(self, instance):
        return self.ready.is_set()


def _serve_command(remote, port, rc_port):
    return ["rclone", "serve", "http", f"{remote.name}:", "--addr", f"127.0.0.1:{port}",
            "--rc-addr", f"127.0.0.1:{rc_port}"]


def make_gateway(registry, supervisor, probe=None, stats_probe=None, **overrides):
    settings = dict(startup_timeout_seconds=2, idle_timeout_minutes=30, terminate_grace_seconds=1)
    settings.update(overrides)
    return StreamGateway(
        registry, supervisor, _serve_command, StreamConfig(**settings),
        probe=probe or Probe(),
        stats_probe=stats_probe or (lambda instance: None),
        startup_poll_interval=0.01,
        running_poll_interval=0.02,
    )


@pytest.fixture
def gateway(registry, supervisor):
    gw = make_gateway(registry, supervisor)
    yield gw
    gw.shutdown()


@pytest.fixture
def second(registry):
    return registry.add(RemoteConnection.create("Home Dropbox", Provider.DROPBOX))


def _alive(supervisor):
    return [h for h in supervisor.spawned if h.is_alive()]


def test_first_request_starts_server(gateway, supervisor, remote):
    url = gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    status = gateway.status()
    assert status["state"] == "running"
    assert status["remote_id"] == remote.id
    assert url == f"http://127.0.0.1:{status['port']}/Movies/a.mkv"
    assert len(supervisor.spawned) == 1
    assert supervisor.spawned[0].args[3] == "Work Drive:"


def test_running_server_is_reused(gateway, supervisor, remote):
    first = gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    again = gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    other = gateway.get_stream_url(remote.id, "/Movies/b.mkv")
    assert first == again
    assert other.rsplit("/", 1)[0] == first.rsplit("/", 1)[0]
    assert len(supervisor.spawned) == 1


def test_path_is_url_encoded(gateway, remote):
    url = gateway.get_stream_url(remote.id, "/Movies/My Film #1.mkv")
    assert url.endswith("/Movies/My%20Film%20%231.mkv")


def test_other_remote_replaces_current_server(gateway, supervisor, remote, second):
    gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    first_handle = supervisor.spawned[0]

    gateway.get_stream_url(second.id, "/Shows/e1.mkv")
    assert first_handle in supervisor.terminated
    assert not first_handle.is_alive()
    assert len(_alive(supervisor)) == 1
    assert gateway.status()["remote_id"] == second.id
    assert gateway.is_serving(second.id)
    assert not gateway.is_serving(remote.id)


def test_concurrent_requests_share_one_startup(registry, supervisor, remote):
    probe = Probe(ready=False)
    gateway = make_gateway(registry, supervisor, probe=probe)
    urls = []
    errors = []

    def request():
        try:
            urls.append(gateway.get_stream_url(remote.id, "/Movies/a.mkv"))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=request) for _ in range(6)]
    for t in threads:
        t.start()
    time.sleep(0.2)
    probe.ready.set()
    for t in threads:
        t.join(5)
    gateway.shutdown()

    assert errors == []
    assert len(urls) == 6 and len(set(urls)) == 1
    assert len(supervisor.spawned) == 1


def test_startup_timeout_fails_and_terminates(registry, supervisor, remote):
    gateway = make_gateway(registry, supervisor, probe=Probe(ready=False), startup_timeout_seconds=0.2)
    with pytest.raises(StartupTimeout):
        gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    assert gateway.status()["state"] == "failed"
    assert supervisor.spawned[0] in supervisor.terminated
    assert _alive(supervisor) == []
    gateway.shutdown()


def test_abandoned_wait_does_not_kill_startup(registry, supervisor, remote):
    probe = Probe(ready=False)
    gateway = make_gateway(registry, supervisor, probe=probe, startup_timeout_seconds=5)
    with pytest.raises(RetryableError):
        gateway.get_stream_url(remote.id, "/Movies/a.mkv", wait_timeout=0.1)
    handle = supervisor.spawned[0]
    assert handle.is_alive()
    assert handle not in supervisor.terminated
    assert gateway.status()["state"] == "starting"

    probe.ready.set()
    url = gateway.get_stream_url(remote.id, "/Movies/a.mkv", wait_timeout=2)
    assert url.endswith("/Movies/a.mkv")
    assert len(supervisor.spawned) == 1
    gateway.shutdown()


def test_crash_then_next_request_restarts(gateway, supervisor, remote):
    gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    supervisor.spawned[0].exit(2, ["panic: something broke"])
    assert gateway.status()["state"] == "failed"
    assert "exited unexpectedly" in gateway.status()["error"]

    url = gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    assert url.endswith("/Movies/a.mkv")
    assert len(supervisor.spawned) == 2
    assert gateway.status()["state"] == "running"


def test_auth_failure_during_startup_marks_remote_expired(gateway, supervisor, registry, remote):
    supervisor.on_spawn = lambda h: h.exit(1, [
        "Failed to create file system: couldn't fetch token - maybe it has expired?",
    ])
    with pytest.raises(AuthError):
        gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    assert registry.get(remote.id).auth_state == AuthState.EXPIRED
    assert gateway.status()["state"] == "failed"

    # expired remotes are refused without spawning
    supervisor.on_spawn = None
    with pytest.raises(AuthError):
        gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    assert len(supervisor.spawned) == 1


def test_spawn_failure_is_config_error(gateway, supervisor, remote):
    supervisor.spawn_error = ConfigError("Cannot execute rclone")
    with pytest.raises(ConfigError):
        gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    assert gateway.status()["state"] == "failed"


def test_unknown_remote_and_bad_path(gateway, remote):
    with pytest.raises(NotFoundError):
        gateway.get_stream_url("missing", "/a.mkv")
    with pytest.raises(ValueError):
        gateway.get_stream_url(remote.id, "/")
    with pytest.raises(ValueError):
        gateway.get_stream_url(remote.id, "/../secret")


def test_idle_server_is_stopped(registry, supervisor, remote):
    gateway = make_gateway(registry, supervisor, stats_probe=lambda instance: 1234,
                           idle_timeout_minutes=0.002)
    gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    assert wait_for(lambda: gateway.status()["state"] == "stopped")
    assert supervisor.spawned[0] in supervisor.terminated
    gateway.shutdown()


def test_idle_shutdown_skipped_without_stats(registry, supervisor, remote):
    gateway = make_gateway(registry, supervisor, stats_probe=lambda instance: None,
                           idle_timeout_minutes=0.002)
    gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    time.sleep(0.4)
    assert gateway.status()["state"] == "running"
    gateway.shutdown()


def test_stop_and_removal_hook(gateway, supervisor, remote, second):
    gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    gateway.stop_remote(second)
    assert gateway.is_serving(remote.id)

    gateway.stop_remote(remote)
    assert not gateway.is_serving(remote.id)
    assert gateway.status()["state"] == "stopped"
    assert _alive(supervisor) == []
    assert gateway.stop() is False


def test_status_listeners(gateway, remote):
    states = []
    gateway.add_listener(lambda snapshot: states.append(snapshot["state"]))
    gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    assert wait_for(lambda: "running" in states)
    gateway.stop()
    assert states == ["starting", "running", "stopped"]


def test_listeners_run_outside_the_slot_lock(gateway, remote):
    blocked = []

    def listener(snapshot):
        other = threading.Thread(target=gateway.status)
        other.start()
        other.join(1)
        blocked.append(other.is_alive())

    gateway.add_listener(listener)
    gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    assert wait_for(lambda: len(blocked) >= 2)
    gateway.stop()
    assert len(blocked) == 3
    assert not any(blocked)


def test_exclusive_holds_off_new_servers(gateway, supervisor, remote):
    with gateway.exclusive(remote.id):
        with pytest.raises(BusyError):
            gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    assert supervisor.spawned == []

    gateway.get_stream_url(remote.id, "/Movies/a.mkv")
    with pytest.raises(BusyError):
        with gateway.exclusive(remote.id):
            pass


def test_remote_being_removed_is_not_served(gateway, registry, supervisor, remote):
    refused = []

    def late_request(r):
        try:
            gateway.get_stream_url(r.id, "/Movies/a.mkv")
        except NotFoundError as e:
            refused.append(e)

    registry.add_removal_hook("stop stream", gateway.stop_remote)
    registry.add_removal_hook("late request", late_request)
    gateway.get_stream_url(remote.id, "/Movies/a.mkv")

    assert registry.remove(remote.id) is True
    assert len(refused) == 1
    assert len(supervisor.spawned) == 1
    assert _alive(supervisor) == []
    assert gateway.status()["state"] == "stopped"
