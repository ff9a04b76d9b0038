import json
import os
import threading
import time

import pytest

from shared.errors import AuthError, BusyError, NotFoundError, RetryableError
from shared.models import AuthState
from streamer.service import StreamService
from conftest import MOVIES_LISTING, result, wait_for

AUTH_LINE = "NOTICE: Please go to the following link: http://127.0.0.1:53682/auth?state=abc"


@pytest.fixture
def service(store, supervisor):
    svc = StreamService(store=store, supervisor=supervisor, rclone_binary="rclone",
                        probe=lambda instance: True, stats_probe=lambda instance: None)
    yield svc
    svc.shutdown()


@pytest.fixture
def events(service):
    received = []
    service.add_event_listener(lambda event, payload: received.append((event, payload)))
    return received


def _authorize(service, supervisor, name="Work Drive", provider="drive"):
    supervisor.on_spawn = lambda h: h.emit(AUTH_LINE)
    started = service.add_remote(provider, name)
    supervisor.on_spawn = None
    supervisor.spawned[-1].exit(0)
    status = service.poll_authorization(started["token"])
    assert status["status"] == "authorized"
    return status["remote_id"]


def test_add_remote_flow(service, supervisor):
    supervisor.on_spawn = lambda h: h.emit(AUTH_LINE)
    started = service.add_remote("drive", "Work Drive")
    assert started["url"].startswith("http://127.0.0.1:53682/auth")
    assert service.poll_authorization(started["token"])["status"] == "pending"
    assert service.list_remotes() == []
    assert service.health()["pending_authorizations"] == 1

    supervisor.spawned[0].exit(0)
    remotes = service.list_remotes()
    assert [(r["name"], r["provider"], r["auth_state"]) for r in remotes] == [
        ("Work Drive", "drive", "authorized")]
    assert set(remotes[0]) == {"id", "name", "provider", "auth_state"}
    assert service.get_remote(remotes[0]["id"])["name"] == "Work Drive"


def test_browse_then_serve_from_cache(service, supervisor):
    remote_id = _authorize(service, supervisor)
    supervisor.run_handler = lambda args: result(stdout=MOVIES_LISTING, args=args)

    listing = service.browse(remote_id, "Movies")
    assert listing["path"] == "/Movies"
    assert listing["stale"] is False
    assert [e["name"] for e in listing["entries"]] == ["Sub", "a.mkv", "b.mkv"]
    assert listing["entries"][1]["entry_path"] == "/Movies/a.mkv"
    assert listing["cached_at"] is not None

    service.browse(remote_id, "/Movies/")
    assert len(supervisor.runs_of("lsjson")) == 1
    assert service.registry.get(remote_id).last_scanned_at


def test_browse_returns_stale_listing_on_failure(service, supervisor):
    remote_id = _authorize(service, supervisor)
    supervisor.run_handler = lambda args: result(stdout=MOVIES_LISTING, args=args)
    fresh = service.browse(remote_id, "/Movies")

    supervisor.run_handler = lambda args: result(
        stderr="dial tcp: i/o timeout", returncode=1, args=args)
    stale = service.browse(remote_id, "/Movies", force_refresh=True)
    assert stale["stale"] is True
    assert stale["error"]
    assert stale["entries"] == fresh["entries"]
    assert stale["cached_at"] == fresh["cached_at"]


def test_browse_failure_without_cache_raises(service, supervisor):
    remote_id = _authorize(service, supervisor)
    supervisor.run_handler = lambda args: result(
        stderr="dial tcp: i/o timeout", returncode=1, args=args)
    with pytest.raises(RetryableError):
        service.browse(remote_id, "/Movies")


def test_stream_and_status(service, supervisor):
    remote_id = _authorize(service, supervisor)
    url = service.get_stream_url(remote_id, "/Movies/a.mkv")
    status = service.stream_status()
    assert status["state"] == "running"
    assert url.startswith(f"http://127.0.0.1:{status['port']}/")

    serve = supervisor.spawned[-1]
    assert "serve" in serve.args
    assert str(service.cache.namespace(service.registry.get(remote_id))) in serve.args

    assert service.stop_stream() is True
    assert service.stream_status()["state"] == "stopped"


def test_clear_cache_refused_while_streaming(service, supervisor):
    remote_id = _authorize(service, supervisor)
    service.get_stream_url(remote_id, "/Movies/a.mkv")
    with pytest.raises(BusyError):
        service.clear_cache(remote_id)

    service.stop_stream()
    assert service.clear_cache(remote_id) == {"ok": True, "bytes_freed": 0}


def test_cleanup_cache_uses_hours(service, supervisor):
    remote_id = _authorize(service, supervisor)
    namespace = service.cache.namespace(service.registry.get(remote_id))
    (namespace / "vfs").mkdir(parents=True)
    (namespace / "vfs" / "fresh.mkv").write_bytes(b"x" * 10)
    outcome = service.cleanup_cache(remote_id, max_age_hours=1)
    assert outcome["files_removed"] == 0
    assert service.cache_stats(remote_id)["file_count"] == 1


def test_remove_remote_releases_everything(service, supervisor, events):
    remote_id = _authorize(service, supervisor)
    supervisor.run_handler = lambda args: result(stdout=MOVIES_LISTING, args=args)
    service.browse(remote_id, "/Movies")
    service.get_stream_url(remote_id, "/Movies/a.mkv")
    namespace = service.cache.namespace(service.registry.get(remote_id))
    (namespace / "vfs" / "a.mkv").parent.mkdir(parents=True, exist_ok=True)
    (namespace / "vfs" / "a.mkv").write_bytes(b"x" * 4096)

    assert service.remove_remote(remote_id) is True

    assert supervisor.live_handles() == []
    assert not namespace.exists()
    assert service.cache_stats(remote_id)["bytes"] == 0
    assert service.indexer.cached(remote_id, "/Movies") == (None, None)
    delete = supervisor.runs_of("delete")
    assert delete and delete[-1][1:4] == ["config", "delete", "Work Drive"]
    assert service.list_remotes() == []
    assert ("remotes_updated", {"remotes": []}) in events

    with pytest.raises(NotFoundError):
        service.get_remote(remote_id)
    assert service.remove_remote(remote_id) is False


def test_account_info(service, supervisor):
    remote_id = _authorize(service, supervisor)
    supervisor.run_handler = lambda args: result(
        stdout=json.dumps({"total": 100, "used": 40, "free": 60}), args=args)
    info = service.account_info(remote_id)
    assert info == {"total": 100, "used": 40, "free": 60, "trashed": None, "remote_id": remote_id}


def test_account_info_auth_failure_marks_expired(service, supervisor):
    remote_id = _authorize(service, supervisor)
    supervisor.run_handler = lambda args: result(
        stderr="couldn't fetch token - maybe it has expired?", returncode=1, args=args)
    with pytest.raises(AuthError):
        service.account_info(remote_id)
    assert service.registry.get(remote_id).auth_state == AuthState.EXPIRED
    with pytest.raises(AuthError):
        service.get_stream_url(remote_id, "/Movies/a.mkv")


def test_events_are_published(service, supervisor, events):
    remote_id = _authorize(service, supervisor)
    service.get_stream_url(remote_id, "/Movies/a.mkv")
    assert wait_for(lambda: any(e == "stream_status" and p["state"] == "running" for e, p in events))

    names = {e for e, _ in events}
    assert {"auth_status", "remotes_updated", "stream_status"} <= names

    service.stop_stream()
    service.clear_cache(remote_id)
    assert events[-1][0] == "cache_stats"


def test_failing_listener_does_not_break_operations(service, supervisor):
    def broken(event, payload):
        raise RuntimeError("socket gone")

    service.add_event_listener(broken)
    assert _authorize(service, supervisor)


def test_health_and_shutdown(service, supervisor):
    remote_id = _authorize(service, supervisor)
    service.get_stream_url(remote_id, "/Movies/a.mkv")
    health = service.health()
    assert health["ok"] is True
    assert health["remotes"] == 1
    assert health["stream"]["state"] == "running"
    assert health["rclone"] == "rclone"

    service.shutdown()
    service.shutdown()
    assert supervisor.live_handles() == []


def test_requests_during_removal_are_refused(service, supervisor):
    remote_id = _authorize(service, supervisor)
    service.get_stream_url(remote_id, "/Movies/a.mkv")
    outcome = []

    def late_requests():
        for call in (lambda: service.get_stream_url(remote_id, "/Movies/a.mkv"),
                     lambda: service.browse(remote_id, "/Movies")):
            try:
                outcome.append(call())
            except NotFoundError as e:
                outcome.append(e)

    def delete_credentials(args):
        if "delete" in args:
            other = threading.Thread(target=late_requests)
            other.start()
            other.join(5)
        return result(stdout=MOVIES_LISTING, args=args)

    supervisor.run_handler = delete_credentials
    assert service.remove_remote(remote_id) is True

    assert len(outcome) == 2
    assert all(isinstance(o, NotFoundError) for o in outcome)
    assert supervisor.live_handles() == []
    assert len([h for h in supervisor.spawned if "serve" in h.args]) == 1
    assert service.stream_status()["state"] == "stopped"
    assert service.indexer.cached(remote_id, "/Movies") == (None, None)


def test_stream_request_while_cache_is_cleared(service, supervisor, monkeypatch):
    remote_id = _authorize(service, supervisor)
    namespace = service.cache.namespace(service.registry.get(remote_id))
    (namespace / "vfs").mkdir(parents=True)
    (namespace / "vfs" / "a.mkv").write_bytes(b"x" * 10)
    refused = []
    rmtree = service.cache._rmtree

    def rmtree_with_request(path):
        try:
            service.get_stream_url(remote_id, "/Movies/a.mkv")
        except BusyError as e:
            refused.append(e)
        rmtree(path)

    monkeypatch.setattr(service.cache, "_rmtree", rmtree_with_request)
    service.clear_cache(remote_id)

    assert len(refused) == 1
    assert not namespace.exists()
    assert [h for h in supervisor.spawned if "serve" in h.args] == []
    assert service.get_stream_url(remote_id, "/Movies/a.mkv")


def test_expired_cache_is_cleaned_at_startup(store, supervisor, remote):
    def start():
        return StreamService(store=store, supervisor=supervisor, rclone_binary="rclone",
                             probe=lambda instance: True, stats_probe=lambda instance: None)

    store.update(cleanup_cache_on_start=False)
    first = start()
    namespace = first.cache.namespace(remote)
    (namespace / "vfs").mkdir(parents=True)
    old = namespace / "vfs" / "old.mkv"
    fresh = namespace / "vfs" / "fresh.mkv"
    old.write_bytes(b"x" * 10)
    fresh.write_bytes(b"x" * 10)
    two_days_ago = time.time() - 2 * 86400
    os.utime(old, (two_days_ago, two_days_ago))
    first.shutdown()

    start().shutdown()
    assert old.exists()

    store.update(cleanup_cache_on_start=True)
    second = start()
    second.shutdown()
    assert not old.exists()
    assert fresh.exists()


def test_recursive_browse(service, supervisor):
    remote_id = _authorize(service, supervisor)
    supervisor.run_handler = lambda args: result(stdout=json.dumps([
        {"Path": "S01/e1.mkv", "Name": "e1.mkv", "Size": 10, "IsDir": False},
    ]), args=args)
    listing = service.browse(remote_id, "/Shows", recursive=True)
    assert listing["recursive"] is True
    assert [e["entry_path"] for e in listing["entries"]] == ["/Shows/S01/e1.mkv"]
