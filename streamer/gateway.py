"""
Stream gateway: turns a playback request into a local HTTP URL.

One ``rclone serve http`` process at a time backs every stream. The slot is
guarded by a single condition variable; each spawned instance gets a watcher
thread that gates it on readiness, enforces the startup deadline and stops it
once it has been idle for long enough.

States: stopped -> starting -> running -> stopped (explicit stop or idle)
                                       -> failed  (crash or startup timeout)
A failed instance stays in the slot until the next request replaces it.
"""

import logging
import threading
import time
from collections import Counter
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from shared.constants import (
    LOOPBACK_HOST,
    STARTUP_POLL_INTERVAL,
    RUNNING_POLL_INTERVAL,
    PROBE_TIMEOUT,
)
from shared.errors import (
    AuthError,
    BusyError,
    NotFoundError,
    RetryableError,
    StartupTimeout,
    StreamError,
)
from shared.models import AuthState, RemoteConnection, ServeInstance, ServeState, StreamConfig
from streamer.rclone import classify_failure, normalize_path, serve_path_url
from streamer.supervisor import find_free_port, is_port_in_use

logger = logging.getLogger(__name__)

ServeCommand = Callable[[RemoteConnection, int, int], List[str]]


def http_ready(instance: ServeInstance) -> bool:
    """Readiness: the serving process answers HTTP on its port."""
    try:
        response = requests.get(f"http://{LOOPBACK_HOST}:{instance.port}/", timeout=PROBE_TIMEOUT)
    except requests.RequestException:
        return False
    return response.status_code < 500


def rc_bytes_served(instance: ServeInstance) -> Optional[int]:
    """Bytes transferred so far according to rclone's rc ``core/stats``; None if unavailable."""
    try:
        response = requests.post(f"http://{LOOPBACK_HOST}:{instance.rc_port}/core/stats",
                                 json={}, timeout=PROBE_TIMEOUT)
        response.raise_for_status()
        value = response.json().get("bytes")
    except (requests.RequestException, ValueError, AttributeError):
        return None
    return int(value) if isinstance(value, (int, float)) else None


class StreamGateway:
    """Owns the single serving slot."""

    def __init__(self, registry, supervisor, serve_command: ServeCommand,
                 config: Optional[StreamConfig] = None,
                 probe: Callable[[ServeInstance], bool] = http_ready,
                 stats_probe: Callable[[ServeInstance], Optional[int]] = rc_bytes_served,
                 startup_poll_interval: float = STARTUP_POLL_INTERVAL,
                 running_poll_interval: float = RUNNING_POLL_INTERVAL):
        config = config or StreamConfig()
        self.registry = registry
        self.supervisor = supervisor
        self.serve_command = serve_command
        self.probe = probe
        self.stats_probe = stats_probe
        self.proxy_port = config.proxy_port
        self.startup_timeout = config.startup_timeout_seconds
        self.idle_timeout = config.idle_timeout_minutes * 60
        self.terminate_grace = config.terminate_grace_seconds
        self.startup_poll_interval = startup_poll_interval
        self.running_poll_interval = running_poll_interval

        self._cond = threading.Condition()
        self._instance: Optional[ServeInstance] = None
        self._reserved: Counter = Counter()
        self._closing = threading.Event()
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

    def add_listener(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        self._listeners.append(callback)

    def get_stream_url(self, remote_id: str, path: str,
                       wait_timeout: Optional[float] = None) -> str:
        """
        Return a local URL for ``path`` on the remote, starting a server if needed.

        Args:
            remote_id: Registry id of the remote
            path: File path inside the remote
            wait_timeout: Upper bound on how long this caller waits for startup;
                the instance keeps starting after the caller gives up

        Raises:
            NotFoundError: Unknown remote, or one that is being removed
            AuthError: The remote needs re-authorization
            BusyError: The remote's cache is being cleared
            StartupTimeout: The server did not become ready in time
            RetryableError: The caller's wait elapsed, or the start was superseded
            ConfigError: rclone could not be started
        """
        remote = self.registry.get_active(remote_id)
        if remote is None:
            raise NotFoundError(f"Unknown remote: {remote_id}")
        if remote.auth_state != AuthState.AUTHORIZED:
            raise AuthError(f"'{remote.name}' needs to be re-authorized before streaming")
        rel = normalize_path(path)
        if not rel:
            raise ValueError("A file path is required")

        if self._closing.is_set():
            raise RetryableError("Streaming is shutting down")
        if wait_timeout is None:
            wait_timeout = self.startup_timeout + self.startup_poll_interval + PROBE_TIMEOUT + 1
        deadline = time.monotonic() + wait_timeout

        with self._cond:
            # removal and cache maintenance both hold off new servers
            if self.registry.get_active(remote_id) is None:
                raise NotFoundError(f"Unknown remote: {remote_id}")
            if self._reserved[remote_id]:
                raise BusyError(f"The cache of '{remote.name}' is being cleaned; try again")
            instance, started = self._acquire(remote)
            snapshot = self._snapshot() if started else None
        if started:
            self._emit(snapshot)
            threading.Thread(target=self._watch, args=(instance,),
                             name=f"serve-watch-{remote.name}", daemon=True).start()

        with self._cond:
            while instance.state == ServeState.STARTING:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RetryableError(f"Stream for '{remote.name}' is still starting; try again")
                self._cond.wait(timeout=remaining)

            if instance.state == ServeState.RUNNING:
                instance.last_activity = time.monotonic()
                return serve_path_url(instance.port, rel)
            if instance.state == ServeState.FAILED and instance.error is not None:
                raise instance.error
            raise RetryableError(f"Stream for '{remote.name}' was stopped before it became ready")

    @contextmanager
    def exclusive(self, remote_id: str):
        """
        Keep ``remote_id`` from being served while the block runs.

        Raises:
            BusyError: The remote is starting or running
        """
        with self._cond:
            instance = self._instance
            if self._serving_locked(remote_id):
                raise BusyError(f"'{instance.remote_name}' is streaming; "
                                f"stop playback before changing its cache")
            self._reserved[remote_id] += 1
        try:
            yield
        finally:
            with self._cond:
                self._reserved[remote_id] -= 1
                if self._reserved[remote_id] <= 0:
                    del self._reserved[remote_id]

    def stop(self, remote_id: Optional[str] = None) -> bool:
        """Stop the current instance (only if bound to ``remote_id`` when given)."""
        with self._cond:
            instance = self._instance
            if instance is None or (remote_id is not None and instance.remote_id != remote_id):
                return False
            self._stop_locked(instance, "stop requested")
            snapshot = self._snapshot()
        self._emit(snapshot)
        return True

    def stop_remote(self, remote: RemoteConnection) -> None:
        """Removal hook."""
        self.stop(remote.id)

    def is_serving(self, remote_id: str) -> bool:
        with self._cond:
            return self._serving_locked(remote_id)

    def status(self) -> Dict[str, Any]:
        with self._cond:
            return self._snapshot()

    def shutdown(self) -> None:
        self._closing.set()
        self.stop()

    def _serving_locked(self, remote_id: str) -> bool:
        instance = self._instance
        return (instance is not None and instance.remote_id == remote_id
                and instance.state in (ServeState.STARTING, ServeState.RUNNING))

    def _acquire(self, remote: RemoteConnection) -> Tuple[ServeInstance, bool]:
        """Caller holds the condition. Reuse, join or replace the slot; True if started."""
        current = self._instance
        if current is not None and current.remote_id == remote.id:
            if current.state == ServeState.STARTING:
                logger.debug(f"Joining startup of '{remote.name}'")
                return current, False
            if current.state == ServeState.RUNNING and self.supervisor.health(current.handle):
                return current, False
            if current.state == ServeState.RUNNING:
                logger.warning(f"Serving process for '{remote.name}' is not healthy; restarting")
        if current is not None:
            self._stop_locked(current, "replaced")
        return self._start_locked(remote), True

    def _start_locked(self, remote: RemoteConnection) -> ServeInstance:
        """Caller holds the condition and starts the watcher once it has released it."""
        port, rc_port = self._allocate_ports()
        instance = ServeInstance(remote_id=remote.id, remote_name=remote.name,
                                 port=port, rc_port=rc_port,
                                 started_at=time.time(), state=ServeState.STARTING,
                                 last_activity=time.monotonic())
        try:
            handle = self.supervisor.spawn(self.serve_command(remote, port, rc_port),
                                           name=f"serve-{remote.name}")
        except StreamError as e:
            instance.state = ServeState.FAILED
            instance.error = e
            self._instance = instance
            raise
        instance.handle = handle
        self._instance = instance
        logger.info(f"Starting stream server for '{remote.name}' on {LOOPBACK_HOST}:{port}")
        return instance

    def _stop_locked(self, instance: ServeInstance, reason: str,
                     state: ServeState = ServeState.STOPPED):
        """Caller holds the condition. Terminates before the slot is reused."""
        previous = instance.state
        instance.state = state
        if self._instance is instance and state == ServeState.STOPPED:
            self._instance = None
        self._cond.notify_all()
        if instance.handle is not None and instance.handle.is_alive():
            logger.info(f"Stopping stream server for '{instance.remote_name}' ({reason})")
            self.supervisor.terminate(instance.handle, self.terminate_grace)
        elif previous != state:
            logger.debug(f"Stream server for '{instance.remote_name}' {previous.value} -> {state.value}")

    def _allocate_ports(self) -> Tuple[int, int]:
        if self.proxy_port and not is_port_in_use(self.proxy_port):
            port = self.proxy_port
        else:
            port = find_free_port()
        rc_port = find_free_port()
        while rc_port == port:
            rc_port = find_free_port()
        return port, rc_port

    def _watch(self, instance: ServeInstance):
        """Readiness gate, startup deadline and idle shutdown for one instance."""
        if instance.handle is not None:
            instance.handle.add_exit_callback(lambda h: self._on_exit(instance, h))
        startup_deadline = time.monotonic() + self.startup_timeout
        while not self._closing.is_set():
            with self._cond:
                if self._instance is not instance:
                    return
                state = instance.state

            if state == ServeState.STARTING:
                ready = self.supervisor.health(instance.handle, lambda: self.probe(instance))
                with self._cond:
                    if self._instance is not instance or instance.state != ServeState.STARTING:
                        return
                    if ready:
                        instance.state = ServeState.RUNNING
                        instance.last_activity = time.monotonic()
                        elapsed = time.time() - instance.started_at
                        logger.info(f"Stream server for '{instance.remote_name}' ready in {elapsed:.1f}s")
                        self._cond.notify_all()
                    elif time.monotonic() >= startup_deadline:
                        instance.error = StartupTimeout(
                            f"Stream server for '{instance.remote_name}' did not become ready "
                            f"within {self.startup_timeout:.0f}s",
                            instance.handle.output_tail(5) if instance.handle else None)
                        logger.error(str(instance.error))
                        self._stop_locked(instance, "startup timeout", ServeState.FAILED)
                    changed = instance.state != ServeState.STARTING
                    snapshot = self._snapshot()
                if changed:
                    self._emit(snapshot)
                else:
                    self._closing.wait(self.startup_poll_interval)

            elif state == ServeState.RUNNING:
                self._closing.wait(self.running_poll_interval)
                if self._closing.is_set():
                    return
                served = self.stats_probe(instance)
                with self._cond:
                    if self._instance is not instance or instance.state != ServeState.RUNNING:
                        return
                    if served is None:
                        # no activity information; never idle-stop
                        continue
                    if served != instance.bytes_served:
                        instance.bytes_served = served
                        instance.last_activity = time.monotonic()
                    idle_for = time.monotonic() - instance.last_activity
                    if not self.idle_timeout or idle_for < self.idle_timeout:
                        continue
                    logger.info(f"Stream server for '{instance.remote_name}' idle for "
                                f"{idle_for / 60:.0f} min")
                    self._stop_locked(instance, "idle")
                    snapshot = self._snapshot()
                self._emit(snapshot)
                return
            else:
                return

    def _on_exit(self, instance: ServeInstance, handle):
        with self._cond:
            if instance.state not in (ServeState.STARTING, ServeState.RUNNING):
                return
            was_starting = instance.state == ServeState.STARTING
        error = classify_failure(handle.output_tail(50), handle.returncode, context="serve")
        if not was_starting and not isinstance(error, AuthError):
            error = RetryableError(
                f"Stream server for '{instance.remote_name}' exited unexpectedly "
                f"(exit code {handle.returncode})", error.detail)
        logger.error(f"Stream server for '{instance.remote_name}' failed: {error}")
        # waiters are released only after the remote is flagged
        if isinstance(error, AuthError):
            self.registry.mark_expired(instance.remote_id)

        with self._cond:
            if instance.state not in (ServeState.STARTING, ServeState.RUNNING):
                return
            instance.state = ServeState.FAILED
            instance.error = error
            self._cond.notify_all()
            snapshot = self._snapshot() if self._instance is instance else None
        if snapshot is not None:
            self._emit(snapshot)

    def _snapshot(self) -> Dict[str, Any]:
        """Caller holds the condition."""
        if self._instance is None:
            return {"state": ServeState.STOPPED.value, "remote_id": None}
        return self._instance.to_dict()

    def _emit(self, snapshot: Dict[str, Any]):
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning(f"Stream listener failed: {e}")
