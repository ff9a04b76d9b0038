"""
Interactive authorization of cloud storage accounts.

rclone runs the OAuth dance itself (local callback server plus browser) and
writes the resulting token into its own config file, which this application
treats as opaque. The broker turns that blocking process into a pollable
handle and registers the remote once rclone exits successfully.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from shared.constants import (
    DEFAULT_AUTH_TIMEOUT_SECONDS,
    AUTH_RETENTION_SECONDS,
)
from shared.errors import (
    AlreadyExistsError,
    BusyError,
    NotFoundError,
    StreamError,
)
from shared.models import AuthState, AuthStatus, Provider, RemoteConnection
from streamer.rclone import RcloneCommands, classify_failure, find_auth_url, redact, validate_remote_name

logger = logging.getLogger(__name__)


@dataclass
class AuthFlow:
    """One in-flight or finished authorization."""
    token: str
    name: str
    provider: Provider
    reauthorize_id: Optional[str] = None
    handle: Any = None
    started_at: float = field(default_factory=time.time)
    status: AuthStatus = AuthStatus.PENDING
    url: Optional[str] = None
    remote_id: Optional[str] = None
    error: Optional[str] = None
    finished_at: Optional[float] = None
    exited: bool = False
    timer: Optional[threading.Timer] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "name": self.name,
            "provider": self.provider.value,
            "status": self.status.value,
            "url": self.url,
            "remote_id": self.remote_id,
            "error": self.error,
        }


class OAuthBroker:
    """Runs ``rclone config create`` flows and tracks them by token."""

    def __init__(self, supervisor, commands: RcloneCommands, registry,
                 auth_timeout: float = DEFAULT_AUTH_TIMEOUT_SECONDS,
                 open_browser: bool = True):
        self.supervisor = supervisor
        self.commands = commands
        self.registry = registry
        self.auth_timeout = auth_timeout
        self.open_browser = open_browser
        self._flows: Dict[str, AuthFlow] = {}
        self._lock = threading.Lock()
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

    def add_listener(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        self._listeners.append(callback)

    def start_authorization(self, provider: Union[Provider, str], name: str) -> Dict[str, Optional[str]]:
        """
        Launch an authorization flow and return at once.

        The URL is reported when rclone has already printed it; otherwise
        it arrives through poll_status and the status listeners.

        Returns:
            {"url": authorization URL or None if not printed yet, "token": flow token}

        Raises:
            ValueError: Unknown provider or invalid name
            AlreadyExistsError: The name belongs to an authorized remote
            BusyError: A flow for the same name is already running
            ConfigError: rclone could not be started
        """
        provider = Provider(provider)
        name = validate_remote_name(name)

        with self._lock:
            self._forget_finished()
            for flow in self._flows.values():
                if flow.status == AuthStatus.PENDING and flow.name.lower() == name.lower():
                    raise BusyError(f"Authorization for '{name}' is already in progress")

            reauthorize_id = None
            existing = self.registry.get_by_name(name)
            if existing is not None:
                if existing.auth_state == AuthState.AUTHORIZED or existing.provider != provider:
                    raise AlreadyExistsError(f"A remote named '{existing.name}' already exists")
                reauthorize_id = existing.id
                name = existing.name

            flow = AuthFlow(token=secrets.token_urlsafe(16), name=name,
                            provider=provider, reauthorize_id=reauthorize_id)
            self._flows[flow.token] = flow

        if reauthorize_id:
            self.registry.update_auth_state(reauthorize_id, AuthState.PENDING)
        try:
            handle = self.supervisor.spawn(
                self.commands.authorize(name, provider, self.open_browser),
                name=f"auth-{name}")
        except StreamError:
            with self._lock:
                self._flows.pop(flow.token, None)
            if reauthorize_id:
                self.registry.update_auth_state(reauthorize_id, AuthState.EXPIRED)
            raise

        flow.handle = handle
        logger.info(f"Authorization started for '{name}' ({provider.value})")

        flow.timer = threading.Timer(self.auth_timeout, self._on_timeout, args=(flow,))
        flow.timer.daemon = True
        flow.timer.start()
        handle.add_line_listener(lambda line: self._on_line(flow, line))
        handle.add_exit_callback(lambda h: self._on_exit(flow, h))

        return {"url": flow.url, "token": flow.token}

    def poll_status(self, token: str) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: Unknown or forgotten token
        """
        with self._lock:
            self._forget_finished()
            flow = self._flows.get(token)
            if flow is None:
                raise NotFoundError("Unknown authorization token")
            return flow.to_dict()

    def cancel(self, token: str) -> Dict[str, Any]:
        with self._lock:
            flow = self._flows.get(token)
            if flow is None:
                raise NotFoundError("Unknown authorization token")
            if not self._claim_terminal(flow, AuthStatus.FAILED, "Authorization cancelled"):
                return flow.to_dict()
        logger.info(f"Authorization for '{flow.name}' cancelled")
        self._abort(flow)
        return flow.to_dict()

    def revoke(self, remote: RemoteConnection) -> None:
        """Removal hook: delete the remote's credentials from rclone.conf."""
        result = self.supervisor.run(self.commands.delete_remote(remote.name))
        if result.ok:
            logger.info(f"Deleted credentials for '{remote.name}'")
            return
        error = classify_failure(result.output, result.returncode, context="config delete")
        if isinstance(error, NotFoundError):
            return
        raise error

    def pending(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [f.to_dict() for f in self._flows.values() if f.status == AuthStatus.PENDING]

    def shutdown(self) -> None:
        with self._lock:
            flows = [f for f in self._flows.values()
                     if self._claim_terminal(f, AuthStatus.FAILED, "Authorization cancelled")]
        for flow in flows:
            self._abort(flow)

    def _on_line(self, flow: AuthFlow, line: str):
        if flow.url:
            return
        url = find_auth_url(line)
        if url:
            flow.url = url
            logger.info(f"Authorization URL for '{flow.name}': {redact(url)}")
            self._notify(flow)

    def _on_exit(self, flow: AuthFlow, handle):
        with self._lock:
            flow.exited = True
            if flow.status != AuthStatus.PENDING:
                return
        if flow.timer:
            flow.timer.cancel()

        returncode = handle.returncode
        if returncode == 0:
            try:
                remote_id = self._register(flow)
            except (StreamError, ValueError) as e:
                logger.error(f"Authorization for '{flow.name}' succeeded but registering failed: {e}")
                self._finish(flow, AuthStatus.FAILED, error=str(e))
                return
            logger.info(f"Authorization for '{flow.name}' completed")
            self._finish(flow, AuthStatus.AUTHORIZED, remote_id=remote_id)
            return

        error = classify_failure(handle.output_tail(50), returncode, context="authorize")
        logger.warning(f"Authorization for '{flow.name}' failed: {error}")
        self._finish(flow, AuthStatus.FAILED, error=error.detail or str(error))
        self._cleanup(flow)

    def _on_timeout(self, flow: AuthFlow):
        with self._lock:
            if flow.exited or not self._claim_terminal(
                    flow, AuthStatus.TIMEOUT,
                    f"Authorization not completed within {self.auth_timeout:.0f}s"):
                return
        logger.warning(f"Authorization for '{flow.name}' timed out")
        self._abort(flow)

    def _register(self, flow: AuthFlow) -> str:
        if flow.reauthorize_id:
            self.registry.update_auth_state(flow.reauthorize_id, AuthState.AUTHORIZED)
            return flow.reauthorize_id
        remote = self.registry.add(RemoteConnection.create(flow.name, flow.provider))
        return remote.id

    def _claim_terminal(self, flow: AuthFlow, status: AuthStatus, error: str) -> bool:
        """Caller holds the lock. Returns False if the flow already finished."""
        if flow.status != AuthStatus.PENDING:
            return False
        flow.status = status
        flow.error = error
        flow.finished_at = time.time()
        return True

    def _abort(self, flow: AuthFlow):
        if flow.timer:
            flow.timer.cancel()
        if flow.handle is not None:
            self.supervisor.terminate(flow.handle)
        self._cleanup(flow)
        self._notify(flow)

    def _finish(self, flow: AuthFlow, status: AuthStatus, remote_id: Optional[str] = None,
                error: Optional[str] = None):
        with self._lock:
            flow.status = status
            flow.remote_id = remote_id
            flow.error = error
            flow.finished_at = time.time()
        self._notify(flow)

    def _cleanup(self, flow: AuthFlow):
        """Undo what a failed flow left behind."""
        if flow.reauthorize_id:
            self.registry.update_auth_state(flow.reauthorize_id, AuthState.EXPIRED)
            return
        try:
            self.revoke(RemoteConnection(id="", name=flow.name, provider=flow.provider))
        except StreamError as e:
            logger.warning(f"Could not remove partial config for '{flow.name}': {e}")

    def _forget_finished(self):
        """Caller holds the lock."""
        cutoff = time.time() - AUTH_RETENTION_SECONDS
        for token in [t for t, f in self._flows.items()
                      if f.finished_at is not None and f.finished_at < cutoff]:
            del self._flows[token]

    def _notify(self, flow: AuthFlow):
        data = flow.to_dict()
        for callback in list(self._listeners):
            try:
                callback(data)
            except Exception as e:
                logger.warning(f"Authorization listener failed: {e}")
