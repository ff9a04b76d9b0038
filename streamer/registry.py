"""
Catalog of configured remote connections.

The registry is the single owner of RemoteConnection records. Removal cascades
through hooks registered by the other components (stop serving, drop listings,
purge cache, delete credentials); the record itself goes last, so a removal
that failed halfway can simply be invoked again.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Set, Tuple

from shared.config import ConfigStore
from shared.errors import AlreadyExistsError, ConfigError, NotFoundError
from shared.models import AuthState, RemoteConnection, utc_now_iso
from streamer.rclone import validate_remote_name

logger = logging.getLogger(__name__)

RemovalHook = Callable[[RemoteConnection], None]


class RemoteRegistry:
    """Thread-safe registry persisted through the configuration store."""

    def __init__(self, store: ConfigStore):
        self.store = store
        self._lock = threading.RLock()
        self._remotes: Dict[str, RemoteConnection] = {}
        self._removing: Set[str] = set()
        self._hooks: List[Tuple[str, RemovalHook]] = []
        self._listeners: List[Callable[[], None]] = []
        self._load()

    def _load(self):
        for data in self.store.get_remotes():
            try:
                remote = RemoteConnection.from_dict(data)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed remote entry {data!r}: {e}")
                continue
            self._remotes[remote.id] = remote
        logger.debug(f"Loaded {len(self._remotes)} remote(s)")

    def add_removal_hook(self, name: str, hook: RemovalHook) -> None:
        """Hooks run in registration order when a remote is removed."""
        self._hooks.append((name, hook))

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def list(self) -> List[RemoteConnection]:
        with self._lock:
            return sorted(self._remotes.values(), key=lambda r: r.name.lower())

    def get(self, remote_id: str) -> Optional[RemoteConnection]:
        with self._lock:
            return self._remotes.get(remote_id)

    def get_active(self, remote_id: str) -> Optional[RemoteConnection]:
        """Like get(), but None while the remote is being removed."""
        with self._lock:
            if remote_id in self._removing:
                return None
            return self._remotes.get(remote_id)

    def is_removing(self, remote_id: str) -> bool:
        with self._lock:
            return remote_id in self._removing

    def require(self, remote_id: str) -> RemoteConnection:
        remote = self.get(remote_id)
        if remote is None:
            raise NotFoundError(f"Unknown remote: {remote_id}")
        return remote

    def get_by_name(self, name: str) -> Optional[RemoteConnection]:
        key = (name or "").strip().lower()
        with self._lock:
            for remote in self._remotes.values():
                if remote.name.lower() == key:
                    return remote
        return None

    def add(self, remote: RemoteConnection) -> RemoteConnection:
        """
        Register a remote.

        Raises:
            ValueError: If the name is not a valid remote name
            AlreadyExistsError: If the name (case-insensitive) is taken
            ConfigError: If the registry could not be saved
        """
        remote.name = validate_remote_name(remote.name)
        with self._lock:
            existing = self.get_by_name(remote.name)
            if existing is not None or remote.id in self._remotes:
                raise AlreadyExistsError(f"A remote named '{remote.name}' already exists")
            self._remotes[remote.id] = remote
            try:
                self._save()
            except ConfigError:
                del self._remotes[remote.id]
                raise
        logger.info(f"Added remote '{remote.name}' ({remote.provider.value}, id={remote.id})")
        self._notify()
        return remote

    def remove(self, remote_id: str) -> bool:
        """
        Remove a remote and everything bound to it.

        Returns False when the remote is already gone. A hook failure
        propagates and leaves the record in place.
        """
        with self._lock:
            remote = self._remotes.get(remote_id)
            if remote is None:
                logger.debug(f"Remove: remote {remote_id} already gone")
                return False
            # get_active() hides the remote until the cascade is over
            self._removing.add(remote_id)

        try:
            # Hooks run without the registry lock; they call back into other components.
            for name, hook in self._hooks:
                logger.debug(f"Removing '{remote.name}': {name}")
                hook(remote)

            with self._lock:
                removed = self._remotes.pop(remote_id, None)
                if removed is None:
                    return False
                try:
                    self._save()
                except ConfigError:
                    self._remotes[remote_id] = removed
                    raise
        finally:
            with self._lock:
                self._removing.discard(remote_id)
        logger.info(f"Removed remote '{remote.name}' (id={remote_id})")
        self._notify()
        return True

    def update_auth_state(self, remote_id: str, state: AuthState) -> Optional[RemoteConnection]:
        with self._lock:
            remote = self._remotes.get(remote_id)
            if remote is None:
                return None
            if remote.auth_state == state:
                return remote
            previous = remote.auth_state
            remote.auth_state = state
            if state == AuthState.AUTHORIZED:
                remote.created_at = utc_now_iso()
            try:
                self._save()
            except ConfigError:
                remote.auth_state = previous
                raise
        logger.info(f"Remote '{remote.name}' auth state: {previous.value} -> {state.value}")
        self._notify()
        return remote

    def mark_expired(self, remote_id: str) -> None:
        self.update_auth_state(remote_id, AuthState.EXPIRED)

    def mark_scanned(self, remote_id: str, when: Optional[str] = None) -> None:
        with self._lock:
            remote = self._remotes.get(remote_id)
            if remote is None:
                return
            previous = remote.last_scanned_at
            remote.last_scanned_at = when or utc_now_iso()
            try:
                self._save()
            except ConfigError as e:
                remote.last_scanned_at = previous
                logger.warning(f"Could not record scan time for '{remote.name}': {e}")

    def _save(self):
        self.store.save_remotes([r.to_dict() for r in self._remotes.values()])

    def _notify(self):
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.warning(f"Registry listener failed: {e}")
