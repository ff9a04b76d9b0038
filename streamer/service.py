"""
Streaming service facade.

Wires the configuration store, supervisor, registry, indexer, cache manager,
authorization broker and stream gateway together and exposes the operations
used by the HTTP API and the CLI.
"""

import atexit
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from shared.config import ConfigStore
from shared.errors import AuthError, BusyError, OperationFailed, RetryableError
from shared.models import RemoteConnection
from streamer.cache import CacheManager
from streamer.gateway import StreamGateway, http_ready, rc_bytes_served
from streamer.indexer import DirectoryIndexer
from streamer.oauth import OAuthBroker
from streamer.rclone import RcloneCommands, classify_failure, normalize_path, parse_about, resolve_binary
from streamer.registry import RemoteRegistry
from streamer.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

EventListener = Callable[[str, Dict[str, Any]], None]


class StreamService:
    """
    Entry point for collaborators.

    Args:
        config_dir: Directory holding config.json, rclone.conf and listings.db
        store: Pre-built configuration store (overrides config_dir)
        supervisor: Process supervisor; a real one is created when omitted
        rclone_binary: rclone executable; resolved from config/PATH when omitted
        probe: Readiness probe for serving processes
        stats_probe: Served-bytes probe for idle detection

    Raises:
        ConfigError: If rclone cannot be found or the configuration is unreadable
    """

    def __init__(self, config_dir: Optional[str] = None, store: Optional[ConfigStore] = None,
                 supervisor=None, rclone_binary: Optional[str] = None,
                 probe=http_ready, stats_probe=rc_bytes_served):
        self.store = store or ConfigStore(config_dir)
        self.config = self.store.load()
        self.binary = rclone_binary or resolve_binary(self.config.rclone_path)
        self.commands = RcloneCommands(self.binary, str(self.store.rclone_config_path))
        self.supervisor = supervisor or ProcessSupervisor(
            command_timeout=self.config.command_timeout_seconds,
            terminate_grace=self.config.terminate_grace_seconds)

        self.registry = RemoteRegistry(self.store)
        self.gateway = StreamGateway(self.registry, self.supervisor, self._serve_command,
                                     self.config, probe=probe, stats_probe=stats_probe)
        self.indexer = DirectoryIndexer(
            self.supervisor, self.commands, str(self.store.listings_db_path),
            resolve_remote=self.registry.get_active,
            ttl_seconds=self.config.listing_ttl_seconds,
            command_timeout=self.config.command_timeout_seconds,
            on_auth_error=self.registry.mark_expired,
            on_scanned=self.registry.mark_scanned)
        self.cache = CacheManager(self.config.cache_dir, self.registry.get,
                                  exclusive=self.gateway.exclusive,
                                  max_size_bytes=self.config.cache_max_size_bytes,
                                  max_age_seconds=self.config.cache_max_age_seconds)
        self.broker = OAuthBroker(self.supervisor, self.commands, self.registry,
                                  auth_timeout=self.config.auth_timeout_seconds,
                                  open_browser=self.config.open_browser)

        self.registry.add_removal_hook("stop stream", self.gateway.stop_remote)
        self.registry.add_removal_hook("drop listings", self.indexer.drop)
        self.registry.add_removal_hook("purge cache", self.cache.purge)
        self.registry.add_removal_hook("delete credentials", self.broker.revoke)

        self._listeners: List[EventListener] = []
        self.registry.add_listener(lambda: self._publish("remotes_updated", {"remotes": self.list_remotes()}))
        self.broker.add_listener(lambda data: self._publish("auth_status", data))
        self.gateway.add_listener(lambda data: self._publish("stream_status", data))

        self._shutdown_lock = threading.Lock()
        self._closed = False
        atexit.register(self.shutdown)
        if self.config.cleanup_cache_on_start:
            self.cleanup_expired_caches()
        logger.info(f"Streaming service ready (rclone: {self.binary}, "
                    f"{len(self.registry.list())} remote(s))")

    def add_event_listener(self, callback: EventListener) -> None:
        """Receive (event name, payload) pushes for the UI channel."""
        self._listeners.append(callback)

    # Remotes

    def list_remotes(self) -> List[Dict[str, Any]]:
        return [r.to_public_dict() for r in self.registry.list()]

    def get_remote(self, remote_id: str) -> Dict[str, Any]:
        return self.registry.require(remote_id).to_dict()

    def add_remote(self, provider: str, name: str) -> Dict[str, Optional[str]]:
        return self.broker.start_authorization(provider, name)

    def poll_authorization(self, token: str) -> Dict[str, Any]:
        return self.broker.poll_status(token)

    def cancel_authorization(self, token: str) -> Dict[str, Any]:
        return self.broker.cancel(token)

    def remove_remote(self, remote_id: str) -> bool:
        removed = self.registry.remove(remote_id)
        if removed:
            self._publish("cache_stats", self.cache_stats(remote_id))
        return removed

    def account_info(self, remote_id: str) -> Dict[str, Any]:
        remote = self.registry.require(remote_id)
        result = self.supervisor.run(self.commands.about(remote.name),
                                     timeout=self.config.command_timeout_seconds)
        if not result.ok:
            error = classify_failure(result.output, result.returncode, context="about")
            if isinstance(error, AuthError):
                self.registry.mark_expired(remote.id)
            raise error
        info = parse_about(result.stdout)
        info["remote_id"] = remote.id
        return info

    # Browsing

    def browse(self, remote_id: str, path: str = "", force_refresh: bool = False,
               media_only: bool = False, recursive: bool = False) -> Dict[str, Any]:
        """
        List a directory, or with ``recursive`` every file below it. When the
        fetch fails but an older listing exists, that listing is returned
        marked stale.
        """
        rel = normalize_path(path)
        try:
            entries = self.indexer.list(remote_id, rel, force_refresh=force_refresh,
                                        media_only=media_only, recursive=recursive)
        except RetryableError as e:
            if e.stale_entries is None:
                raise
            entries = e.stale_entries
            if media_only:
                entries = [x for x in entries if x.is_directory or x.is_media]
            return self._listing(remote_id, rel, entries, e.cached_at, recursive,
                                 stale=True, error=str(e))
        cached_at = entries[0].cached_at if entries else self.indexer.cached(remote_id, rel, recursive)[1]
        return self._listing(remote_id, rel, entries, cached_at, recursive)

    @staticmethod
    def _listing(remote_id: str, rel: str, entries, cached_at: Optional[float], recursive: bool,
                 stale: bool = False, error: Optional[str] = None) -> Dict[str, Any]:
        data = {
            "remote_id": remote_id,
            "path": "/" + rel,
            "recursive": recursive,
            "entries": [e.to_dict() for e in entries],
            "cached_at": cached_at,
            "stale": stale,
        }
        if error:
            data["error"] = error
        return data

    # Streaming

    def get_stream_url(self, remote_id: str, path: str,
                       wait_timeout: Optional[float] = None) -> str:
        return self.gateway.get_stream_url(remote_id, path, wait_timeout=wait_timeout)

    def stream_status(self) -> Dict[str, Any]:
        return self.gateway.status()

    def stop_stream(self) -> bool:
        return self.gateway.stop()

    # Cache

    def cache_stats(self, remote_id: str) -> Dict[str, Any]:
        return self.cache.stats(remote_id).to_dict()

    def clear_cache(self, remote_id: str) -> Dict[str, Any]:
        freed = self.cache.clear(remote_id)
        self._publish("cache_stats", self.cache_stats(remote_id))
        return {"ok": True, "bytes_freed": freed}

    def cleanup_cache(self, remote_id: str, max_age_hours: Optional[float] = None) -> Dict[str, Any]:
        max_age = None if max_age_hours is None else float(max_age_hours) * 3600
        result = self.cache.cleanup_expired(remote_id, max_age)
        self._publish("cache_stats", self.cache_stats(remote_id))
        return result

    def cleanup_expired_caches(self) -> Dict[str, Dict[str, Any]]:
        """Drop expired cache files of every remote that is not streaming."""
        results = {}
        for remote in self.registry.list():
            try:
                results[remote.id] = self.cache.cleanup_expired(remote.id)
            except (BusyError, OperationFailed) as e:
                logger.warning(f"Skipped cache cleanup for '{remote.name}': {e}")
        freed = sum(r["bytes_freed"] for r in results.values())
        if freed:
            logger.info(f"Expired cache cleanup freed {freed / (1024 * 1024):.1f} MB")
        return results

    # Lifecycle

    def health(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "rclone": self.binary,
            "remotes": len(self.registry.list()),
            "stream": self.gateway.status(),
            "pending_authorizations": len(self.broker.pending()),
            "cache_bytes": self.cache.usage(),
        }

    def shutdown(self) -> None:
        """Stop every process this service started. Safe to call repeatedly."""
        with self._shutdown_lock:
            if self._closed:
                return
            self._closed = True
        logger.info("Shutting down streaming service")
        self.broker.shutdown()
        self.gateway.shutdown()
        self.supervisor.shutdown()
        self.indexer.close()

    def _serve_command(self, remote: RemoteConnection, port: int, rc_port: int) -> List[str]:
        namespace = self.cache.namespace(remote)
        namespace.mkdir(parents=True, exist_ok=True)
        return self.commands.serve(remote.name, port, rc_port, str(namespace),
                                   self.config.cache_max_size_bytes,
                                   self.config.cache_max_age_seconds)

    def _publish(self, event: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, payload)
            except Exception as e:
                logger.warning(f"Event listener failed for {event}: {e}")
