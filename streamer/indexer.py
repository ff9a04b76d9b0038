"""
Remote directory listings with a persistent last-known-good cache.

Listings are stored in SQLite so degraded browsing keeps working across
restarts. Concurrent requests for the same (remote, path) share one
``rclone lsjson`` call. A recursive listing of a folder is cached separately
from its plain listing.
"""

import logging
import sqlite3
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from shared.constants import DEFAULT_LISTING_TTL_SECONDS, DEFAULT_COMMAND_TIMEOUT_SECONDS
from shared.errors import (
    AuthError,
    NotFoundError,
    OperationFailed,
    RetryableError,
)
from shared.models import DirectoryEntry, RemoteConnection
from streamer.rclone import (
    RcloneCommands,
    classify_failure,
    listing_order,
    normalize_path,
    parse_listing,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

ListingKey = Tuple[str, str, bool]


class DirectoryIndexer:
    """Cache-or-fetch directory listings for configured remotes."""

    def __init__(self, supervisor, commands: RcloneCommands, db_path: str,
                 resolve_remote: Callable[[str], Optional[RemoteConnection]],
                 ttl_seconds: float = DEFAULT_LISTING_TTL_SECONDS,
                 command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
                 on_auth_error: Optional[Callable[[str], None]] = None,
                 on_scanned: Optional[Callable[[str], None]] = None):
        self.supervisor = supervisor
        self.commands = commands
        self.db_path = Path(db_path).expanduser()
        self.resolve_remote = resolve_remote
        self.ttl_seconds = ttl_seconds
        self.command_timeout = command_timeout
        self.on_auth_error = on_auth_error
        self.on_scanned = on_scanned

        self.lock = threading.Lock()
        self._inflight_lock = threading.Lock()
        self._inflight: Dict[ListingKey, Future] = {}
        # bumped by drop(); a fetch that started before the drop does not store
        self._generations: Dict[str, int] = {}
        self._init_db()

    def _init_db(self):
        """Initialize SQLite database for listing storage."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.lock:
            self.conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=20
            )
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

            version = self.conn.execute("PRAGMA user_version").fetchone()[0]
            if version < SCHEMA_VERSION:
                # Only cached listings live here; an old layout is simply rebuilt.
                self.conn.execute("DROP TABLE IF EXISTS entries")
                self.conn.execute("DROP TABLE IF EXISTS listings")

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS listings (
                    remote_id TEXT NOT NULL,
                    path TEXT NOT NULL,
                    recursive INTEGER NOT NULL DEFAULT 0,
                    cached_at REAL NOT NULL,
                    PRIMARY KEY (remote_id, path, recursive)
                )
            """)
            # No unique key on name: some providers allow duplicate names in a folder.
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    remote_id TEXT NOT NULL,
                    path TEXT NOT NULL,
                    recursive INTEGER NOT NULL DEFAULT 0,
                    parent TEXT NOT NULL,
                    name TEXT NOT NULL,
                    is_directory INTEGER NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    modified_at TEXT
                )
            """)
            self.conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_entries_listing
                ON entries (remote_id, path, recursive)
            """)
            self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            self.conn.commit()

    def close(self):
        with self.lock:
            self.conn.close()

    def __del__(self):
        if hasattr(self, 'conn'):
            try:
                self.conn.close()
            except sqlite3.Error:
                pass

    def list(self, remote_id: str, path: str = "", force_refresh: bool = False,
             media_only: bool = False, recursive: bool = False) -> List[DirectoryEntry]:
        """
        List a remote directory, directories first then by name.

        Args:
            remote_id: Registry id of the remote
            path: Directory inside the remote ("/" or "" for the root)
            force_refresh: Ignore a fresh cached listing
            media_only: Keep only directories and video files
            recursive: Every file below the directory instead of one level;
                folders themselves are omitted

        Raises:
            NotFoundError: Unknown remote, or the directory no longer exists
            AuthError: The remote's authorization has expired
            RetryableError: Fetch failed; carries the stale listing if one exists
        """
        rel = normalize_path(path)
        generation = self._generation(remote_id)
        remote = self.resolve_remote(remote_id)
        if remote is None:
            raise NotFoundError(f"Unknown remote: {remote_id}")

        key = (remote_id, rel, recursive)
        entries = None
        if not force_refresh:
            entries = self._fresh(key)
        if entries is None:
            entries = self._fetch_shared(remote, key, force_refresh, generation)

        if media_only:
            entries = [e for e in entries if e.is_directory or e.is_media]
        return entries

    def cached(self, remote_id: str, path: str = "",
               recursive: bool = False) -> Tuple[Optional[List[DirectoryEntry]], Optional[float]]:
        """Last stored listing regardless of age, and when it was fetched."""
        return self._load((remote_id, normalize_path(path), recursive))

    def invalidate(self, remote_id: str, path: Optional[str] = None) -> None:
        """Mark a listing (or all listings of a remote) stale without deleting it."""
        expired = time.time() - self.ttl_seconds
        with self.lock:
            if path is None:
                self.conn.execute("UPDATE listings SET cached_at = MIN(cached_at, ?) WHERE remote_id = ?",
                                  (expired, remote_id))
            else:
                self.conn.execute("UPDATE listings SET cached_at = MIN(cached_at, ?) "
                                  "WHERE remote_id = ? AND path = ?",
                                  (expired, remote_id, normalize_path(path)))
            self.conn.commit()

    def drop(self, remote: RemoteConnection) -> None:
        """Removal hook: forget every listing of the remote."""
        with self.lock:
            self._generations[remote.id] = self._generations.get(remote.id, 0) + 1
            with self.conn:
                self.conn.execute("DELETE FROM entries WHERE remote_id = ?", (remote.id,))
                self.conn.execute("DELETE FROM listings WHERE remote_id = ?", (remote.id,))
        logger.debug(f"Dropped cached listings for '{remote.name}'")

    def _generation(self, remote_id: str) -> int:
        with self.lock:
            return self._generations.get(remote_id, 0)

    def _fresh(self, key: ListingKey) -> Optional[List[DirectoryEntry]]:
        entries, cached_at = self._load(key)
        if entries is None or time.time() - cached_at >= self.ttl_seconds:
            return None
        return entries

    def _fetch_shared(self, remote: RemoteConnection, key: ListingKey,
                      force_refresh: bool, generation: int) -> List[DirectoryEntry]:
        _, rel, _ = key
        with self._inflight_lock:
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                # A fetch may have completed since the first cache check.
                if not force_refresh:
                    entries = self._fresh(key)
                    if entries is not None:
                        return entries
                future = Future()
                self._inflight[key] = future

        if not leader:
            logger.debug(f"Joining in-flight listing of {remote.name}:{rel}")
            try:
                return future.result(timeout=self.command_timeout + 5)
            except FutureTimeout:
                raise self._retryable(key, f"Listing {remote.name}:/{rel} is still running")

        try:
            entries = self._fetch(remote, key, generation)
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(entries)
            return entries
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    def _fetch(self, remote: RemoteConnection, key: ListingKey,
               generation: int) -> List[DirectoryEntry]:
        _, rel, recursive = key
        started = time.time()
        logger.info(f"Listing {remote.name}:/{rel}{' (recursive)' if recursive else ''}")
        try:
            result = self.supervisor.run(self.commands.list_dir(remote.name, rel, recursive),
                                         timeout=self.command_timeout)
            if not result.ok:
                raise classify_failure(result.output, result.returncode, context="list")
            entries = parse_listing(result.stdout, remote.id, rel, started, recursive)
        except AuthError:
            logger.warning(f"Authorization for '{remote.name}' has expired")
            if self.on_auth_error:
                self.on_auth_error(remote.id)
            raise
        except NotFoundError:
            self._delete_path(remote.id, rel)
            raise
        except (RetryableError, OperationFailed) as e:
            logger.warning(f"Listing {remote.name}:/{rel} failed: {e}")
            raise self._retryable(key, str(e), e.detail) from e

        if not self._store(key, entries, started, generation):
            logger.debug(f"'{remote.name}' was removed while listing {rel or '/'}; not cached")
            return entries
        if self.on_scanned:
            self.on_scanned(remote.id)
        logger.debug(f"Listed {len(entries)} entries in {remote.name}:/{rel} "
                     f"({time.time() - started:.2f}s)")
        return entries

    def _retryable(self, key: ListingKey, message: str,
                   detail: Optional[str] = None) -> RetryableError:
        stale, cached_at = self._load(key)
        return RetryableError(message, detail, stale_entries=stale, cached_at=cached_at)

    def _load(self, key: ListingKey) -> Tuple[Optional[List[DirectoryEntry]], Optional[float]]:
        remote_id, rel, recursive = key
        with self.lock:
            row = self.conn.execute(
                "SELECT cached_at FROM listings WHERE remote_id = ? AND path = ? AND recursive = ?",
                (remote_id, rel, int(recursive))
            ).fetchone()
            if row is None:
                return None, None
            cached_at = row[0]
            rows = self.conn.execute(
                "SELECT parent, name, is_directory, size_bytes, modified_at FROM entries "
                "WHERE remote_id = ? AND path = ? AND recursive = ? ORDER BY rowid",
                (remote_id, rel, int(recursive))
            ).fetchall()

        entries = [
            DirectoryEntry(remote_id=remote_id, path=parent, name=name,
                           is_directory=bool(is_dir), size_bytes=size,
                           modified_at=modified, cached_at=cached_at)
            for parent, name, is_dir, size, modified in rows
        ]
        return listing_order(entries, recursive), cached_at

    def _store(self, key: ListingKey, entries: List[DirectoryEntry], cached_at: float,
               generation: int) -> bool:
        """Replace one listing in a single transaction; False if the remote was dropped meanwhile."""
        remote_id, rel, recursive = key
        with self.lock:
            if self._generations.get(remote_id, 0) != generation:
                return False
            with self.conn:
                self.conn.execute(
                    "DELETE FROM entries WHERE remote_id = ? AND path = ? AND recursive = ?",
                    (remote_id, rel, int(recursive)))
                self.conn.executemany(
                    "INSERT INTO entries "
                    "(remote_id, path, recursive, parent, name, is_directory, size_bytes, modified_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    [(remote_id, rel, int(recursive), e.path, e.name, int(e.is_directory),
                      e.size_bytes, e.modified_at)
                     for e in entries]
                )
                self.conn.execute(
                    "INSERT OR REPLACE INTO listings (remote_id, path, recursive, cached_at) "
                    "VALUES (?, ?, ?, ?)",
                    (remote_id, rel, int(recursive), cached_at)
                )
        return True

    def _delete_path(self, remote_id: str, rel: str):
        """The folder is gone: forget its plain and recursive listings."""
        with self.lock:
            with self.conn:
                self.conn.execute("DELETE FROM entries WHERE remote_id = ? AND path = ?",
                                  (remote_id, rel))
                self.conn.execute("DELETE FROM listings WHERE remote_id = ? AND path = ?",
                                  (remote_id, rel))
