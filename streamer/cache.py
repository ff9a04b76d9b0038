"""
On-disk byte cache bookkeeping.

rclone owns the VFS cache for each remote under ``<cache_dir>/<remote name>/``
and enforces the size and age bounds itself. This layer observes usage and
reclaims space on request.
"""

import logging
import os
import shutil
import time
from pathlib import Path
from contextlib import nullcontext
from typing import Any, Callable, ContextManager, Dict, Optional

from shared.errors import NotFoundError, OperationFailed
from shared.models import CacheStats, RemoteConnection

logger = logging.getLogger(__name__)


def _allocated_bytes(st: os.stat_result) -> int:
    """Blocks actually allocated; VFS cache files are sparse."""
    blocks = getattr(st, "st_blocks", None)
    if blocks is None:
        return st.st_size
    return blocks * 512


class CacheManager:
    """Reports and reclaims per-remote cache namespaces."""

    def __init__(self, cache_dir: str,
                 resolve_remote: Callable[[str], Optional[RemoteConnection]],
                 exclusive: Optional[Callable[[str], ContextManager]] = None,
                 max_size_bytes: int = 0,
                 max_age_seconds: int = 0):
        self.cache_dir = Path(cache_dir).expanduser()
        self.resolve_remote = resolve_remote
        self.exclusive = exclusive or (lambda remote_id: nullcontext())
        self.max_size_bytes = max_size_bytes
        self.max_age_seconds = max_age_seconds
        self._init_cache()

    def _init_cache(self):
        """Ensure cache directory exists."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def namespace(self, remote: RemoteConnection) -> Path:
        return self.cache_dir / remote.name

    def stats(self, remote_id: str) -> CacheStats:
        """Aggregate on-disk usage. Unknown remotes report zero."""
        stats = CacheStats(remote_id=remote_id,
                           max_size_bytes=self.max_size_bytes,
                           max_age_seconds=self.max_age_seconds)
        remote = self.resolve_remote(remote_id)
        if remote is None:
            return stats

        oldest = None
        for path, st in self._walk_files(self.namespace(remote)):
            stats.total_bytes_on_disk += _allocated_bytes(st)
            stats.file_count += 1
            if oldest is None or st.st_mtime < oldest:
                oldest = st.st_mtime
        if oldest is not None:
            stats.oldest_entry_age = max(0.0, time.time() - oldest)
        return stats

    def clear(self, remote_id: str) -> int:
        """
        Delete a remote's whole cache namespace.

        Returns:
            Bytes freed

        Raises:
            NotFoundError: If the remote is unknown
            BusyError: While the remote is being served
        """
        remote = self._require(remote_id)
        with self.exclusive(remote_id):
            freed = self.stats(remote_id).total_bytes_on_disk
            self._rmtree(self.namespace(remote))
        logger.info(f"Cleared cache for '{remote.name}' ({freed} bytes)")
        return freed

    def cleanup_expired(self, remote_id: str, max_age: Optional[float] = None) -> Dict[str, Any]:
        """
        Delete cached files older than ``max_age`` seconds and prune empty folders.

        Raises:
            NotFoundError: If the remote is unknown
            BusyError: While the remote is being served
        """
        remote = self._require(remote_id)
        max_age = self.max_age_seconds if max_age is None else max_age
        cutoff = time.time() - max_age
        root = self.namespace(remote)

        removed = 0
        freed = 0
        with self.exclusive(remote_id):
            for path, st in list(self._walk_files(root)):
                if st.st_mtime >= cutoff:
                    continue
                try:
                    os.remove(path)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise OperationFailed(f"Could not remove cached file {path.name}", str(e))
                removed += 1
                freed += _allocated_bytes(st)
            pruned = self._prune_empty_dirs(root)

        logger.info(f"Cache cleanup for '{remote.name}': {removed} file(s), "
                    f"{freed} bytes, {pruned} empty folder(s)")
        return {"files_removed": removed, "bytes_freed": freed, "dirs_removed": pruned}

    def purge(self, remote: RemoteConnection) -> None:
        """Removal hook: the serving process is already stopped."""
        with self.exclusive(remote.id):
            self._rmtree(self.namespace(remote))

    def usage(self) -> int:
        """Total bytes used by every namespace."""
        return sum(_allocated_bytes(st) for _, st in self._walk_files(self.cache_dir))

    def _require(self, remote_id: str) -> RemoteConnection:
        remote = self.resolve_remote(remote_id)
        if remote is None:
            raise NotFoundError(f"Unknown remote: {remote_id}")
        return remote

    @staticmethod
    def _walk_files(root: Path):
        if not root.is_dir():
            return
        for dirpath, _dirnames, filenames in os.walk(root):
            for filename in filenames:
                path = Path(dirpath) / filename
                try:
                    yield path, os.lstat(path)
                except FileNotFoundError:
                    continue

    @staticmethod
    def _prune_empty_dirs(root: Path) -> int:
        if not root.is_dir():
            return 0
        pruned = 0
        for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
            path = Path(dirpath)
            if path == root:
                continue
            try:
                path.rmdir()
                pruned += 1
            except OSError:
                continue  # not empty
        return pruned

    @staticmethod
    def _rmtree(path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise OperationFailed(f"Could not delete cache folder {path.name}", str(e))
