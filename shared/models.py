"""
Data models for remotes, directory listings, serve instances and settings.

This module defines the core data structures used throughout the streaming
subsystem for representing remote connections, cached listings and the
single serving slot.
"""

from dataclasses import dataclass, asdict, field, fields
from typing import List, Dict, Optional, Any
from enum import Enum
from pathlib import PurePosixPath
import json
import uuid
from datetime import datetime, timezone

from shared.constants import (
    DEFAULT_CACHE_DIR,
    DEFAULT_CACHE_MAX_SIZE_MB,
    DEFAULT_CACHE_MAX_AGE_HOURS,
    DEFAULT_LISTING_TTL_SECONDS,
    DEFAULT_PROXY_PORT,
    DEFAULT_STARTUP_TIMEOUT_SECONDS,
    DEFAULT_AUTH_TIMEOUT_SECONDS,
    DEFAULT_IDLE_TIMEOUT_MINUTES,
    DEFAULT_TERMINATE_GRACE_SECONDS,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    VIDEO_EXTENSIONS,
)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class Provider(Enum):
    """Cloud storage providers that authorize through a browser."""
    DRIVE = "drive"
    ONEDRIVE = "onedrive"
    DROPBOX = "dropbox"
    BOX = "box"
    PCLOUD = "pcloud"


class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"


class AuthStatus(Enum):
    """Status of one interactive authorization flow."""
    PENDING = "pending"
    AUTHORIZED = "authorized"
    FAILED = "failed"
    TIMEOUT = "timeout"


class ServeState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


@dataclass
class RemoteConnection:
    """
    A configured cloud storage connection.

    Attributes:
        id: Unique identifier
        name: Unique display name, also the rclone section name
        provider: Storage provider type
        auth_state: Authorization state
        created_at: ISO timestamp of successful authorization
        last_scanned_at: ISO timestamp of the last successful listing
    """
    id: str
    name: str
    provider: Provider
    auth_state: AuthState = AuthState.AUTHORIZED
    created_at: str = field(default_factory=utc_now_iso)
    last_scanned_at: Optional[str] = None

    @staticmethod
    def generate_id() -> str:
        """Generate a unique remote ID."""
        return uuid.uuid4().hex[:12]

    @classmethod
    def create(cls, name: str, provider: Provider) -> 'RemoteConnection':
        return cls(id=cls.generate_id(), name=name, provider=provider)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['provider'] = self.provider.value
        data['auth_state'] = self.auth_state.value
        return data

    def to_public_dict(self) -> Dict[str, Any]:
        """The view handed to collaborators."""
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider.value,
            "auth_state": self.auth_state.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RemoteConnection':
        """Create RemoteConnection from dictionary, filtering unknown keys."""
        field_names = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in field_names}
        filtered['provider'] = Provider(filtered['provider'])
        filtered['auth_state'] = AuthState(filtered.get('auth_state', AuthState.AUTHORIZED.value))
        return cls(**filtered)


@dataclass
class DirectoryEntry:
    """
    One file or folder inside a cached remote directory listing.

    ``path`` is the listed directory, normalized without leading or trailing
    slashes ("" is the remote root).
    """
    remote_id: str
    path: str
    name: str
    is_directory: bool
    size_bytes: int
    modified_at: Optional[str]
    cached_at: float

    @property
    def entry_path(self) -> str:
        """Full remote path of this entry, with a leading slash."""
        return "/" + str(PurePosixPath(self.path, self.name)).lstrip("/")

    @property
    def is_media(self) -> bool:
        return (not self.is_directory
                and PurePosixPath(self.name).suffix.lower() in VIDEO_EXTENSIONS)

    def sort_key(self):
        """Directories first, then lexicographic by name."""
        return (not self.is_directory, self.name)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['entry_path'] = self.entry_path
        return data


@dataclass
class ServeInstance:
    """
    The single serving slot.

    ``handle`` is the supervised process handle; it is never serialized.
    """
    remote_id: str
    remote_name: str
    port: int
    rc_port: int
    handle: Any = None
    started_at: float = 0.0
    state: ServeState = ServeState.STOPPED
    error: Optional[Exception] = None
    last_activity: float = 0.0
    bytes_served: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remote_id": self.remote_id,
            "remote_name": self.remote_name,
            "port": self.port,
            "pid": getattr(self.handle, "pid", None),
            "started_at": self.started_at,
            "state": self.state.value,
            "error": str(self.error) if self.error else None,
            "bytes_served": self.bytes_served,
        }


@dataclass
class CacheStats:
    """On-disk usage of one remote's cache namespace. Derived, not authoritative."""
    remote_id: str
    total_bytes_on_disk: int = 0
    file_count: int = 0
    oldest_entry_age: Optional[float] = None  # seconds
    max_size_bytes: int = 0
    max_age_seconds: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['bytes'] = self.total_bytes_on_disk
        data['oldest_age'] = self.oldest_entry_age
        return data


@dataclass
class StreamConfig:
    """
    Application settings persisted in config.json.

    Holds the remote registry and the cache bounds handed to the serving
    process.
    """
    rclone_path: Optional[str] = None
    cache_dir: str = DEFAULT_CACHE_DIR
    cache_max_size_mb: int = DEFAULT_CACHE_MAX_SIZE_MB
    cache_max_age_hours: int = DEFAULT_CACHE_MAX_AGE_HOURS
    listing_ttl_seconds: int = DEFAULT_LISTING_TTL_SECONDS
    proxy_port: int = DEFAULT_PROXY_PORT
    startup_timeout_seconds: float = DEFAULT_STARTUP_TIMEOUT_SECONDS
    auth_timeout_seconds: float = DEFAULT_AUTH_TIMEOUT_SECONDS
    idle_timeout_minutes: float = DEFAULT_IDLE_TIMEOUT_MINUTES
    terminate_grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS
    command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS
    open_browser: bool = True
    cleanup_cache_on_start: bool = True
    remotes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def cache_max_size_bytes(self) -> int:
        return int(self.cache_max_size_mb) * 1024 * 1024

    @property
    def cache_max_age_seconds(self) -> int:
        return int(self.cache_max_age_hours) * 3600

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StreamConfig':
        """Create StreamConfig from dictionary, filtering unknown keys."""
        field_names = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in field_names}
        if not isinstance(filtered.get('remotes', []), list):
            filtered['remotes'] = []
        return cls(**filtered)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> 'StreamConfig':
        return cls.from_dict(json.loads(json_str))
