"""
rclone integration: binary resolution, command builders, output parsers.

This is the only module that reads rclone's text output. Failures are
translated into the typed errors of ``shared.errors`` and every piece of text
that leaves this module passes through ``redact`` first.
"""

import json
import os
import posixpath
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Any
from urllib.parse import quote

from shared.constants import LOOPBACK_HOST
from shared.errors import (
    StreamError,
    ConfigError,
    AuthError,
    RetryableError,
    NotFoundError,
    OperationFailed,
)
from shared.models import DirectoryEntry, Provider

# rclone remote name rules, minus a leading dot so names stay safe directory names
_REMOTE_NAME_RE = re.compile(r"^[\w\-][\w.\- ]*(?<! )$")

_AUTH_URL_RE = re.compile(r"(https?://(?:127\.0\.0\.1|localhost):\d+/auth\S*)")

_SECRET_PATTERNS = [
    (re.compile(r'("(?:access_token|refresh_token|client_secret|id_token)"\s*:\s*")[^"]*(")', re.I), r"\1<redacted>\2"),
    (re.compile(r"((?:access_token|refresh_token|client_secret)\s*[=:]\s*)[^\s,&}]+", re.I), r"\1<redacted>"),
    (re.compile(r"(\btoken\s*=\s*)\{.*?\}", re.I), r"\1<redacted>"),
    (re.compile(r"(\bBearer\s+)[\w\-.~+/]+=*", re.I), r"\1<redacted>"),
]

_AUTH_MARKERS = (
    "invalid_grant",
    "unauthorized_client",
    "invalid_client",
    "token expired",
    "token has been expired or revoked",
    "couldn't fetch token",
    "oauth2: cannot fetch token",
    "failed to refresh token",
    "empty token found",
    "401 unauthorized",
    "error 401",
    "invalid_access_token",
    "expired_access_token",
)

_NOT_FOUND_MARKERS = (
    "directory not found",
    "object not found",
    "file not found",
    "not_found",
    "error 404",
    "didn't find section in config file",
)

_NETWORK_MARKERS = (
    "no such host",
    "connection refused",
    "connection reset",
    "network is unreachable",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "temporary failure in name resolution",
    "dial tcp",
    "ratelimitexceeded",
    "userratelimitexceeded",
    "too_many_requests",
    "error 429",
    "error 500",
    "error 502",
    "error 503",
    "address already in use",
    "unexpected eof",
)

_CONFIG_MARKERS = (
    "unknown command",
    "unknown flag",
    "failed to load config file",
    "couldn't find type of fs",
    "didn't find backend called",
)


def resolve_binary(configured: Optional[str] = None) -> str:
    """
    Locate the rclone executable.

    Raises:
        ConfigError: If no usable binary is found
    """
    if configured:
        candidate = Path(configured).expanduser()
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        resolved = shutil.which(configured)
        if resolved:
            return resolved
        raise ConfigError(f"rclone binary not found at {configured}")

    resolved = shutil.which("rclone")
    if resolved:
        return resolved
    raise ConfigError("rclone binary not found (install rclone or set rclone_path)")


def validate_remote_name(name: str) -> str:
    name = (name or "").strip()
    if not name or not _REMOTE_NAME_RE.match(name):
        raise ValueError(
            f"Invalid remote name {name!r}: use letters, numbers, '_', '-', '.' and spaces")
    return name


def normalize_path(path: Optional[str]) -> str:
    """'/Movies/' -> 'Movies'; '/' and '' -> ''. Rejects '..' segments."""
    parts = [p for p in (path or "").replace("\\", "/").split("/") if p and p != "."]
    if ".." in parts:
        raise ValueError(f"Invalid remote path: {path!r}")
    return "/".join(parts)


def remote_spec(name: str, path: str = "") -> str:
    return f"{name}:{normalize_path(path)}"


class RcloneCommands:
    """Builds rclone argv lists. All commands use the application's own config file."""

    def __init__(self, binary: str, config_path: str):
        self.binary = binary
        self.config_path = str(config_path)

    def _base(self, *args: str) -> List[str]:
        return [self.binary, *args, "--config", self.config_path]

    def authorize(self, name: str, provider: Provider, open_browser: bool = True) -> List[str]:
        cmd = self._base("config", "create", name, provider.value)
        if not open_browser:
            cmd.append("--auth-no-open-browser")
        return cmd

    def delete_remote(self, name: str) -> List[str]:
        return self._base("config", "delete", name)

    def list_dir(self, name: str, path: str, recursive: bool = False) -> List[str]:
        args = [
            "lsjson", remote_spec(name, path),
            "--no-mimetype",
            "--retries", "1",
            "--low-level-retries", "2",
            "--contimeout", "15s",
            "--timeout", "30s",
        ]
        if recursive:
            args += ["--recursive", "--files-only"]
        return self._base(*args)

    def about(self, name: str) -> List[str]:
        return self._base("about", f"{name}:", "--json")

    def serve(self, name: str, port: int, rc_port: int, cache_dir: str,
              max_size_bytes: int, max_age_seconds: int) -> List[str]:
        return self._base(
            "serve", "http", f"{name}:",
            "--addr", f"{LOOPBACK_HOST}:{port}",
            "--read-only",
            "--cache-dir", str(cache_dir),
            "--vfs-cache-mode", "full",
            "--vfs-cache-max-size", f"{int(max_size_bytes)}",
            "--vfs-cache-max-age", f"{int(max_age_seconds)}s",
            "--vfs-read-chunk-size", "32M",
            "--buffer-size", "32M",
            "--dir-cache-time", "5m",
            "--rc",
            "--rc-addr", f"{LOOPBACK_HOST}:{rc_port}",
            "--rc-no-auth",
        )


def redact(text: Optional[str]) -> str:
    """Strip credential material from engine output."""
    if not text:
        return ""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def last_lines(output: str, count: int = 5) -> str:
    lines = [ln.strip() for ln in str(output or "").replace("\r", "\n").splitlines() if ln.strip()]
    return "\n".join(lines[-count:])


def classify_failure(output: str, returncode: Optional[int] = None,
                     context: str = "rclone") -> StreamError:
    """
    Map engine output to the error taxonomy.

    Args:
        output: Combined stderr/stdout of the failed command
        returncode: Process exit code, if it exited
        context: Short operation name for the message

    Returns:
        A StreamError subclass instance (never raised here)
    """
    safe = redact(output)
    detail = last_lines(safe) or None
    lowered = safe.lower()

    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthError(f"{context}: authorization expired or revoked", detail)
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return NotFoundError(f"{context}: not found", detail)
    if any(marker in lowered for marker in _CONFIG_MARKERS):
        return ConfigError(f"{context}: engine configuration error", detail)
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return RetryableError(f"{context}: network error", detail)
    # rclone exit codes: 3 dir not found, 4 file not found, 5 temporary error
    if returncode in (3, 4):
        return NotFoundError(f"{context}: not found", detail)
    if returncode == 5:
        return RetryableError(f"{context}: temporary error", detail)
    return OperationFailed(f"{context} failed (exit code {returncode})", detail)


def find_auth_url(line: str) -> Optional[str]:
    match = _AUTH_URL_RE.search(line or "")
    return match.group(1) if match else None


def listing_order(entries: List[DirectoryEntry], recursive: bool = False) -> List[DirectoryEntry]:
    """Directories first then by name; recursive listings go folder by folder."""
    if recursive:
        return sorted(entries, key=lambda e: (e.path, e.name))
    return sorted(entries, key=DirectoryEntry.sort_key)


def parse_listing(output: str, remote_id: str, path: str, cached_at: float,
                  recursive: bool = False) -> List[DirectoryEntry]:
    """
    Parse ``rclone lsjson`` output into ordered DirectoryEntry objects.

    With ``recursive`` each item's ``Path`` is relative to ``path`` and the
    entry is filed under the folder that actually holds it.

    Raises:
        OperationFailed: If the output is not a JSON list
    """
    try:
        items = json.loads(output or "[]")
    except ValueError as e:
        raise OperationFailed("lsjson returned malformed output", redact(str(e)))
    if not isinstance(items, list):
        raise OperationFailed("lsjson returned unexpected output")

    rel = normalize_path(path)
    entries = []
    for item in items:
        if not isinstance(item, dict) or not item.get("Name"):
            continue
        parent = rel
        if recursive:
            sub = posixpath.dirname(str(item.get("Path") or ""))
            parent = normalize_path(f"{rel}/{sub}")
        is_dir = bool(item.get("IsDir", False))
        size = item.get("Size", 0)
        entries.append(DirectoryEntry(
            remote_id=remote_id,
            path=parent,
            name=str(item["Name"]),
            is_directory=is_dir,
            size_bytes=0 if is_dir or not isinstance(size, int) or size < 0 else size,
            modified_at=item.get("ModTime"),
            cached_at=cached_at,
        ))
    return listing_order(entries, recursive)


def parse_about(output: str) -> Dict[str, Any]:
    """Parse ``rclone about --json``; missing fields are reported as None."""
    try:
        data = json.loads(output or "{}")
    except ValueError as e:
        raise OperationFailed("about returned malformed output", redact(str(e)))
    return {
        "total": data.get("total"),
        "used": data.get("used"),
        "free": data.get("free"),
        "trashed": data.get("trashed"),
    }


def serve_path_url(port: int, path: str) -> str:
    """URL of a remote file on the local serving process."""
    return f"http://{LOOPBACK_HOST}:{port}/{quote(normalize_path(path), safe='/')}"
