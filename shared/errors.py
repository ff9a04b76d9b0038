"""
Error taxonomy for the streaming subsystem.

Every failure that leaves a component is one of these types. Engine output
is translated into them by ``streamer.rclone.classify_failure``; nothing else
parses subprocess text.
"""

from typing import Any, List, Optional


class StreamError(Exception):
    """Base exception for streaming subsystem errors."""

    code = "operation_failed"
    http_status = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        data = {"ok": False, "error": self.message, "code": self.code}
        if self.detail:
            data["detail"] = self.detail
        return data


class ConfigError(StreamError):
    """Missing binary or bad setup. Fatal, surfaced at startup."""

    code = "config_error"
    http_status = 500


class AuthError(StreamError):
    """Expired, revoked or failed authorization. Requires re-authorization."""

    code = "auth_error"
    http_status = 401


class RetryableError(StreamError):
    """
    Listing or stream-start failure the caller may retry with its own backoff.

    Listing failures carry the last-known-good entries so callers can keep
    showing a stale listing.
    """

    code = "retryable"
    http_status = 503

    def __init__(self, message: str, detail: Optional[str] = None,
                 stale_entries: Optional[List[Any]] = None,
                 cached_at: Optional[float] = None):
        super().__init__(message, detail)
        self.stale_entries = stale_entries
        self.cached_at = cached_at


NetworkError = RetryableError


class BusyError(StreamError):
    """A conflicting operation is in progress."""

    code = "busy"
    http_status = 409


class StartupTimeout(StreamError):
    """The serving process did not become healthy within its deadline."""

    code = "startup_timeout"
    http_status = 504


class NotFoundError(StreamError):
    """Unknown remote, token or path."""

    code = "not_found"
    http_status = 404


class AlreadyExistsError(StreamError):
    """A remote with the same name is already configured."""

    code = "already_exists"
    http_status = 409


class OperationFailed(StreamError):
    """Unclassifiable failure. ``detail`` holds redacted diagnostic text."""

    code = "operation_failed"
    http_status = 502
