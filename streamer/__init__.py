"""Cloud-backed media streaming: rclone supervision, listings, cache and local stream URLs."""

from .service import StreamService
from .gateway import StreamGateway
from .registry import RemoteRegistry

__all__ = ["StreamService", "StreamGateway", "RemoteRegistry"]
