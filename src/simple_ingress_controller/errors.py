"""Exception types raised while reconciling."""

from __future__ import annotations

from typing import Any


class ControllerError(Exception):
    """Base class for controller errors."""


class TransientStoreError(ControllerError):
    """The API server call failed in a way that may succeed on retry."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PermanentConfigError(ControllerError):
    """Desired state cannot be built or is rejected; retrying will not help."""


class CacheSyncError(ControllerError):
    """The informer caches did not reach an initial consistent view."""
