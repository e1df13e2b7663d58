"""Error taxonomy for gesture-scroll.

Every failure raised by the core carries one of these types so callers can
decide where to recover:

- TransferError: one asset stream failed. Always escalated to PreloadError.
- PreloadError: the batch download failed. Recovered by falling back to
  direct remote URLs for every asset.
- DeviceAccessError: the camera could not be acquired or died. Disables the
  gesture path only.
- InferenceSubmissionError: a single frame submission failed. Logged, the
  capture loop keeps going.
"""

from __future__ import annotations

from typing import Optional


class GestureScrollError(Exception):
    """Base class for all gesture-scroll errors."""


class ConfigError(GestureScrollError):
    """Configuration file is malformed or holds invalid values."""


class TransferError(GestureScrollError):
    """A single asset stream failed or returned a non-success status."""

    def __init__(self, identifier: str, message: str = "", status: Optional[int] = None):
        self.identifier = identifier
        self.status = status
        detail = message or (f"HTTP {status}" if status is not None else "transfer failed")
        super().__init__(f"{identifier}: {detail}")


class PreloadError(GestureScrollError):
    """The asset batch could not be preloaded. No partial result exists."""


class DeviceAccessError(GestureScrollError):
    """Camera access failed (permission denied, no device, device lost, busy)."""

    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    DEVICE_LOST = "device_lost"
    UNAVAILABLE = "unavailable"

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or reason)


class InferenceSubmissionError(GestureScrollError):
    """Submitting a frame to the inference engine failed."""
