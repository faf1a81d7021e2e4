"""
Dehazing - Error Types
=======================
Every failure a pipeline run can surface to its caller.

All fatal errors carry the stage they occurred in and the underlying cause.
CapabilityUnavailable is the exception: it is consumed by the capability
resolver and only ever shows up in logs and downgrade records.
"""

from typing import Optional


class DehazingError(Exception):
    """Base error for a failed pipeline run."""

    def __init__(self, message: str, stage: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.stage = stage
        self.cause = cause

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"[{self.stage}] {message}"
        return message


class CapabilityUnavailable(DehazingError):
    """Accelerated backend missing or failed to initialize."""


class DecodeError(DehazingError):
    """Input bytes are not a decodable image."""


class TransformError(DehazingError):
    """Pixel transform failed (recoverable once for the accelerated path)."""


class EncodeError(DehazingError):
    """Output encoding failed."""


class PipelineBusy(DehazingError):
    """A run is already in progress on this pipeline instance."""


class RunCancelled(DehazingError):
    """The run was cancelled between stages."""
