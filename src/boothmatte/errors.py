from __future__ import annotations


class MattingError(Exception):
    """Base class for matting engine failures."""


class ModelUnavailableError(MattingError, FileNotFoundError):
    """No usable model artifact for the requested model type."""


class DimensionMismatchError(MattingError, ValueError):
    """Mask and image sizes still disagree after a forced resize."""


class SessionClosedError(MattingError, RuntimeError):
    """Inference was requested on a disposed session."""
