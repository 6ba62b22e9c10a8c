"""
Error Module

Exceptions raised by camstream. Build-time errors abort stream construction;
capture-time errors leave the stream usable for the next call.
"""


class CamStreamError(Exception):
    """Base class for all camstream errors."""


class ConfigurationError(CamStreamError):
    """Missing, conflicting or unsupported builder configuration."""


class DeviceError(CamStreamError):
    """Capture device not found, not accessible, busy or failed to open."""

    def __init__(self, message: str, path=None):
        super().__init__(message)
        self.path = path


class CalibrationError(CamStreamError):
    """Malformed calibration source or a model that does not fit the stream."""


class CaptureError(CamStreamError):
    """Device I/O failure, frame timeout or decode failure during capture."""


class SynchronizationError(CamStreamError):
    """
    Stereo grabs stayed outside the skew tolerance after all retries.

    Attributes:
        skew: Last measured skew in seconds
        attempts: Number of grab attempts made
    """

    def __init__(self, message: str, skew: float, attempts: int):
        super().__init__(message)
        self.skew = skew
        self.attempts = attempts
