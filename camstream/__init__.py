"""
camstream: Rectified Camera Streams
===================================

Acquire frames from one camera or a stereo pair and return geometrically
corrected images ready for computer-vision processing.

Modules:
    core: Stream builder, rectification engine and stream objects
    calibration: Lens and stereo calibration models
    capture: Capture device access and raw frame decoding
    frames: Result types returned by streams

Example:
    >>> from camstream import CamStreamBuilder
    >>>
    >>> camera = (CamStreamBuilder()
    ...     .mono()
    ...     .path("/dev/video1")
    ...     .rectif_params_from_file("mono_rectif_params.yaml")
    ...     .interval(1, 30)
    ...     .resolution(640, 480)
    ...     .format(b"MJPG")
    ...     .build())
    >>>
    >>> image = camera.capture()
    >>> print(image.width, image.height)
"""

__version__ = "0.1.0"

from .calibration import CalibrationModel, StereoCalibrationModel
from .core.builder import CamStreamBuilder
from .core.rectification import RectificationEngine, RectificationMap
from .core.stream import CamStream, MonoCamStream, StereoCamStream, SyncPolicy
from .errors import (
    CalibrationError,
    CamStreamError,
    CaptureError,
    ConfigurationError,
    DeviceError,
    SynchronizationError
)
from .frames import RectifiedImage, StereoFrame

__all__ = [
    "CamStreamBuilder",
    "CamStream",
    "MonoCamStream",
    "StereoCamStream",
    "SyncPolicy",
    "RectificationEngine",
    "RectificationMap",
    "CalibrationModel",
    "StereoCalibrationModel",
    "RectifiedImage",
    "StereoFrame",
    "CamStreamError",
    "ConfigurationError",
    "DeviceError",
    "CalibrationError",
    "CaptureError",
    "SynchronizationError",
    "__version__",
]
