"""
Capture module for camstream.

Device access and raw frame decoding:
    - CaptureSource: protocol for an opened device, with an OpenCV/V4L2 implementation
    - ImageCodec: protocol for raw frame decoders, with an OpenCV implementation
"""

from .codec import ImageCodec, OpenCVCodec
from .frame import (
    SUPPORTED_FOURCC,
    CaptureParameters,
    RawFrame,
    normalize_fourcc
)
from .source import (
    CaptureSource,
    OpenCVCaptureSource,
    open_opencv_source,
    probe_device
)

__all__ = [
    "ImageCodec",
    "OpenCVCodec",
    "SUPPORTED_FOURCC",
    "CaptureParameters",
    "RawFrame",
    "normalize_fourcc",
    "CaptureSource",
    "OpenCVCaptureSource",
    "open_opencv_source",
    "probe_device"
]
