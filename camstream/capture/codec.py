"""
Image Codec Module

Turns raw device bytes into a pixel grid. Colour output is BGR, matching
the rest of OpenCV.
"""

import logging
from typing import Protocol, Tuple, runtime_checkable

import cv2
import numpy as np

from ..errors import CaptureError
from .frame import SUPPORTED_FOURCC, RawFrame

logger = logging.getLogger(__name__)


@runtime_checkable
class ImageCodec(Protocol):
    """Protocol for raw frame decoders."""

    supported_formats: Tuple[str, ...]

    def decode(self, frame: RawFrame) -> np.ndarray:
        """Decode a raw frame to an (H, W) or (H, W, 3) uint8 array."""
        ...


class OpenCVCodec:
    """
    Decoder for the FourCC codes in ``SUPPORTED_FOURCC``.

    MJPG is decompressed with ``cv2.imdecode``; uncompressed formats are
    reshaped from the raw buffer and converted to BGR where needed.
    """

    supported_formats = SUPPORTED_FOURCC

    # Bytes per pixel of the uncompressed formats
    _PACKED = {"YUYV": 2, "GREY": 1, "BGR3": 3, "RGB3": 3}

    def decode(self, frame: RawFrame) -> np.ndarray:
        if frame.fourcc not in self.supported_formats:
            raise CaptureError(f"Cannot decode format {frame.fourcc}")

        buffer = np.frombuffer(frame.data, dtype=np.uint8)

        if frame.fourcc == "MJPG":
            image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
            if image is None:
                raise CaptureError(f"Failed to decode {len(frame.data)} byte MJPG frame")
            return image

        channels = self._PACKED[frame.fourcc]
        expected = frame.width * frame.height * channels
        if buffer.size != expected:
            raise CaptureError(
                f"{frame.fourcc} frame has {buffer.size} bytes, expected {expected} "
                f"for {frame.width}x{frame.height}"
            )

        if frame.fourcc == "GREY":
            return buffer.reshape(frame.height, frame.width).copy()

        if frame.fourcc == "YUYV":
            packed = buffer.reshape(frame.height, frame.width, 2)
            return cv2.cvtColor(packed, cv2.COLOR_YUV2BGR_YUYV)

        image = buffer.reshape(frame.height, frame.width, 3)
        if frame.fourcc == "RGB3":
            return cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
        return image.copy()
