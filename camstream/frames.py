"""
Frame Module

Result types handed to callers: a single rectified image and a
synchronized stereo pair, each convertible to other pixel representations.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

GRAY8 = "GRAY8"
BGR8 = "BGR8"
BGRA8 = "BGRA8"

_FORMATS_BY_CHANNELS = {1: GRAY8, 3: BGR8, 4: BGRA8}


def pixel_format_of(pixels: np.ndarray) -> str:
    """Return the pixel-format tag for a uint8 image array."""
    channels = 1 if pixels.ndim == 2 else pixels.shape[2]
    try:
        return _FORMATS_BY_CHANNELS[channels]
    except KeyError:
        raise ValueError(f"Unsupported channel count: {channels}") from None


@dataclass(frozen=True)
class RectifiedImage:
    """
    A decoded, geometrically corrected image.

    Attributes:
        pixels: Pixel grid, (H, W) for grayscale or (H, W, C) for colour
        pixel_format: Pixel-format tag (GRAY8, BGR8 or BGRA8)
        timestamp: Monotonic grab time in seconds, if known
    """
    pixels: np.ndarray
    pixel_format: str
    timestamp: Optional[float] = None

    @classmethod
    def from_array(cls, pixels: np.ndarray, timestamp: Optional[float] = None) -> "RectifiedImage":
        return cls(pixels=pixels, pixel_format=pixel_format_of(pixels), timestamp=timestamp)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.pixels.shape

    def to_gray(self) -> np.ndarray:
        """Single-channel uint8 copy."""
        if self.pixel_format == GRAY8:
            return self.pixels.copy()
        if self.pixel_format == BGRA8:
            return cv2.cvtColor(self.pixels, cv2.COLOR_BGRA2GRAY)
        return cv2.cvtColor(self.pixels, cv2.COLOR_BGR2GRAY)

    def to_bgr(self) -> np.ndarray:
        if self.pixel_format == GRAY8:
            return cv2.cvtColor(self.pixels, cv2.COLOR_GRAY2BGR)
        if self.pixel_format == BGRA8:
            return cv2.cvtColor(self.pixels, cv2.COLOR_BGRA2BGR)
        return self.pixels.copy()

    def to_rgb(self) -> np.ndarray:
        if self.pixel_format == GRAY8:
            return cv2.cvtColor(self.pixels, cv2.COLOR_GRAY2RGB)
        if self.pixel_format == BGRA8:
            return cv2.cvtColor(self.pixels, cv2.COLOR_BGRA2RGB)
        return cv2.cvtColor(self.pixels, cv2.COLOR_BGR2RGB)

    def to_float(self) -> np.ndarray:
        """Grayscale float32 image scaled to [0, 1]."""
        return self.to_gray().astype(np.float32) / 255.0


@dataclass(frozen=True)
class StereoFrame:
    """
    A left/right pair acquired within the stream's skew tolerance.

    Only ``StereoCamStream.capture`` builds these, and only once both sides
    are rectified.
    """
    left: RectifiedImage
    right: RectifiedImage

    @property
    def skew(self) -> Optional[float]:
        """Seconds between the left and right grabs."""
        if self.left.timestamp is None or self.right.timestamp is None:
            return None
        return abs(self.left.timestamp - self.right.timestamp)

    def to_luma_pair(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.left.to_gray(), self.right.to_gray()

    def to_rgb_pair(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.left.to_rgb(), self.right.to_rgb()

    def to_float_pair(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.left.to_float(), self.right.to_float()
