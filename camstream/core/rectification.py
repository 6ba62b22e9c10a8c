"""
Rectification Module

Builds per-pixel lookup maps from a calibration model and resamples decoded
frames through them.

Map construction
----------------
For every output pixel (u, v) the map holds the source coordinate it samples:

    1. Back-project (u, v) through the new camera matrix
       (the sensor's own intrinsics, or its rectified projection for stereo)
    2. Rotate by the inverse rectifying rotation (stereo only)
    3. Apply the lens distortion model and project through the sensor intrinsics

Building the map costs O(width * height) and happens once per stream.
Applying it is a bilinear ``remap`` with a constant black border.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from ..calibration.model import CalibrationModel
from ..errors import CalibrationError, CaptureError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RectificationMap:
    """
    Inverse pixel mapping for one sensor at one output resolution.

    Attributes:
        map_x: float32 (height, width) source x coordinates
        map_y: float32 (height, width) source y coordinates
    """
    map_x: np.ndarray
    map_y: np.ndarray

    def __post_init__(self):
        if self.map_x.shape != self.map_y.shape or self.map_x.ndim != 2:
            raise ValueError(
                f"map_x and map_y must be matching 2D arrays, got {self.map_x.shape} "
                f"and {self.map_y.shape}"
            )
        for array in (self.map_x, self.map_y):
            array.setflags(write=False)

    @property
    def width(self) -> int:
        return self.map_x.shape[1]

    @property
    def height(self) -> int:
        return self.map_x.shape[0]

    @property
    def resolution(self):
        """Output size (width, height)."""
        return self.width, self.height


class RectificationEngine:
    """
    Derives rectification maps and applies them to decoded frames.

    Attributes:
        border_value: Fill value for output pixels whose source falls outside the frame

    Example:
        >>> engine = RectificationEngine()
        >>> rect_map = engine.compute_map(model, 640, 480)
        >>> rectified = engine.apply(rect_map, frame)
    """

    def __init__(self, border_value: float = 0):
        self.border_value = border_value

    def compute_map(self, model: CalibrationModel, width: int, height: int) -> RectificationMap:
        """
        Build the inverse mapping for a model at a target resolution.

        Args:
            model: Sensor calibration. A model with a rectifying rotation and
                projection produces an epipolar-aligned map
            width: Output width in pixels
            height: Output height in pixels

        Returns:
            RectificationMap of exactly (height, width)
        """
        if width <= 0 or height <= 0:
            raise ConfigurationError(f"Output resolution must be positive, got {width}x{height}")

        camera_matrix = np.array(model.camera_matrix)
        dist_coeffs = np.array(model.dist_coeffs)

        # initUndistortRectifyMap drops K[0, 1] when projecting into the
        # source image; the skew term is added back once the map is built
        skew = float(camera_matrix[0, 1])
        camera_matrix[0, 1] = 0.0

        if model.is_rectifying:
            rotation = np.array(model.rectification_rotation)
            new_camera_matrix = np.array(model.projection)
        else:
            rotation = np.eye(3)
            new_camera_matrix = np.array(model.camera_matrix)

        try:
            map_x, map_y = cv2.initUndistortRectifyMap(
                camera_matrix,
                dist_coeffs if dist_coeffs.size else None,
                rotation,
                new_camera_matrix,
                (int(width), int(height)),
                cv2.CV_32FC1
            )
        except cv2.error as e:
            raise CalibrationError(f"Cannot build rectification map: {e}") from e

        if skew:
            fy, cy = camera_matrix[1, 1], camera_matrix[1, 2]
            map_x = (map_x + skew * (map_y - cy) / fy).astype(np.float32)

        logger.info(f"Rectification map computed: {width}x{height}"
                    + (" (stereo)" if model.is_rectifying else ""))

        return RectificationMap(map_x=map_x, map_y=map_y)

    def apply(self, rect_map: Optional[RectificationMap], image: np.ndarray) -> np.ndarray:
        """
        Resample an image through a rectification map.

        Args:
            rect_map: Map from ``compute_map``, or None for pass-through
            image: Decoded (H, W) or (H, W, C) image; its size may differ from the map's

        Returns:
            Rectified image with the map's dimensions, or an exact copy of
            ``image`` when ``rect_map`` is None
        """
        if rect_map is None:
            return image.copy()

        border = (self.border_value,) * 4
        try:
            return cv2.remap(
                image,
                rect_map.map_x,
                rect_map.map_y,
                interpolation=cv2.INTER_LINEAR,
                borderMode=cv2.BORDER_CONSTANT,
                borderValue=border
            )
        except cv2.error as e:
            raise CaptureError(f"Rectification failed: {e}") from e
