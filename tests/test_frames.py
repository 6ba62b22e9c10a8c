"""
Unit tests for frame result types.
"""

import pytest
import dataclasses
import numpy as np
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from camstream.frames import (
    BGR8,
    GRAY8,
    RectifiedImage,
    StereoFrame,
    pixel_format_of
)


@pytest.fixture
def bgr_image():
    pixels = np.zeros((4, 6, 3), dtype=np.uint8)
    pixels[..., 0] = 255  # blue
    return RectifiedImage.from_array(pixels, timestamp=1.0)


@pytest.fixture
def gray_image():
    return RectifiedImage.from_array(np.full((4, 6), 51, dtype=np.uint8), timestamp=1.004)


class TestRectifiedImage:
    """Test RectifiedImage conversions."""

    def test_pixel_format(self, bgr_image, gray_image):
        assert bgr_image.pixel_format == BGR8
        assert gray_image.pixel_format == GRAY8
        assert (gray_image.width, gray_image.height) == (6, 4)

    def test_unsupported_channels(self):
        with pytest.raises(ValueError):
            pixel_format_of(np.zeros((2, 2, 2), dtype=np.uint8))

    def test_to_rgb_swaps_channels(self, bgr_image):
        rgb = bgr_image.to_rgb()

        assert np.all(rgb[..., 2] == 255)
        assert np.all(rgb[..., 0] == 0)

    def test_gray_to_bgr(self, gray_image):
        bgr = gray_image.to_bgr()

        assert bgr.shape == (4, 6, 3)
        assert np.all(bgr == 51)

    def test_to_gray_is_copy(self, gray_image):
        gray = gray_image.to_gray()
        gray[0, 0] = 0

        assert gray_image.pixels[0, 0] == 51

    def test_to_float(self, gray_image):
        values = gray_image.to_float()

        assert values.dtype == np.float32
        assert values.max() == pytest.approx(0.2)


class TestStereoFrame:
    """Test StereoFrame container."""

    def test_immutable(self, bgr_image, gray_image):
        frame = StereoFrame(left=bgr_image, right=gray_image)

        with pytest.raises(dataclasses.FrozenInstanceError):
            frame.left = gray_image

    def test_skew(self, bgr_image, gray_image):
        frame = StereoFrame(left=bgr_image, right=gray_image)

        assert frame.skew == pytest.approx(0.004)

    def test_skew_unknown(self, bgr_image):
        frame = StereoFrame(left=bgr_image, right=RectifiedImage.from_array(bgr_image.pixels))

        assert frame.skew is None

    def test_luma_pair(self, bgr_image, gray_image):
        left, right = StereoFrame(left=bgr_image, right=gray_image).to_luma_pair()

        assert left.shape == right.shape == (4, 6)
        assert left.dtype == np.uint8

    def test_rgb_and_float_pairs(self, bgr_image, gray_image):
        frame = StereoFrame(left=bgr_image, right=gray_image)

        left_rgb, right_rgb = frame.to_rgb_pair()
        left_f, right_f = frame.to_float_pair()

        assert left_rgb.shape == right_rgb.shape == (4, 6, 3)
        assert right_f.dtype == np.float32
