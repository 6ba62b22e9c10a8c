"""
Unit tests for mono camera stream.
"""

import pytest
import numpy as np
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from camstream.capture import OpenCVCodec
from camstream.core.builder import CamStreamBuilder
from camstream.core.rectification import RectificationEngine
from camstream.errors import CaptureError
from camstream.frames import GRAY8, RectifiedImage

from conftest import FakeFactory


class FlakyCodec(OpenCVCodec):
    """Codec whose first ``failures`` decodes raise."""

    def __init__(self, failures=1):
        self.failures = failures

    def decode(self, frame):
        if self.failures > 0:
            self.failures -= 1
            raise ValueError("corrupt frame")
        return super().decode(frame)


class CountingEngine(RectificationEngine):
    def __init__(self):
        super().__init__()
        self.maps_built = 0

    def compute_map(self, model, width, height):
        self.maps_built += 1
        return super().compute_map(model, width, height)


def build_mono(factory, probe, rectification=None, **kwargs):
    builder = CamStreamBuilder(source_factory=factory, device_probe=probe, **kwargs)
    builder.mono().path("/dev/video0").resolution(160, 120).format("GREY")
    if rectification is None:
        builder.no_rectification()
    else:
        builder.rectif_params(rectification)
    return builder.build()


class TestMonoCapture:
    """Test MonoCamStream.capture."""

    def test_passthrough_is_identity(self, fake_factory, accept_any_device, gray_pattern):
        """Test that no_rectification returns the decoded bytes unchanged."""
        stream = build_mono(fake_factory, accept_any_device)

        image = stream.capture()

        assert isinstance(image, RectifiedImage)
        assert image.pixel_format == GRAY8
        assert (image.width, image.height) == (160, 120)
        assert image.pixels.tobytes() == gray_pattern.tobytes()
        assert image.timestamp is not None

    def test_rectified_output_size(self, accept_any_device, distorted_model):
        """Test that output follows the configured resolution even if the device sends more."""
        big = np.zeros((240, 320), dtype=np.uint8)
        factory = FakeFactory(**{"/dev/video0": {"image": big}})

        image = build_mono(factory, accept_any_device, distorted_model).capture()

        assert image.shape == (120, 160)

    def test_rectification_applied(self, fake_factory, accept_any_device, distorted_model,
                                   gray_pattern):
        image = build_mono(fake_factory, accept_any_device, distorted_model).capture()

        assert not np.array_equal(image.pixels, gray_pattern)

    def test_map_built_once(self, fake_factory, accept_any_device, distorted_model):
        engine = CountingEngine()
        stream = build_mono(fake_factory, accept_any_device, distorted_model, engine=engine)

        for _ in range(5):
            stream.capture()

        assert engine.maps_built == 1

    def test_grab_failure_then_recovery(self, accept_any_device):
        """Test that a failed grab raises CaptureError and the stream stays usable."""
        factory = FakeFactory(**{"/dev/video0": {"failures": 1}})
        stream = build_mono(factory, accept_any_device)

        with pytest.raises(CaptureError, match="device unplugged"):
            stream.capture()

        image = stream.capture()
        assert image.width == 160

    def test_decode_failure_then_recovery(self, fake_factory, accept_any_device):
        stream = build_mono(fake_factory, accept_any_device, codec=FlakyCodec(failures=1))

        with pytest.raises(CaptureError, match="decode failed"):
            stream.capture()

        assert stream.capture().height == 120

    def test_capture_after_close(self, fake_factory, accept_any_device):
        stream = build_mono(fake_factory, accept_any_device)
        stream.close()

        with pytest.raises(CaptureError, match="closed"):
            stream.capture()

    def test_context_manager_closes_source(self, fake_factory, accept_any_device):
        with build_mono(fake_factory, accept_any_device) as stream:
            stream.capture()

        assert stream.closed
        assert fake_factory.sources["/dev/video0"].closed
