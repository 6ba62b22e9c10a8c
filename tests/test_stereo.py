"""
Unit tests for stereo camera stream synchronization.
"""

import pytest
import gc
import time
import numpy as np
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from camstream.calibration import CalibrationModel, StereoCalibrationModel
from camstream.core.builder import CamStreamBuilder
from camstream.core.stream import SyncPolicy
from camstream.errors import CaptureError, ConfigurationError, SynchronizationError
from camstream.frames import StereoFrame

from conftest import FakeFactory

LEFT, RIGHT = "/dev/video0", "/dev/video2"


def build_stereo(factory, probe, tolerance=0.05, max_retries=2, rectification=None):
    builder = CamStreamBuilder(source_factory=factory, device_probe=probe)
    (builder.stereo()
     .left_path(LEFT)
     .right_path(RIGHT)
     .resolution(160, 120)
     .format("GREY")
     .sync(tolerance=tolerance, max_retries=max_retries))
    if rectification is None:
        builder.no_rectification()
    else:
        builder.rectif_params(rectification)
    return builder.build()


class TestSyncPolicy:
    """Test SyncPolicy validation."""

    def test_valid(self):
        policy = SyncPolicy(tolerance=0.0, max_retries=0)
        assert policy.tolerance == 0.0

    def test_negative_tolerance(self):
        with pytest.raises(ConfigurationError):
            SyncPolicy(tolerance=-0.001, max_retries=1)

    @pytest.mark.parametrize("tolerance", [float('nan'), float('inf')])
    def test_non_finite_tolerance(self, tolerance):
        with pytest.raises(ConfigurationError):
            SyncPolicy(tolerance=tolerance, max_retries=1)


class TestStereoCapture:
    """Test StereoCamStream.capture."""

    def test_pair_within_tolerance(self, fake_factory, accept_any_device, gray_pattern):
        with build_stereo(fake_factory, accept_any_device) as stream:
            frame = stream.capture()

        assert isinstance(frame, StereoFrame)
        assert frame.left.pixels.tobytes() == gray_pattern.tobytes()
        assert frame.right.shape == (120, 160)
        assert frame.skew <= 0.05

    def test_grabs_overlap(self, accept_any_device):
        """Test that both sensors are grabbed concurrently."""
        factory = FakeFactory(**{LEFT: {"delay": 0.2}, RIGHT: {"delay": 0.2}})

        with build_stereo(factory, accept_any_device) as stream:
            start = time.monotonic()
            stream.capture()
            elapsed = time.monotonic() - start

        assert elapsed < 0.35
        left_threads = factory.sources[LEFT].threads
        right_threads = factory.sources[RIGHT].threads
        assert all(name.startswith("camstream-grab") for name in left_threads | right_threads)

    def test_delayed_right_side_fails(self, accept_any_device):
        """Test that a right grab delayed past the tolerance yields no frame."""
        factory = FakeFactory(**{RIGHT: {"delay": 0.2}})
        stream = build_stereo(factory, accept_any_device, tolerance=0.02, max_retries=1)

        result = None
        with pytest.raises(SynchronizationError) as excinfo:
            result = stream.capture()

        assert result is None
        assert excinfo.value.attempts == 2
        assert excinfo.value.skew > 0.02
        assert factory.sources[LEFT].grabs == 2
        assert factory.sources[RIGHT].grabs == 2
        stream.close()

    def test_retry_recovers(self, accept_any_device):
        """Test that a pair outside tolerance is re-grabbed."""
        factory = FakeFactory(**{
            LEFT: {"timestamps": [10.0, 11.0]},
            RIGHT: {"timestamps": [10.5, 11.001]},
        })

        with build_stereo(factory, accept_any_device, tolerance=0.01, max_retries=1) as stream:
            frame = stream.capture()

        assert frame.skew == pytest.approx(0.001)
        assert frame.left.timestamp == 11.0
        assert factory.sources[RIGHT].grabs == 2

    def test_no_retries(self, accept_any_device):
        factory = FakeFactory(**{LEFT: {"timestamps": [1.0]}, RIGHT: {"timestamps": [2.0]}})

        with build_stereo(factory, accept_any_device, tolerance=0.01, max_retries=0) as stream:
            with pytest.raises(SynchronizationError) as excinfo:
                stream.capture()

        assert excinfo.value.attempts == 1
        assert excinfo.value.skew == pytest.approx(1.0)

    def test_one_side_failure(self, accept_any_device):
        """Test that a failed side raises CaptureError and the next capture works."""
        factory = FakeFactory(**{RIGHT: {"failures": 1}})

        with build_stereo(factory, accept_any_device) as stream:
            with pytest.raises(CaptureError, match="right grab failed"):
                stream.capture()

            frame = stream.capture()

        assert frame.left.width == frame.right.width == 160

    def test_sides_use_own_maps(self, fake_factory, accept_any_device):
        """Test that left and right are rectified with their own parameters."""
        K = [[150.0, 0.0, 79.5], [0.0, 150.0, 59.5], [0.0, 0.0, 1.0]]
        P_shifted = [[150.0, 0.0, 74.5, 0.0], [0.0, 150.0, 59.5, 0.0], [0.0, 0.0, 1.0, 0.0]]
        model = StereoCalibrationModel(
            left=CalibrationModel(camera_matrix=K, dist_coeffs=[],
                                  rectification_rotation=np.eye(3), projection=K),
            right=CalibrationModel(camera_matrix=K, dist_coeffs=[],
                                   rectification_rotation=np.eye(3), projection=P_shifted),
        )

        with build_stereo(fake_factory, accept_any_device, rectification=model) as stream:
            frame = stream.capture()

        source = fake_factory.sources[LEFT].image.astype(np.int16)
        left = frame.left.pixels.astype(np.int16)
        right = frame.right.pixels.astype(np.int16)
        assert np.abs(left - source).max() <= 1
        # Right output pixel x samples source x + 5
        assert np.abs(right[:, 10:-10] - source[:, 15:-5]).max() <= 1

    def test_close_releases_both(self, fake_factory, accept_any_device):
        stream = build_stereo(fake_factory, accept_any_device)
        stream.close()

        assert fake_factory.sources[LEFT].closed
        assert fake_factory.sources[RIGHT].closed
        with pytest.raises(CaptureError):
            stream.capture()

    def test_unclosed_stream_stops_workers(self, fake_factory, accept_any_device):
        """Test that dropping a stream without close() shuts down its grab threads."""
        stream = build_stereo(fake_factory, accept_any_device)
        stream.capture()
        finalizer = stream._executor_finalizer

        del stream
        gc.collect()

        assert not finalizer.alive

    def test_close_detaches_finalizer(self, fake_factory, accept_any_device):
        stream = build_stereo(fake_factory, accept_any_device)
        stream.close()

        assert not stream._executor_finalizer.alive
