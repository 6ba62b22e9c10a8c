"""
Pytest configuration and shared fixtures.
"""

import pytest
import sys
import threading
import time
from pathlib import Path

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from camstream.calibration import CalibrationModel
from camstream.capture import RawFrame
from camstream.core.builder import CamStreamBuilder


WIDTH, HEIGHT = 160, 120


class FakeSource:
    """
    In-memory capture source producing GREY frames.

    Args:
        image: uint8 (H, W) frame returned by every grab
        delay: Seconds to sleep before each grab completes
        timestamps: Optional scripted timestamps, consumed one per grab
        failures: Number of initial grabs that raise OSError
    """

    def __init__(self, path, params, image=None, delay=0.0, timestamps=None, failures=0):
        self.path = path
        self.params = params
        self.image = image if image is not None else make_gray_pattern(params.width, params.height)
        self.delay = delay
        self.timestamps = list(timestamps or [])
        self.failures = failures
        self.grabs = 0
        self.closed = False
        self.threads = set()

    def grab(self):
        self.grabs += 1
        self.threads.add(threading.current_thread().name)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("device unplugged")
        if self.delay:
            time.sleep(self.delay)

        timestamp = self.timestamps.pop(0) if self.timestamps else time.monotonic()
        return RawFrame(
            data=self.image.tobytes(),
            fourcc="GREY",
            width=self.image.shape[1],
            height=self.image.shape[0],
            timestamp=timestamp
        )

    def close(self):
        self.closed = True


class FakeFactory:
    """Source factory recording every source it opens."""

    def __init__(self, **options):
        self.options = options
        self.sources = {}

    def __call__(self, path, params):
        source = FakeSource(path, params, **self.options.get(str(path), {}))
        self.sources[str(path)] = source
        return source


def make_gray_pattern(width=WIDTH, height=HEIGHT):
    """Smooth uint8 test pattern."""
    y, x = np.mgrid[0:height, 0:width].astype(np.float32)
    pattern = 128 + 60 * np.sin(2 * np.pi * x / 40) * np.cos(2 * np.pi * y / 30)
    return np.clip(np.round(pattern), 0, 255).astype(np.uint8)


def make_float_pattern(width=WIDTH, height=HEIGHT):
    """Smooth float32 test pattern."""
    y, x = np.mgrid[0:height, 0:width].astype(np.float32)
    return (128 + 60 * np.sin(2 * np.pi * x / 40) * np.cos(2 * np.pi * y / 30)).astype(np.float32)


@pytest.fixture
def gray_pattern():
    return make_gray_pattern()


@pytest.fixture
def float_pattern():
    return make_float_pattern()


@pytest.fixture
def pinhole_model():
    """Distortion-free model for WIDTH x HEIGHT."""
    return CalibrationModel(
        camera_matrix=[[150.0, 0.0, 79.5], [0.0, 150.0, 59.5], [0.0, 0.0, 1.0]],
        dist_coeffs=[],
        image_size=(WIDTH, HEIGHT)
    )


@pytest.fixture
def distorted_model():
    """Barrel-distorted model for WIDTH x HEIGHT."""
    return CalibrationModel(
        camera_matrix=[[150.0, 0.0, 79.5], [0.0, 150.0, 59.5], [0.0, 0.0, 1.0]],
        dist_coeffs=[-0.1, 0.0, 0.0, 0.0, 0.0],
        image_size=(WIDTH, HEIGHT)
    )


@pytest.fixture
def fake_factory():
    return FakeFactory()


@pytest.fixture
def accept_any_device():
    """Device probe accepting every path."""
    return lambda path: Path(path)


@pytest.fixture
def builder(fake_factory, accept_any_device):
    """Builder wired to fake sources."""
    return CamStreamBuilder(source_factory=fake_factory, device_probe=accept_any_device)


@pytest.fixture
def calibration_yaml(tmp_path, distorted_model):
    path = tmp_path / "mono_rectif_params.yaml"
    distorted_model.save(path)
    return path
