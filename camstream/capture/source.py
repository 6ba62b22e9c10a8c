"""
Capture Source Module

The capture source owns one device handle and grabs single frames from it.
``OpenCVCaptureSource`` talks to V4L2 character devices through
``cv2.VideoCapture``; anything with the same ``grab``/``close`` surface can be
plugged into a stream through the builder's ``source_factory``.
"""

import logging
import os
import stat
import time
from pathlib import Path
from typing import Callable, Protocol, Union, runtime_checkable

import cv2

from ..errors import CaptureError, ConfigurationError, DeviceError
from .frame import CaptureParameters, RawFrame

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@runtime_checkable
class CaptureSource(Protocol):
    """Protocol for an opened capture device."""

    def grab(self) -> RawFrame:
        """Block until one frame is acquired and return it undecoded."""
        ...

    def close(self) -> None:
        """Release the device handle."""
        ...


SourceFactory = Callable[[Path, CaptureParameters], CaptureSource]


def probe_device(path: PathLike) -> Path:
    """
    Check that a path resolves to an accessible capture device.

    Args:
        path: Device path such as ``/dev/video0``

    Returns:
        The path as a ``Path``

    Raises:
        DeviceError: If the path is missing, not a character device or not accessible
    """
    path = Path(path)

    try:
        mode = os.stat(path).st_mode
    except FileNotFoundError as e:
        raise DeviceError(f"Cannot find capture device at {path}", path) from e
    except OSError as e:
        raise DeviceError(f"Cannot stat capture device {path}: {e}", path) from e

    if not stat.S_ISCHR(mode):
        raise DeviceError(f"{path} is not a character device", path)

    if not os.access(path, os.R_OK | os.W_OK):
        raise DeviceError(f"Permission denied for capture device {path}", path)

    return path


class OpenCVCaptureSource:
    """
    V4L2 capture device opened through OpenCV.

    Frames are requested undecoded (``CAP_PROP_CONVERT_RGB`` off) so that the
    codec sees the bytes the device produced.

    Example:
        >>> params = CaptureParameters(resolution=(640, 480), fourcc="MJPG", interval=(1, 30))
        >>> source = OpenCVCaptureSource("/dev/video0", params)
        >>> frame = source.grab()
        >>> source.close()
    """

    def __init__(self, path: PathLike, params: CaptureParameters):
        self.path = Path(path)
        self.params = params

        self._cap = cv2.VideoCapture(str(self.path), cv2.CAP_V4L2)
        if not self._cap.isOpened():
            self._cap.release()
            raise DeviceError(f"Cannot open capture device {self.path} (busy or unavailable)",
                              self.path)

        self._configure()

        logger.info(f"Opened {self.path}: {params.width}x{params.height} {params.fourcc}"
                    + (f" @ {params.fps:.1f} fps" if params.fps else ""))

    def _configure(self) -> None:
        params = self.params

        self._cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*params.fourcc))
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, params.width)
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, params.height)
        if params.fps is not None:
            self._cap.set(cv2.CAP_PROP_FPS, params.fps)
        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, params.num_buffers)
        self._cap.set(cv2.CAP_PROP_CONVERT_RGB, 0)

        width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        if (width, height) != params.resolution:
            self._cap.release()
            raise ConfigurationError(
                f"{self.path} does not support {params.width}x{params.height}, "
                f"negotiated {width}x{height}"
            )

        fourcc = int(self._cap.get(cv2.CAP_PROP_FOURCC)) & 0xFFFFFFFF
        if fourcc != cv2.VideoWriter_fourcc(*params.fourcc):
            self._cap.release()
            negotiated = "".join(chr((fourcc >> (8 * i)) & 0xFF) for i in range(4))
            raise ConfigurationError(
                f"{self.path} does not support format {params.fourcc}, "
                f"negotiated {negotiated!r}"
            )

    def grab(self) -> RawFrame:
        if self._cap is None:
            raise CaptureError(f"{self.path} is closed")
        if not self._cap.grab():
            raise CaptureError(f"Grab failed on {self.path}")
        timestamp = time.monotonic()

        ok, frame = self._cap.retrieve()
        if not ok or frame is None:
            raise CaptureError(f"Retrieve failed on {self.path}")

        return RawFrame(
            data=frame.tobytes(),
            fourcc=self.params.fourcc,
            width=self.params.width,
            height=self.params.height,
            timestamp=timestamp
        )

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info(f"Closed {self.path}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def open_opencv_source(path: Path, params: CaptureParameters) -> CaptureSource:
    """Default source factory used by the builder."""
    return OpenCVCaptureSource(path, params)
