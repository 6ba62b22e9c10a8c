"""
Camera Stream Module

Runtime stream objects returned by ``CamStreamBuilder.build``. Both expose a
blocking ``capture()``; the stereo stream overlaps the two device grabs and
only returns pairs whose timestamps fall within the configured skew
tolerance.

Streams are not reentrant: serialize ``capture()`` calls per instance.
"""

import concurrent.futures
import logging
import math
import weakref
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..capture.codec import ImageCodec
from ..capture.frame import CaptureParameters, RawFrame
from ..capture.source import CaptureSource
from ..errors import (
    CamStreamError,
    CaptureError,
    ConfigurationError,
    SynchronizationError
)
from ..frames import RectifiedImage, StereoFrame
from .rectification import RectificationEngine, RectificationMap

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncPolicy:
    """
    Stereo pairing rule.

    Attributes:
        tolerance: Maximum left/right timestamp difference in seconds
        max_retries: Re-grabs allowed after the first out-of-tolerance pair
    """
    tolerance: float
    max_retries: int

    def __post_init__(self):
        if (isinstance(self.tolerance, bool) or not isinstance(self.tolerance, (int, float))
                or not math.isfinite(self.tolerance) or self.tolerance < 0):
            raise ConfigurationError(f"Skew tolerance must be >= 0 seconds, got {self.tolerance}")
        if (isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int)
                or self.max_retries < 0):
            raise ConfigurationError(f"max_retries must be an integer >= 0, got {self.max_retries}")


class CamStream(ABC):
    """Common surface of mono and stereo streams."""

    def __init__(
            self,
            params: CaptureParameters,
            codec: ImageCodec,
            engine: RectificationEngine
    ):
        self.params = params
        self.codec = codec
        self.engine = engine
        self._closed = False

    @abstractmethod
    def capture(self):
        """Capture one frame from the stream."""

    @abstractmethod
    def _release(self) -> None:
        """Release the capture sources."""

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _check_open(self) -> None:
        if self._closed:
            raise CaptureError(f"{type(self).__name__} is closed")

    def _grab(self, source: CaptureSource, side: str) -> RawFrame:
        try:
            return source.grab()
        except CamStreamError:
            raise
        except Exception as e:
            raise CaptureError(f"{side} grab failed: {e}") from e

    def _rectify(self, raw: RawFrame, rect_map: Optional[RectificationMap], side: str) -> RectifiedImage:
        try:
            decoded = self.codec.decode(raw)
        except CamStreamError:
            raise
        except Exception as e:
            raise CaptureError(f"{side} decode failed: {e}") from e

        if not isinstance(decoded, np.ndarray):
            raise CaptureError(f"{side} decode returned {type(decoded).__name__}, not an array")

        return RectifiedImage.from_array(self.engine.apply(rect_map, decoded), raw.timestamp)


class MonoCamStream(CamStream):
    """
    Single camera stream.

    Example:
        >>> stream = CamStreamBuilder().mono().path("/dev/video0") \\
        ...     .no_rectification().resolution(640, 480).format(b"MJPG").build()
        >>> image = stream.capture()
    """

    def __init__(
            self,
            source: CaptureSource,
            params: CaptureParameters,
            codec: ImageCodec,
            engine: RectificationEngine,
            rect_map: Optional[RectificationMap] = None
    ):
        super().__init__(params, codec, engine)
        self._source = source
        self._rect_map = rect_map

    @property
    def rectification_map(self) -> Optional[RectificationMap]:
        return self._rect_map

    def capture(self) -> RectifiedImage:
        """
        Grab, decode and rectify one frame.

        Raises:
            CaptureError: On device or decode failure. The stream stays usable.
        """
        self._check_open()

        try:
            raw = self._grab(self._source, "camera")
            image = self._rectify(raw, self._rect_map, "camera")
        except CaptureError as e:
            logger.error(f"Capture failed: {e}")
            raise

        logger.debug(f"Captured {image.width}x{image.height} {image.pixel_format}")
        return image

    def _release(self) -> None:
        self._source.close()


class StereoCamStream(CamStream):
    """
    Stereo pair stream with skew-bounded pairing.

    Each ``capture()`` grabs both sensors concurrently and compares the grab
    timestamps. Pairs further apart than ``sync.tolerance`` are discarded and
    re-grabbed up to ``sync.max_retries`` times. A frame is returned only when
    both sides grabbed, decoded and rectified; otherwise nothing is returned.

    Call ``close()`` or use the stream as a context manager to release the
    devices. A stream that is garbage collected unclosed stops its grab
    threads but leaves the devices to their own finalizers.
    """

    def __init__(
            self,
            left_source: CaptureSource,
            right_source: CaptureSource,
            params: CaptureParameters,
            codec: ImageCodec,
            engine: RectificationEngine,
            sync: SyncPolicy,
            left_map: Optional[RectificationMap] = None,
            right_map: Optional[RectificationMap] = None
    ):
        super().__init__(params, codec, engine)
        self._left_source = left_source
        self._right_source = right_source
        self._left_map = left_map
        self._right_map = right_map
        self.sync = sync

        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="camstream-grab"
        )
        # Streams dropped without close() still stop their grab workers
        self._executor_finalizer = weakref.finalize(self, self._executor.shutdown, wait=False)

    @property
    def rectification_maps(self) -> Tuple[Optional[RectificationMap], Optional[RectificationMap]]:
        return self._left_map, self._right_map

    def capture(self) -> StereoFrame:
        """
        Capture a synchronized, rectified stereo pair.

        Raises:
            CaptureError: If either side fails to grab or decode
            SynchronizationError: If no pair met the skew tolerance after all retries
        """
        self._check_open()

        attempts = self.sync.max_retries + 1
        for attempt in range(1, attempts + 1):
            left_raw, right_raw = self._grab_pair()
            skew = abs(left_raw.timestamp - right_raw.timestamp)

            if skew <= self.sync.tolerance:
                break

            logger.warning(f"Stereo skew {skew * 1000:.2f} ms exceeds "
                           f"{self.sync.tolerance * 1000:.2f} ms (attempt {attempt}/{attempts})")
        else:
            raise SynchronizationError(
                f"Stereo skew {skew * 1000:.2f} ms still exceeds "
                f"{self.sync.tolerance * 1000:.2f} ms after {attempts} attempts",
                skew=skew,
                attempts=attempts
            )

        try:
            left = self._rectify(left_raw, self._left_map, "left")
            right = self._rectify(right_raw, self._right_map, "right")
        except CaptureError as e:
            logger.error(f"Stereo capture failed: {e}")
            raise

        logger.debug(f"Captured stereo pair, skew {skew * 1000:.2f} ms")
        return StereoFrame(left=left, right=right)

    def _grab_pair(self) -> Tuple[RawFrame, RawFrame]:
        """Grab both sides concurrently and wait for both to finish."""
        futures = (
            self._executor.submit(self._grab, self._left_source, "left"),
            self._executor.submit(self._grab, self._right_source, "right"),
        )
        concurrent.futures.wait(futures)

        for future in futures:
            error = future.exception()
            if error is not None:
                logger.error(f"Stereo capture failed: {error}")
                raise error

        return futures[0].result(), futures[1].result()

    def _release(self) -> None:
        self._executor_finalizer.detach()
        self._executor.shutdown(wait=True)
        try:
            self._left_source.close()
        finally:
            self._right_source.close()
