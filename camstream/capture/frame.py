"""
Capture data types shared by capture sources, codecs and streams.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from ..errors import ConfigurationError

# FourCC codes the decode and rectification pipeline understands
SUPPORTED_FOURCC = ("MJPG", "YUYV", "GREY", "BGR3", "RGB3")


def normalize_fourcc(code: Union[bytes, str]) -> str:
    """
    Normalize a FourCC code to a 4-character string.

    Args:
        code: Four bytes (``b"MJPG"``) or a four character string

    Returns:
        The code as an upper-case string
    """
    if isinstance(code, (bytes, bytearray)):
        try:
            code = bytes(code).decode("ascii")
        except UnicodeDecodeError as e:
            raise ConfigurationError(f"FourCC code {code!r} is not ASCII") from e

    if not isinstance(code, str) or len(code) != 4:
        raise ConfigurationError(f"FourCC code must be 4 characters, got {code!r}")

    return code.upper()


@dataclass(frozen=True)
class CaptureParameters:
    """
    Capture settings negotiated with a device.

    Attributes:
        resolution: Frame size (width, height)
        fourcc: Pixel format code
        interval: Frame interval as (numerator, denominator) seconds, None for device default
        num_buffers: Device queue length
    """
    resolution: Tuple[int, int]
    fourcc: str
    interval: Optional[Tuple[int, int]] = None
    num_buffers: int = 2

    @property
    def width(self) -> int:
        return self.resolution[0]

    @property
    def height(self) -> int:
        return self.resolution[1]

    @property
    def fps(self) -> Optional[float]:
        """Frame rate implied by the interval."""
        if self.interval is None:
            return None
        num, den = self.interval
        return den / num


@dataclass(frozen=True)
class RawFrame:
    """
    One undecoded grab from a capture source.

    Attributes:
        data: Raw frame bytes as delivered by the device
        fourcc: Pixel format code of ``data``
        width: Frame width in pixels
        height: Frame height in pixels
        timestamp: Monotonic time of the grab in seconds
    """
    data: bytes
    fourcc: str
    width: int
    height: int
    timestamp: float
