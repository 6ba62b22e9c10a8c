"""
camstream command line

Build a stream from a YAML configuration and capture a few frames.

Usage:
    camstream --config CONFIG [--frames N] [--verbose]

Examples:
    # One frame from a mono camera
    camstream --config mono.yaml

    # Ten stereo pairs, reporting the skew of each
    camstream --config stereo.yaml --frames 10 --verbose
"""

import argparse
import logging
import sys
import time
from typing import List, Optional

from .core.builder import CamStreamBuilder
from .core.stream import StereoCamStream
from .errors import CamStreamError

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Capture rectified frames from a mono or stereo camera stream"
    )
    parser.add_argument('--config', required=True, help="Stream configuration YAML file")
    parser.add_argument('--frames', type=int, default=1, help="Number of captures (default: 1)")
    parser.add_argument('--verbose', '-v', action='store_true', help="Enable debug logging")
    return parser.parse_args(argv)


def run(config_path: str, frames: int) -> int:
    """Build the stream and capture ``frames`` times, returning the failure count."""
    failures = 0

    with CamStreamBuilder.from_config_file(config_path).build() as stream:
        for index in range(frames):
            start = time.monotonic()
            try:
                result = stream.capture()
            except CamStreamError as e:
                failures += 1
                print(f"[{index}] FAILED: {e}")
                continue

            elapsed = (time.monotonic() - start) * 1000
            if isinstance(stream, StereoCamStream):
                print(f"[{index}] left {result.left.width}x{result.left.height}, "
                      f"right {result.right.width}x{result.right.height}, "
                      f"skew {result.skew * 1000:.2f} ms, {elapsed:.1f} ms")
            else:
                print(f"[{index}] {result.width}x{result.height} {result.pixel_format}, "
                      f"{elapsed:.1f} ms")

    return failures


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        failures = run(args.config, args.frames)
    except CamStreamError as e:
        logger.error(f"Cannot start stream: {e}")
        return 2

    print(f"\n{args.frames - failures}/{args.frames} captures succeeded")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
