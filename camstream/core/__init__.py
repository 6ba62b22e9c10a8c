"""
Core components of camstream.

This module contains the stream construction and processing pieces:
    - CamStreamBuilder: Validated configuration and stream construction
    - RectificationEngine: Rectification map building and resampling
    - MonoCamStream / StereoCamStream: Runtime capture streams
"""

from .builder import CamStreamBuilder, Stage, load_config
from .rectification import RectificationEngine, RectificationMap
from .stream import CamStream, MonoCamStream, StereoCamStream, SyncPolicy

__all__ = [
    "CamStreamBuilder",
    "Stage",
    "load_config",
    "RectificationEngine",
    "RectificationMap",
    "CamStream",
    "MonoCamStream",
    "StereoCamStream",
    "SyncPolicy"
]
