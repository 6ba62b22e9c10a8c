"""
Calibration module for camstream.

Contains the immutable lens models and their file loaders.
"""

from .model import CalibrationModel, StereoCalibrationModel, load_calibration

__all__ = ["CalibrationModel", "StereoCalibrationModel", "load_calibration"]
