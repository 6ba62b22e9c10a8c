"""
Calibration Model Module

Immutable lens geometry for a single sensor and for a stereo pair, with
loaders for YAML, JSON and OpenCV XML parameter files.

A single camera is described either by its intrinsic matrix and distortion
coefficients::

    camera_matrix: [[fx, 0, cx], [0, fy, cy], [0, 0, 1]]
    dist_coeffs: [k1, k2, p1, p2, k3]
    image_size: [640, 480]

or by the pinhole fields ``focals``, ``principal_point``, ``skew`` and an
optional ``k1`` radial coefficient. A stereo file holds one such section per
sensor (``left``/``right`` or ``left_camera``/``right_camera``) plus either
the rectifying rotations and projections (``R1``, ``R2``, ``P1``, ``P2``) or
the extrinsics ``R`` and ``T`` from which they are derived.
"""

import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import yaml

from ..errors import CalibrationError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _as_matrix(value: Any, shape: Tuple[int, ...], name: str) -> np.ndarray:
    try:
        matrix = np.array(value, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise CalibrationError(f"{name} is not numeric: {e}") from e

    if matrix.size == int(np.prod(shape)) and matrix.shape != shape:
        matrix = matrix.reshape(shape)
    if matrix.shape != shape:
        raise CalibrationError(f"{name} must have shape {shape}, got {matrix.shape}")
    if not np.all(np.isfinite(matrix)):
        raise CalibrationError(f"{name} contains non-finite values")

    matrix.setflags(write=False)
    return matrix


@dataclass(frozen=True)
class CalibrationModel:
    """
    Lens geometry of one sensor.

    Attributes:
        camera_matrix: 3x3 intrinsic camera matrix
        dist_coeffs: Distortion coefficients (k1, k2, p1, p2, k3, ...), any length
        image_size: Image dimensions (width, height) the model was calibrated for
        rectification_rotation: 3x3 rectifying rotation (stereo only)
        projection: 3x4 projection matrix in the rectified frame (stereo only)
    """
    camera_matrix: np.ndarray
    dist_coeffs: np.ndarray
    image_size: Optional[Tuple[int, int]] = None
    rectification_rotation: Optional[np.ndarray] = None
    projection: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, 'camera_matrix',
                           _as_matrix(self.camera_matrix, (3, 3), 'camera_matrix'))

        try:
            dist = np.array(self.dist_coeffs if self.dist_coeffs is not None else [],
                            dtype=np.float64).ravel()
        except (TypeError, ValueError) as e:
            raise CalibrationError(f"dist_coeffs is not numeric: {e}") from e
        if dist.size not in (0, 4, 5, 8, 12, 14):
            raise CalibrationError(
                f"dist_coeffs must have 0, 4, 5, 8, 12 or 14 values, got {dist.size}"
            )
        dist.setflags(write=False)
        object.__setattr__(self, 'dist_coeffs', dist)

        if self.image_size is not None:
            try:
                size = tuple(int(v) for v in self.image_size)
            except (TypeError, ValueError) as e:
                raise CalibrationError(f"image_size is not numeric: {e}") from e
            if len(size) != 2 or min(size) <= 0:
                raise CalibrationError(f"image_size must be (width, height), got {self.image_size}")
            object.__setattr__(self, 'image_size', size)

        if self.rectification_rotation is not None:
            object.__setattr__(self, 'rectification_rotation', _as_matrix(
                self.rectification_rotation, (3, 3), 'rectification_rotation'))

        if self.projection is not None:
            projection = np.array(self.projection, dtype=np.float64)
            if projection.shape == (3, 3):
                projection = np.hstack([projection, np.zeros((3, 1))])
            object.__setattr__(self, 'projection',
                               _as_matrix(projection, (3, 4), 'projection'))

    @property
    def fx(self) -> float:
        """Focal length in x direction (pixels)."""
        return float(self.camera_matrix[0, 0])

    @property
    def fy(self) -> float:
        """Focal length in y direction (pixels)."""
        return float(self.camera_matrix[1, 1])

    @property
    def cx(self) -> float:
        """Principal point x coordinate."""
        return float(self.camera_matrix[0, 2])

    @property
    def cy(self) -> float:
        """Principal point y coordinate."""
        return float(self.camera_matrix[1, 2])

    @property
    def is_rectifying(self) -> bool:
        """True when the model carries a stereo rotation/projection pair."""
        return self.rectification_rotation is not None and self.projection is not None

    @classmethod
    def from_pinhole(
            cls,
            focals: Sequence[float],
            principal_point: Sequence[float],
            skew: float = 0.0,
            k1: Optional[float] = None,
            image_size: Optional[Tuple[int, int]] = None
    ) -> "CalibrationModel":
        """
        Build a model from pinhole parameters.

        Args:
            focals: Focal lengths (fx, fy) in pixels
            principal_point: Principal point (cx, cy) in pixels
            skew: Skew coefficient between the x and y axes
            k1: Optional first radial distortion coefficient
            image_size: Optional (width, height)
        """
        try:
            fx, fy = (float(v) for v in focals)
            cx, cy = (float(v) for v in principal_point)
        except (TypeError, ValueError) as e:
            raise CalibrationError(f"Invalid pinhole parameters: {e}") from e

        camera_matrix = [[fx, float(skew), cx], [0.0, fy, cy], [0.0, 0.0, 1.0]]
        dist_coeffs = [] if k1 is None else [float(k1), 0.0, 0.0, 0.0]

        return cls(camera_matrix=camera_matrix, dist_coeffs=dist_coeffs, image_size=image_size)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationModel":
        """Create a model from a parsed parameter mapping."""
        if not isinstance(data, dict):
            raise CalibrationError(f"Camera parameters must be a mapping, got {type(data).__name__}")

        image_size = data.get('image_size')
        rotation = data.get('rectification_rotation', data.get('R'))
        projection = data.get('projection', data.get('P'))

        if 'camera_matrix' in data:
            return cls(
                camera_matrix=data['camera_matrix'],
                dist_coeffs=data.get('dist_coeffs', []),
                image_size=tuple(image_size) if image_size is not None else None,
                rectification_rotation=rotation,
                projection=projection
            )

        if 'focals' in data and 'principal_point' in data:
            model = cls.from_pinhole(
                data['focals'],
                data['principal_point'],
                skew=data.get('skew', 0.0),
                k1=data.get('k1'),
                image_size=tuple(image_size) if image_size is not None else None
            )
            if rotation is not None or projection is not None:
                model = replace(model, rectification_rotation=rotation, projection=projection)
            return model

        raise CalibrationError(
            "Camera parameters need either 'camera_matrix' or 'focals' and 'principal_point'"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'camera_matrix': self.camera_matrix.tolist(),
            'dist_coeffs': self.dist_coeffs.tolist(),
        }
        if self.image_size is not None:
            data['image_size'] = list(self.image_size)
        if self.rectification_rotation is not None:
            data['rectification_rotation'] = self.rectification_rotation.tolist()
        if self.projection is not None:
            data['projection'] = self.projection.tolist()
        return data

    def save(self, path: PathLike) -> None:
        """Save calibration to YAML file."""
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f)

    @classmethod
    def load(cls, path: PathLike) -> "CalibrationModel":
        """Load calibration from a YAML, JSON or OpenCV XML file."""
        path = Path(path)
        if path.suffix.lower() == '.xml':
            model = _wrap(path, cls._from_opencv_xml, _read_xml(path))
        else:
            model = _wrap(path, cls.from_dict, _read_document(path))

        logger.info(f"Loaded camera calibration from {path}")
        return model

    @classmethod
    def _from_opencv_xml(cls, root: ET.Element) -> "CalibrationModel":
        return cls(
            camera_matrix=_parse_xml_matrix(root, 'camera_matrix', 'K'),
            dist_coeffs=_parse_xml_matrix(root, 'dist_coeffs', 'D').ravel(),
            image_size=_parse_xml_size(root)
        )


@dataclass(frozen=True)
class StereoCalibrationModel:
    """
    Calibration of a stereo pair.

    Both sensors carry their own rectifying rotation and projection so that
    corresponding scene points land on the same image row.

    Attributes:
        left: Left sensor model
        right: Right sensor model
    """
    left: CalibrationModel
    right: CalibrationModel

    def __post_init__(self):
        for side, model in (('left', self.left), ('right', self.right)):
            if not isinstance(model, CalibrationModel):
                raise CalibrationError(f"{side} must be a CalibrationModel")
            if not model.is_rectifying:
                raise CalibrationError(
                    f"{side} model needs a rectification rotation and projection; "
                    f"use StereoCalibrationModel.from_extrinsics to derive them"
                )

    @property
    def image_size(self) -> Optional[Tuple[int, int]]:
        return self.left.image_size or self.right.image_size

    @property
    def baseline(self) -> Optional[float]:
        """Baseline in calibration units, from the right projection matrix."""
        if self.right.projection is None:
            return None
        fx = self.right.projection[0, 0]
        return float(abs(self.right.projection[0, 3]) / fx) if fx else None

    @classmethod
    def from_extrinsics(
            cls,
            left: CalibrationModel,
            right: CalibrationModel,
            R: np.ndarray,
            T: np.ndarray,
            image_size: Optional[Tuple[int, int]] = None
    ) -> "StereoCalibrationModel":
        """
        Compute stereo rectification from the inter-sensor rotation and translation.

        Args:
            left: Left sensor intrinsics
            right: Right sensor intrinsics
            R: Rotation matrix between cameras
            T: Translation vector between cameras
            image_size: (width, height), defaults to the left model's size
        """
        image_size = image_size or left.image_size or right.image_size
        if image_size is None:
            raise CalibrationError("Stereo rectification needs an image_size")

        R = _as_matrix(R, (3, 3), 'R')
        T = _as_matrix(T, (3,), 'T')

        try:
            R1, R2, P1, P2, Q, roi1, roi2 = cv2.stereoRectify(
                np.array(left.camera_matrix),
                np.array(left.dist_coeffs),
                np.array(right.camera_matrix),
                np.array(right.dist_coeffs),
                tuple(image_size),
                np.array(R),
                np.array(T).reshape(3, 1),
                flags=cv2.CALIB_ZERO_DISPARITY,
                alpha=0
            )
        except cv2.error as e:
            raise CalibrationError(f"Stereo rectification failed: {e}") from e

        logger.info("Stereo rectification computed")

        return cls(
            left=replace(left, image_size=tuple(image_size), rectification_rotation=R1, projection=P1),
            right=replace(right, image_size=tuple(image_size), rectification_rotation=R2, projection=P2)
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StereoCalibrationModel":
        if not isinstance(data, dict):
            raise CalibrationError(f"Stereo parameters must be a mapping, got {type(data).__name__}")

        left_data = data.get('left', data.get('left_camera'))
        right_data = data.get('right', data.get('right_camera'))
        if left_data is None or right_data is None:
            raise CalibrationError("Stereo parameters need 'left' and 'right' sections")
        if not isinstance(left_data, dict) or not isinstance(right_data, dict):
            raise CalibrationError("Stereo 'left' and 'right' sections must be mappings")

        left_data = dict(left_data)
        right_data = dict(right_data)
        for key, target, name in (('R1', left_data, 'rectification_rotation'),
                                  ('P1', left_data, 'projection'),
                                  ('R2', right_data, 'rectification_rotation'),
                                  ('P2', right_data, 'projection')):
            if key in data:
                target.setdefault(name, data[key])

        left = CalibrationModel.from_dict(left_data)
        right = CalibrationModel.from_dict(right_data)

        if left.is_rectifying and right.is_rectifying:
            return cls(left=left, right=right)

        if 'R' in data and 'T' in data:
            size = data.get('image_size')
            return cls.from_extrinsics(left, right, data['R'], data['T'],
                                       tuple(size) if size is not None else None)

        raise CalibrationError(
            "Stereo parameters need per-sensor rectification (R1/P1, R2/P2) or extrinsics (R, T)"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'left': self.left.to_dict(), 'right': self.right.to_dict()}

    def save(self, path: PathLike) -> None:
        """Save stereo calibration to YAML file."""
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f)

    @classmethod
    def load(cls, path: PathLike) -> "StereoCalibrationModel":
        """Load stereo calibration from a YAML, JSON or OpenCV XML file."""
        path = Path(path)
        if path.suffix.lower() == '.xml':
            model = _wrap(path, cls._from_opencv_xml, _read_xml(path))
        else:
            model = _wrap(path, cls.from_dict, _read_document(path))

        logger.info(f"Loaded stereo calibration from {path}")
        if model.baseline is not None:
            logger.info(f"  Baseline: {model.baseline:.2f}")
        return model

    @classmethod
    def _from_opencv_xml(cls, root: ET.Element) -> "StereoCalibrationModel":
        image_size = _parse_xml_size(root)

        left = CalibrationModel(
            camera_matrix=_parse_xml_matrix(root, 'K_left'),
            dist_coeffs=_parse_xml_matrix(root, 'dist_left').ravel(),
            image_size=image_size
        )
        right = CalibrationModel(
            camera_matrix=_parse_xml_matrix(root, 'K_right'),
            dist_coeffs=_parse_xml_matrix(root, 'dist_right').ravel(),
            image_size=image_size
        )

        if all(root.find(tag) is not None for tag in ('R1', 'R2', 'P1', 'P2')):
            return cls(
                left=replace(left, rectification_rotation=_parse_xml_matrix(root, 'R1'),
                             projection=_parse_xml_matrix(root, 'P1')),
                right=replace(right, rectification_rotation=_parse_xml_matrix(root, 'R2'),
                              projection=_parse_xml_matrix(root, 'P2'))
            )

        return cls.from_extrinsics(left, right,
                                   _parse_xml_matrix(root, 'R'),
                                   _parse_xml_matrix(root, 'T').ravel(),
                                   image_size)


def load_calibration(
        path: PathLike,
        stereo: bool = False
) -> Union[CalibrationModel, StereoCalibrationModel]:
    """
    Load a calibration file, guessing the format from its extension.

    Args:
        path: Path to a .yaml, .yml, .json or .xml file
        stereo: Load a stereo pair instead of a single sensor

    Returns:
        CalibrationModel or StereoCalibrationModel
    """
    path = Path(path)
    if not path.is_file():
        raise CalibrationError(f"Cannot find calibration file at {path}")

    if stereo:
        return StereoCalibrationModel.load(path)
    return CalibrationModel.load(path)


def _wrap(path: Path, parse, data):
    try:
        return parse(data)
    except CalibrationError as e:
        raise CalibrationError(f"Malformed calibration file {path}: {e}") from e
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise CalibrationError(f"Malformed calibration file {path}: {e!r}") from e


def _read_document(path: Path) -> Dict[str, Any]:
    suffix = path.suffix.lower()
    if suffix not in ('.yaml', '.yml', '.json'):
        raise CalibrationError(f"Unsupported calibration file type '{suffix}' for {path}")

    try:
        with open(path, 'r') as f:
            data = json.load(f) if suffix == '.json' else yaml.safe_load(f)
    except OSError as e:
        raise CalibrationError(f"Cannot read calibration file {path}: {e}") from e
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise CalibrationError(f"Cannot parse calibration file {path}: {e}") from e

    if not isinstance(data, dict):
        raise CalibrationError(f"Calibration file {path} does not contain a mapping")
    return data


def _read_xml(path: Path) -> ET.Element:
    try:
        return ET.parse(path).getroot()
    except OSError as e:
        raise CalibrationError(f"Cannot read calibration file {path}: {e}") from e
    except ET.ParseError as e:
        raise CalibrationError(f"Cannot parse calibration file {path}: {e}") from e


def _parse_xml_matrix(root: ET.Element, *tags: str) -> np.ndarray:
    """Parse an OpenCV matrix element, trying each tag name in turn."""
    element = None
    for tag in tags:
        element = root.find(tag)
        if element is not None:
            break
    if element is None:
        raise CalibrationError(f"Missing matrix '{tags[0]}'")

    try:
        rows = int(element.find('rows').text)
        cols = int(element.find('cols').text)
        data = np.array([float(x) for x in element.find('data').text.split()])
        return data.reshape(rows, cols)
    except (AttributeError, TypeError, ValueError) as e:
        raise CalibrationError(f"Malformed matrix '{element.tag}': {e}") from e


def _parse_xml_size(root: ET.Element) -> Optional[Tuple[int, int]]:
    size = root.find('image_size')
    if size is not None and size.text:
        width, height = (int(v) for v in size.text.split())
        return width, height

    # Stereo files written by cv2.FileStorage often only carry the maps
    map_x = root.find('Left_Stereo_Map_x')
    if map_x is not None:
        return int(map_x.find('cols').text), int(map_x.find('rows').text)

    return None
