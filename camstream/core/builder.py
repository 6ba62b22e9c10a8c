"""
Stream Builder Module

``CamStreamBuilder`` accumulates and validates stream configuration and
produces a ready ``MonoCamStream`` or ``StereoCamStream``.

Lifecycle
---------
    Empty -> VariantSelected(mono | stereo) -> PathsConfigured
          -> RectificationConfigured -> CaptureParamsConfigured -> Built

``mono()`` or ``stereo()`` must be called first and decides which path
setters are legal. After that, setters may be called in any order; each one
validates eagerly. ``build()`` reports the first unmet precondition in the
order variant, paths, rectification, capture parameters, device open, and
never leaves a partially opened stream behind.

Example:
    >>> stream = (CamStreamBuilder()
    ...     .stereo()
    ...     .left_path("/dev/video0")
    ...     .right_path("/dev/video2")
    ...     .rectif_params_from_file("stereo_rectif_params.yaml")
    ...     .interval(1, 30)
    ...     .resolution(640, 480)
    ...     .format(b"MJPG")
    ...     .sync(tolerance=0.005, max_retries=3)
    ...     .build())
    >>> frame = stream.capture()
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import yaml

from ..calibration.model import CalibrationModel, StereoCalibrationModel, load_calibration
from ..capture.codec import ImageCodec, OpenCVCodec
from ..capture.frame import CaptureParameters, normalize_fourcc
from ..capture.source import CaptureSource, SourceFactory, open_opencv_source, probe_device
from ..errors import CalibrationError, CamStreamError, ConfigurationError, DeviceError
from .rectification import RectificationEngine
from .stream import MonoCamStream, StereoCamStream, SyncPolicy

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
Model = Union[CalibrationModel, StereoCalibrationModel]


class Stage(Enum):
    """Builder lifecycle stages."""
    EMPTY = "empty"
    VARIANT_SELECTED = "variant_selected"
    PATHS_CONFIGURED = "paths_configured"
    RECTIFICATION_CONFIGURED = "rectification_configured"
    CAPTURE_PARAMS_CONFIGURED = "capture_params_configured"
    BUILT = "built"


class RectificationMode(Enum):
    FILE = "file"
    DIRECT = "direct"
    NONE = "none"


@dataclass
class _MonoConfig:
    path: Optional[Path] = None

    variant = "mono"

    def missing_paths(self):
        return [] if self.path is not None else ["path"]


@dataclass
class _StereoConfig:
    left_path: Optional[Path] = None
    right_path: Optional[Path] = None
    sync: Optional[SyncPolicy] = None

    variant = "stereo"

    def missing_paths(self):
        return [name for name, value in (("left_path", self.left_path),
                                         ("right_path", self.right_path)) if value is None]


@dataclass
class _Rectification:
    mode: RectificationMode
    model: Optional[Model] = None


class CamStreamBuilder:
    """
    Fluent, validated configuration for a camera stream.

    Args:
        source_factory: Opens a capture source for (path, CaptureParameters).
            Defaults to the OpenCV V4L2 source
        codec: Raw frame decoder. Defaults to ``OpenCVCodec``
        device_probe: Validates a device path, raising ``DeviceError``.
            Defaults to ``probe_device``
        engine: Rectification engine shared by the built stream
    """

    def __init__(
            self,
            source_factory: Optional[SourceFactory] = None,
            codec: Optional[ImageCodec] = None,
            device_probe: Optional[Callable[[PathLike], Path]] = None,
            engine: Optional[RectificationEngine] = None
    ):
        self._source_factory = source_factory or open_opencv_source
        self._codec = codec or OpenCVCodec()
        self._device_probe = device_probe or probe_device
        self._engine = engine or RectificationEngine()

        self._config: Optional[Union[_MonoConfig, _StereoConfig]] = None
        self._rectification: Optional[_Rectification] = None
        self._interval = None
        self._resolution = None
        self._fourcc: Optional[str] = None
        self._num_buffers = 2
        self._built = False

    # -- state ------------------------------------------------------------

    @property
    def variant(self) -> Optional[str]:
        return self._config.variant if self._config is not None else None

    @property
    def stage(self) -> Stage:
        """Furthest lifecycle stage whose requirements are all met."""
        if self._built:
            return Stage.BUILT
        if self._config is None:
            return Stage.EMPTY
        if self._config.missing_paths():
            return Stage.VARIANT_SELECTED
        if self._rectification is None:
            return Stage.PATHS_CONFIGURED
        if self._missing_capture_params():
            return Stage.RECTIFICATION_CONFIGURED
        return Stage.CAPTURE_PARAMS_CONFIGURED

    def _check_not_built(self, call: str) -> None:
        if self._built:
            raise ConfigurationError(f"{call} called after build(); the builder is finished")

    def _require_variant(self, call: str):
        self._check_not_built(call)
        if self._config is None:
            raise ConfigurationError(f"{call} called before selecting mono() or stereo()")
        return self._config

    def _require_mono(self, call: str) -> _MonoConfig:
        config = self._require_variant(call)
        if not isinstance(config, _MonoConfig):
            raise ConfigurationError(
                f"{call} is only valid for mono streams; use left_path()/right_path() for stereo"
            )
        return config

    def _require_stereo(self, call: str) -> _StereoConfig:
        config = self._require_variant(call)
        if not isinstance(config, _StereoConfig):
            raise ConfigurationError(f"{call} is only valid for stereo streams")
        return config

    # -- variant ----------------------------------------------------------

    def mono(self) -> "CamStreamBuilder":
        """Select a single-camera stream."""
        self._select(_MonoConfig())
        return self

    def stereo(self) -> "CamStreamBuilder":
        """Select a stereo-pair stream."""
        self._select(_StereoConfig())
        return self

    def _select(self, config) -> None:
        self._check_not_built(f"{config.variant}()")
        if self._config is not None:
            raise ConfigurationError(
                f"Variant already selected as {self._config.variant}; cannot switch to {config.variant}"
            )
        self._config = config

    # -- paths ------------------------------------------------------------

    def path(self, path: PathLike) -> "CamStreamBuilder":
        """Set the device path of a mono camera, such as ``/dev/video0``."""
        config = self._require_mono("path()")
        config.path = self._probe(path)
        return self

    def left_path(self, path: PathLike) -> "CamStreamBuilder":
        """Set the device path of the left stereo camera."""
        config = self._require_stereo("left_path()")
        resolved = self._probe(path)
        self._check_distinct(resolved, config.right_path)
        config.left_path = resolved
        return self

    def right_path(self, path: PathLike) -> "CamStreamBuilder":
        """Set the device path of the right stereo camera."""
        config = self._require_stereo("right_path()")
        resolved = self._probe(path)
        self._check_distinct(resolved, config.left_path)
        config.right_path = resolved
        return self

    def _probe(self, path: PathLike) -> Path:
        if not isinstance(path, (str, os.PathLike)):
            raise ConfigurationError(f"Device path must be a string or path, got {path!r}")
        return self._device_probe(path)

    @staticmethod
    def _check_distinct(path: Path, other: Optional[Path]) -> None:
        if other is not None and Path(path).resolve() == Path(other).resolve():
            raise ConfigurationError(f"Left and right cameras cannot share the device {path}")

    # -- rectification ----------------------------------------------------

    def rectif_params_from_file(self, path: PathLike) -> "CamStreamBuilder":
        """
        Load rectification parameters from a YAML, JSON or OpenCV XML file.

        Raises:
            CalibrationError: If the file is missing or malformed
        """
        config = self._require_variant("rectif_params_from_file()")
        self._check_rectification_unset("rectif_params_from_file()")
        model = load_calibration(path, stereo=isinstance(config, _StereoConfig))
        self._rectification = _Rectification(RectificationMode.FILE, model)
        return self

    def rectif_params(self, params: Union[Model, Dict[str, Any]]) -> "CamStreamBuilder":
        """
        Supply rectification parameters directly.

        Args:
            params: ``CalibrationModel`` for mono, ``StereoCalibrationModel`` for
                stereo, or a mapping in the calibration file schema
        """
        config = self._require_variant("rectif_params()")
        self._check_rectification_unset("rectif_params()")

        expected = StereoCalibrationModel if isinstance(config, _StereoConfig) else CalibrationModel
        if isinstance(params, dict):
            params = expected.from_dict(params)
        if not isinstance(params, expected):
            raise ConfigurationError(
                f"{config.variant} streams need a {expected.__name__}, got {type(params).__name__}"
            )

        self._rectification = _Rectification(RectificationMode.DIRECT, params)
        return self

    def no_rectification(self) -> "CamStreamBuilder":
        """Pass decoded frames through unchanged."""
        self._require_variant("no_rectification()")
        self._check_rectification_unset("no_rectification()")
        self._rectification = _Rectification(RectificationMode.NONE)
        return self

    def _check_rectification_unset(self, call: str) -> None:
        if self._rectification is not None:
            raise ConfigurationError(
                f"{call} conflicts with the rectification already chosen "
                f"({self._rectification.mode.value}); choose exactly one of "
                "rectif_params_from_file(), rectif_params() or no_rectification()"
            )

    # -- capture parameters -----------------------------------------------

    def interval(self, numerator: int, denominator: int) -> "CamStreamBuilder":
        """
        Set the frame interval in seconds as a fraction.

        V4L2 uses intervals rather than frame rates: ``interval(1, 30)`` is 30 fps.
        """
        self._require_variant("interval()")
        self._interval = (
            _positive_int(numerator, "interval numerator"),
            _positive_int(denominator, "interval denominator"),
        )
        return self

    def resolution(self, width: int, height: int) -> "CamStreamBuilder":
        """Set the capture and output resolution."""
        self._require_variant("resolution()")
        self._resolution = (_positive_int(width, "width"), _positive_int(height, "height"))
        return self

    def format(self, code: Union[bytes, str]) -> "CamStreamBuilder":
        """
        Set the pixel format as a FourCC code, such as ``b"MJPG"``.

        Raises:
            ConfigurationError: If the codec cannot decode the format
        """
        self._require_variant("format()")
        fourcc = normalize_fourcc(code)
        if fourcc not in self._codec.supported_formats:
            raise ConfigurationError(
                f"Unsupported format {fourcc}; supported: {', '.join(self._codec.supported_formats)}"
            )
        self._fourcc = fourcc
        return self

    def num_buffers(self, count: int) -> "CamStreamBuilder":
        """Set the device buffer queue length (default 2)."""
        self._require_variant("num_buffers()")
        self._num_buffers = _positive_int(count, "num_buffers")
        return self

    def sync(self, tolerance: float, max_retries: int) -> "CamStreamBuilder":
        """
        Set the stereo pairing rule.

        Args:
            tolerance: Maximum left/right grab time difference in seconds
            max_retries: Re-grabs allowed before ``SynchronizationError``
        """
        config = self._require_stereo("sync()")
        config.sync = SyncPolicy(tolerance=tolerance, max_retries=max_retries)
        return self

    def _missing_capture_params(self):
        missing = [name for name, value in (("resolution", self._resolution),
                                            ("format", self._fourcc)) if value is None]
        if isinstance(self._config, _StereoConfig) and self._config.sync is None:
            missing.append("sync")
        return missing

    # -- build ------------------------------------------------------------

    def build(self) -> Union[MonoCamStream, StereoCamStream]:
        """
        Validate the configuration, precompute rectification maps and open the devices.

        Raises:
            ConfigurationError: Missing variant, path, rectification choice or capture parameter
            CalibrationError: Calibration does not fit the configured resolution
            DeviceError: A device could not be opened
        """
        self._check_not_built("build()")

        if self._config is None:
            raise ConfigurationError("No variant selected; call mono() or stereo() first")

        missing = self._config.missing_paths()
        if missing:
            raise ConfigurationError(f"Missing camera path: {missing[0]}")

        if self._rectification is None:
            raise ConfigurationError(
                "No rectification chosen; call rectif_params_from_file(), rectif_params() "
                "or no_rectification()"
            )

        missing = self._missing_capture_params()
        if missing:
            raise ConfigurationError(f"Missing capture parameter: {missing[0]}")

        params = CaptureParameters(
            resolution=self._resolution,
            fourcc=self._fourcc,
            interval=self._interval,
            num_buffers=self._num_buffers
        )

        if isinstance(self._config, _MonoConfig):
            stream = self._build_mono(self._config, params)
        else:
            stream = self._build_stereo(self._config, params)

        self._built = True
        return stream

    def _build_mono(self, config: _MonoConfig, params: CaptureParameters) -> MonoCamStream:
        rect_map = None
        model = self._rectification.model
        if model is not None:
            self._check_model_size(model.image_size, params, "camera")
            rect_map = self._engine.compute_map(model, params.width, params.height)

        source = self._open(config.path, params)

        logger.info(f"Mono stream ready on {config.path} "
                    f"({self._rectification.mode.value} rectification)")
        return MonoCamStream(source, params, self._codec, self._engine, rect_map)

    def _build_stereo(self, config: _StereoConfig, params: CaptureParameters) -> StereoCamStream:
        left_map = right_map = None
        model = self._rectification.model
        if model is not None:
            self._check_model_size(model.left.image_size, params, "left")
            self._check_model_size(model.right.image_size, params, "right")
            left_map = self._engine.compute_map(model.left, params.width, params.height)
            right_map = self._engine.compute_map(model.right, params.width, params.height)

        left_source = self._open(config.left_path, params)
        try:
            right_source = self._open(config.right_path, params)
        except CamStreamError:
            left_source.close()
            raise

        logger.info(f"Stereo stream ready on {config.left_path} / {config.right_path} "
                    f"({self._rectification.mode.value} rectification, "
                    f"tolerance {config.sync.tolerance * 1000:.2f} ms, "
                    f"{config.sync.max_retries} retries)")
        return StereoCamStream(left_source, right_source, params, self._codec, self._engine,
                               config.sync, left_map, right_map)

    @staticmethod
    def _check_model_size(image_size, params: CaptureParameters, side: str) -> None:
        if image_size is not None and tuple(image_size) != params.resolution:
            raise CalibrationError(
                f"{side} calibration is for {image_size[0]}x{image_size[1]} but the stream "
                f"resolution is {params.width}x{params.height}"
            )

    def _open(self, path: Path, params: CaptureParameters) -> CaptureSource:
        try:
            return self._source_factory(path, params)
        except CamStreamError:
            raise
        except Exception as e:
            raise DeviceError(f"Cannot open capture device {path}: {e}", path) from e

    # -- configuration files ----------------------------------------------

    @classmethod
    def from_config(
            cls,
            config: Dict[str, Any],
            base_dir: Optional[PathLike] = None,
            **kwargs
    ) -> "CamStreamBuilder":
        """
        Create a configured builder from a configuration dictionary.

        Args:
            config: Mapping with keys:
                - variant: "mono" or "stereo"
                - path, or left_path and right_path
                - rectification: "none", a calibration file path, or an inline parameter mapping
                - interval: [numerator, denominator] (optional)
                - resolution: [width, height]
                - format: FourCC string such as "MJPG"
                - num_buffers: device queue length (optional)
                - sync: {tolerance, max_retries} (stereo)
            base_dir: Directory relative calibration paths are resolved against
            **kwargs: Passed to the builder constructor

        Returns:
            Builder ready for ``build()``
        """
        if not isinstance(config, dict):
            raise ConfigurationError("Stream configuration must be a mapping")

        builder = cls(**kwargs)

        variant = config.get("variant")
        if variant == "mono":
            builder.mono()
            if "path" in config:
                builder.path(config["path"])
        elif variant == "stereo":
            builder.stereo()
            if "left_path" in config:
                builder.left_path(config["left_path"])
            if "right_path" in config:
                builder.right_path(config["right_path"])
        else:
            raise ConfigurationError(f"variant must be 'mono' or 'stereo', got {variant!r}")

        rectification = config.get("rectification")
        if isinstance(rectification, dict):
            builder.rectif_params(rectification)
        elif isinstance(rectification, str) and rectification.lower() == "none":
            builder.no_rectification()
        elif isinstance(rectification, str):
            path = Path(rectification)
            if base_dir is not None and not path.is_absolute():
                path = Path(base_dir) / path
            builder.rectif_params_from_file(path)
        elif rectification is not None:
            raise ConfigurationError(f"Invalid rectification setting: {rectification!r}")

        try:
            if "interval" in config:
                builder.interval(*config["interval"])
            if "resolution" in config:
                builder.resolution(*config["resolution"])
            if "num_buffers" in config:
                builder.num_buffers(config["num_buffers"])
            if "sync" in config:
                sync = config["sync"]
                builder.sync(tolerance=sync["tolerance"], max_retries=sync["max_retries"])
        except (KeyError, TypeError) as e:
            raise ConfigurationError(f"Invalid stream configuration: {e!r}") from e

        if "format" in config:
            builder.format(config["format"])

        return builder

    @classmethod
    def from_config_file(cls, path: PathLike, **kwargs) -> "CamStreamBuilder":
        """Create a configured builder from a YAML configuration file."""
        path = Path(path)
        return cls.from_config(load_config(path), base_dir=path.parent, **kwargs)


def load_config(path: PathLike) -> Dict[str, Any]:
    """Load a stream configuration from a YAML file."""
    try:
        with open(path, "r") as f:
            config = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cannot parse configuration {path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration {path} does not contain a mapping")
    return config


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
    return value
