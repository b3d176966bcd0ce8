from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigError

DETECTOR_BACKENDS = ("native", "opencv")


@dataclass
class DetectorConfig:
    """Candidate search and decoding parameters for MarkerDetector."""

    backend: str = "native"  # "native" or "opencv" (cv2.aruco.ArucoDetector)
    adaptive_thresh_win_sizes: list[int] = field(default_factory=lambda: [3, 13, 23])
    adaptive_thresh_constant: float = 7.0
    min_perimeter_rate: float = 0.03  # relative to max(image width, height)
    max_perimeter_rate: float = 4.0
    polygonal_approx_accuracy_rate: float = 0.03
    min_corner_distance_rate: float = 0.05  # shortest side vs perimeter
    min_side_ratio: float = 0.2  # shortest side / longest side
    min_distance_to_border: int = 3
    cell_pixels: int = 8
    cell_margin_rate: float = 0.13
    max_erroneous_border_rate: float = 0.35
    error_correction_rate: float = 0.6
    min_otsu_std_dev: float = 5.0
    corner_refinement: bool = True
    corner_refinement_win_size: int = 5
    corner_refinement_max_iterations: int = 30
    corner_refinement_min_accuracy: float = 0.01

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FusionConfig:
    reprojection_error_threshold_px: float = 4.0
    error_scale_px: Optional[float] = None  # defaults to the threshold
    max_single_confidence: float = 0.99
    position_tolerance_m: float = 0.05
    rotation_tolerance_rad: float = 0.15
    use_range_score: bool = False
    range_near_m: float = 3.0
    range_far_m: float = 5.0

    @property
    def effective_error_scale_px(self) -> float:
        if self.error_scale_px is not None:
            return self.error_scale_px
        return self.reprojection_error_threshold_px

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ServiceConfig:
    service_name: str = "ArUco.Localization"
    camera_ids: list[str] = field(default_factory=lambda: ["0"])
    calibration_path: str = "calibs"
    marker_dictionary: str = "4x4_50"
    marker_size_m: Optional[float] = 0.1
    marker_sizes_m: Optional[dict[int, float]] = None
    target_ids: Optional[list[int]] = None
    cpu_parallelism: Optional[int] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)

    @property
    def reprojection_error_threshold_px(self) -> float:
        return self.fusion.reprojection_error_threshold_px

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "ServiceConfig":
        for key, value in kwargs.items():
            if value is None:
                continue
            if key == "reprojection_error_threshold_px":
                self.fusion.reprojection_error_threshold_px = float(value)
            elif hasattr(self, key):
                setattr(self, key, value)
        return self

    def validate(self) -> "ServiceConfig":
        if not self.camera_ids:
            raise ConfigError("camera_ids must list at least one camera")
        if self.marker_size_m is not None and self.marker_size_m <= 0:
            raise ConfigError(f"marker_size_m must be positive, got {self.marker_size_m}")
        if self.marker_size_m is None and not self.marker_sizes_m:
            raise ConfigError("either marker_size_m or marker_sizes_m must be set")
        for marker_id, length in (self.marker_sizes_m or {}).items():
            if length <= 0:
                raise ConfigError(f"marker_sizes_m[{marker_id}] must be positive, got {length}")
        if self.fusion.reprojection_error_threshold_px <= 0:
            raise ConfigError("reprojection_error_threshold_px must be positive")
        if self.fusion.effective_error_scale_px <= 0:
            raise ConfigError("error_scale_px must be positive")
        if not 0.0 < self.fusion.max_single_confidence <= 1.0:
            raise ConfigError("max_single_confidence must be in (0, 1]")
        if self.fusion.position_tolerance_m <= 0 or self.fusion.rotation_tolerance_rad <= 0:
            raise ConfigError("fusion tolerances must be positive")
        if self.fusion.range_far_m <= self.fusion.range_near_m:
            raise ConfigError("range_far_m must be greater than range_near_m")
        if self.detector.backend not in DETECTOR_BACKENDS:
            raise ConfigError(f"detector.backend must be one of {DETECTOR_BACKENDS}, got {self.detector.backend!r}")
        if not self.detector.adaptive_thresh_win_sizes:
            raise ConfigError("adaptive_thresh_win_sizes must not be empty")
        if any(w < 3 or w % 2 == 0 for w in self.detector.adaptive_thresh_win_sizes):
            raise ConfigError("adaptive threshold windows must be odd and >= 3")
        return self


def _first(raw: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return default


def _normalize_ids(value: Any) -> Optional[list[int]]:
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        return [int(v) for v in value]
    if isinstance(value, (int, float)):
        return [int(value)]
    raise ConfigError(f"expected a list of marker ids, got {value!r}")


def _normalize_camera_ids(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    if isinstance(value, (str, int)):
        return [str(value)]
    raise ConfigError(f"camera_ids must be a list, got {value!r}")


def _load_yaml(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as fp:
        return yaml.safe_load(fp) or {}


def _update_dataclass(target: Any, raw: Any, section: str) -> None:
    if raw is None:
        return
    if not isinstance(raw, dict):
        raise ConfigError(f"{section} must be a mapping")
    for key, value in raw.items():
        if not hasattr(target, key):
            raise ConfigError(f"unknown {section} option: {key}")
        current = getattr(target, key)
        try:
            if isinstance(current, bool):
                value = bool(value)
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
            elif isinstance(current, str):
                value = str(value)
            elif isinstance(current, list):
                value = [int(v) for v in value]
            elif value is not None and key == "error_scale_px":
                value = float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid value for {section}.{key}: {value!r}") from exc
        setattr(target, key, value)


def parse_config(raw: Any) -> ServiceConfig:
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a JSON/YAML object")

    cfg = ServiceConfig()
    try:
        cfg.service_name = str(_first(raw, "service_name", "serviceName", default=cfg.service_name))
        cfg.camera_ids = _normalize_camera_ids(
            _first(raw, "camera_ids", "cameraIds", default=cfg.camera_ids)
        )
        cfg.calibration_path = str(
            _first(raw, "calibration_path", "cameraCalibrationPath", default=cfg.calibration_path)
        )
        cfg.marker_dictionary = str(
            _first(raw, "marker_dictionary", "markerDictionary", default=cfg.marker_dictionary)
        )
        size = _first(raw, "marker_size_m", "markerSizeMeters", default=cfg.marker_size_m)
        cfg.marker_size_m = float(size) if size is not None else None

        lengths_raw = _first(raw, "marker_sizes_m", "markerSizesMeters", default=None)
        if lengths_raw is not None:
            if not isinstance(lengths_raw, dict):
                raise ConfigError("marker_sizes_m must be a mapping of marker_id -> length_m")
            cfg.marker_sizes_m = {int(k): float(v) for k, v in lengths_raw.items()}

        cfg.target_ids = _normalize_ids(_first(raw, "target_ids", "targetIds", default=None))

        parallelism = _first(raw, "cpu_parallelism", "cpuParallelism", default=None)
        cfg.cpu_parallelism = int(parallelism) if parallelism is not None else None
        cfg.log_level = str(raw.get("log_level", cfg.log_level)).upper()
        log_file = raw.get("log_file")
        cfg.log_file = str(log_file) if log_file is not None else None

        _update_dataclass(cfg.detector, raw.get("detector"), "detector")
        _update_dataclass(cfg.fusion, raw.get("fusion"), "fusion")

        threshold = _first(
            raw,
            "reprojection_error_threshold_px",
            "reprojectionErrorThresholdPixels",
            default=None,
        )
        if threshold is not None:
            cfg.fusion.reprojection_error_threshold_px = float(threshold)
    except ConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid configuration value: {exc}") from exc

    return cfg.validate()


def load_config(path: str | Path) -> ServiceConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = _load_yaml(p)
    else:
        with p.open("r", encoding="utf-8") as fp:
            raw = json.load(fp)

    return parse_config(raw)
