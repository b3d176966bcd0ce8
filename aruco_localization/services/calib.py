"""Per-camera calibration loading and validation.

A calibration is read once per camera and never mutated afterwards, so the
same CameraCalibration instance can be shared by every pipeline cycle of that
camera without locking.

Supported sources under the configured calibration path:

- ``<camera_id>.json``: ``{"id", "resolution": {"width", "height"},
  "intrinsic", "distortion", "extrinsic"}``. Matrices are nested lists or
  middleware tensors (``{"shape": {"dims": [...]}, "doubles": [...]}``); the
  extrinsic is a 4x4 ``tf`` (camera -> world) or ``{"rotation",
  "translation"}``.
- ``<camera_id>.yaml`` / ``.yml``: OpenCV FileStorage with ``camera_matrix``,
  ``dist_coeffs``, ``image_width``, ``image_height`` and ``camera_to_world``.
- any ``*.json`` in the directory whose ``id`` matches the camera, or a single
  JSON file holding a list of calibrations or a mapping of id -> calibration.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

import cv2
import numpy as np

from ..errors import ConfigError
from ..transforms import invert_transform, is_rigid_transform, make_transform

_VALID_DISTORTION_SIZES = {0, 4, 5, 8, 12, 14}


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=np.float64, copy=True)
    a.setflags(write=False)
    return a


@dataclass(frozen=True, eq=False)
class CameraCalibration:
    camera_id: str
    intrinsic: np.ndarray  # (3,3)
    distortion: np.ndarray  # (N,)
    camera_to_world: np.ndarray  # (4,4)
    resolution: Optional[Tuple[int, int]] = None  # (width, height)
    marker_size_m: Optional[float] = None
    marker_sizes_m: Mapping[int, float] = field(default_factory=dict)

    def marker_length(self, marker_id: int) -> Optional[float]:
        length = self.marker_sizes_m.get(int(marker_id), self.marker_size_m)
        if length is None or length <= 0:
            return None
        return float(length)

    @property
    def world_to_camera(self) -> np.ndarray:
        return invert_transform(self.camera_to_world)

    def for_resolution(self, width: int, height: int) -> "CameraCalibration":
        """Return a calibration whose intrinsics match a frame of width x height."""
        if self.resolution is None or self.resolution == (width, height):
            return self
        sx = width / float(self.resolution[0])
        sy = height / float(self.resolution[1])
        K = np.diag([sx, sy, 1.0]) @ self.intrinsic
        return replace(self, intrinsic=_readonly(K), resolution=(int(width), int(height)))


def validate_calibration(calib: CameraCalibration) -> CameraCalibration:
    """Raise ConfigError unless calib is geometrically usable."""
    cid = calib.camera_id
    K = calib.intrinsic
    if K.shape != (3, 3) or not np.all(np.isfinite(K)):
        raise ConfigError(f"camera {cid}: intrinsic matrix must be a finite 3x3 matrix")
    if not np.allclose(K[2], [0.0, 0.0, 1.0], atol=1e-9):
        raise ConfigError(f"camera {cid}: intrinsic last row must be [0, 0, 1]")
    if K[0, 0] <= 0 or K[1, 1] <= 0:
        raise ConfigError(f"camera {cid}: focal lengths must be positive")
    if abs(np.linalg.det(K)) < 1e-9 or np.linalg.cond(K) > 1e12:
        raise ConfigError(f"camera {cid}: intrinsic matrix is singular or ill-conditioned")

    if calib.distortion.size not in _VALID_DISTORTION_SIZES:
        raise ConfigError(
            f"camera {cid}: distortion must have one of {sorted(_VALID_DISTORTION_SIZES)} "
            f"coefficients, got {calib.distortion.size}"
        )
    if not np.all(np.isfinite(calib.distortion)):
        raise ConfigError(f"camera {cid}: distortion coefficients must be finite")

    if not is_rigid_transform(calib.camera_to_world):
        raise ConfigError(f"camera {cid}: extrinsic is not a rigid transform (orthonormal rotation)")

    if calib.resolution is not None and (calib.resolution[0] <= 0 or calib.resolution[1] <= 0):
        raise ConfigError(f"camera {cid}: resolution must be positive, got {calib.resolution}")

    if calib.marker_size_m is None and not calib.marker_sizes_m:
        raise ConfigError(f"camera {cid}: no marker side length configured")
    lengths = list(calib.marker_sizes_m.values())
    if calib.marker_size_m is not None:
        lengths.append(calib.marker_size_m)
    if any(length <= 0 for length in lengths):
        raise ConfigError(f"camera {cid}: marker side lengths must be positive")
    return calib


def _matrix(value: Any, name: str) -> np.ndarray:
    """Nested list or middleware tensor -> float64 ndarray."""
    if isinstance(value, dict):
        data = None
        for key in ("doubles", "floats", "ints32", "ints64"):
            if key in value:
                data = value[key]
                break
        if data is None:
            raise ConfigError(f"{name}: tensor has no data")
        dims = [int(d.get("size", 0)) for d in value.get("shape", {}).get("dims", [])]
        try:
            a = np.asarray(data, dtype=np.float64)
            return a.reshape(dims) if dims else a
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name}: tensor data does not match its shape") from exc
    try:
        return np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name}: not a numeric matrix") from exc


def _extrinsic(value: Any, cid: str) -> np.ndarray:
    if value is None:
        raise ConfigError(f"camera {cid}: missing camera->world extrinsic")
    if isinstance(value, dict) and "tf" in value:
        value = value["tf"]
    if isinstance(value, dict) and "rotation" in value:
        R = _matrix(value["rotation"], "extrinsic.rotation")
        t = _matrix(value.get("translation", [0.0, 0.0, 0.0]), "extrinsic.translation")
        if R.size != 9 or t.size != 3:
            raise ConfigError(f"camera {cid}: extrinsic rotation must be 3x3 and translation 3")
        return make_transform(R.reshape(3, 3), t.reshape(3))
    T = _matrix(value, "extrinsic")
    if T.size == 12:
        T = np.vstack([T.reshape(3, 4), [0.0, 0.0, 0.0, 1.0]])
    if T.size != 16:
        raise ConfigError(f"camera {cid}: extrinsic must be a 4x4 transform")
    return T.reshape(4, 4)


def calibration_from_dict(
    raw: Mapping[str, Any],
    camera_id: Optional[str] = None,
    marker_size_m: Optional[float] = None,
    marker_sizes_m: Optional[Mapping[int, float]] = None,
) -> CameraCalibration:
    cid = str(raw.get("id", camera_id) if camera_id is None else camera_id)
    if "intrinsic" not in raw:
        raise ConfigError(f"camera {cid}: calibration has no intrinsic matrix")
    K = _matrix(raw["intrinsic"], "intrinsic")
    if K.size != 9:
        raise ConfigError(f"camera {cid}: intrinsic matrix must be 3x3")
    dist = _matrix(raw.get("distortion", []), "distortion").reshape(-1)
    T = _extrinsic(raw.get("extrinsic"), cid)

    resolution = None
    res_raw = raw.get("resolution")
    if isinstance(res_raw, dict) and "width" in res_raw and "height" in res_raw:
        resolution = (int(res_raw["width"]), int(res_raw["height"]))

    calib = CameraCalibration(
        camera_id=cid,
        intrinsic=_readonly(K.reshape(3, 3)),
        distortion=_readonly(dist),
        camera_to_world=_readonly(T),
        resolution=resolution,
        marker_size_m=marker_size_m,
        marker_sizes_m=dict(marker_sizes_m or {}),
    )
    return validate_calibration(calib)


def load_calib(path: str) -> Tuple[np.ndarray, np.ndarray, Tuple[int, int], Optional[np.ndarray]]:
    """Read an OpenCV FileStorage calibration: K, dist, (w, h), camera->world or None."""
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise ConfigError(f"cannot open calibration file: {path}")
    try:
        K = fs.getNode("camera_matrix").mat()
        dist = fs.getNode("dist_coeffs").mat()
        w = int(fs.getNode("image_width").real())
        h = int(fs.getNode("image_height").real())
        ext_node = fs.getNode("camera_to_world")
        ext = None if ext_node.empty() else ext_node.mat()
    finally:
        fs.release()
    if K is None:
        raise ConfigError(f"{path}: missing camera_matrix")
    if dist is None:
        dist = np.zeros(0)
    return K, dist, (w, h), ext


class CalibrationStore:
    """Loads, validates and caches CameraCalibration entries by camera id."""

    def __init__(
        self,
        path: str | Path,
        marker_size_m: Optional[float] = None,
        marker_sizes_m: Optional[Mapping[int, float]] = None,
    ):
        self.path = Path(path)
        self.marker_size_m = marker_size_m
        self.marker_sizes_m = dict(marker_sizes_m or {})
        self._cache: dict[str, CameraCalibration] = {}
        self._lock = threading.Lock()

    def load(self, camera_id: str) -> CameraCalibration:
        cid = str(camera_id)
        with self._lock:
            cached = self._cache.get(cid)
            if cached is not None:
                return cached
            calib = self._read(cid)
            self._cache[cid] = calib
            return calib

    def add(self, calibration: CameraCalibration) -> CameraCalibration:
        validated = validate_calibration(calibration)
        with self._lock:
            self._cache[validated.camera_id] = validated
        return validated

    def _build(self, raw: Mapping[str, Any], cid: str) -> CameraCalibration:
        return calibration_from_dict(raw, cid, self.marker_size_m, self.marker_sizes_m)

    def _read(self, cid: str) -> CameraCalibration:
        if self.path.is_dir():
            for suffix in (".json", ".yaml", ".yml"):
                candidate = self.path / f"{cid}{suffix}"
                if candidate.exists():
                    return self._read_file(candidate, cid)
            for candidate in sorted(self.path.glob("*.json")):
                try:
                    raw = self._read_json(candidate)
                except ConfigError:
                    continue
                if isinstance(raw, dict) and str(raw.get("id")) == cid:
                    return self._build(raw, cid)
            raise ConfigError(f"camera {cid}: no calibration found in {self.path}")
        if self.path.is_file():
            return self._read_file(self.path, cid)
        raise ConfigError(f"calibration path does not exist: {self.path}")

    def _read_file(self, path: Path, cid: str) -> CameraCalibration:
        if path.suffix.lower() in {".yaml", ".yml"}:
            K, dist, (w, h), ext = load_calib(str(path))
            raw = {
                "intrinsic": K,
                "distortion": dist.reshape(-1),
                "extrinsic": ext,
                "resolution": {"width": w, "height": h} if w > 0 and h > 0 else None,
            }
            return self._build(raw, cid)

        raw = self._read_json(path)
        if isinstance(raw, list):
            for entry in raw:
                if isinstance(entry, dict) and str(entry.get("id")) == cid:
                    return self._build(entry, cid)
            raise ConfigError(f"camera {cid}: not present in {path}")
        if isinstance(raw, dict) and "intrinsic" not in raw:
            entry = raw.get(cid)
            if not isinstance(entry, dict):
                raise ConfigError(f"camera {cid}: not present in {path}")
            return self._build(entry, cid)
        if isinstance(raw, dict):
            file_id = raw.get("id")
            if file_id is not None and str(file_id) != cid:
                raise ConfigError(f"camera {cid}: {path} holds calibration for camera {file_id}")
            return self._build(raw, cid)
        raise ConfigError(f"{path}: unsupported calibration layout")

    @staticmethod
    def _read_json(path: Path) -> Any:
        try:
            with path.open("r", encoding="utf-8") as fp:
                return json.load(fp)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"cannot read calibration {path}: {exc}") from exc
