"""Rendering of known markers into images with a pinhole camera.

Used by the dry-run frame source and by the tests: the true pose of every
marker is known, so the pipeline output can be checked against it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import cv2
import numpy as np

from .services.calib import CameraCalibration, validate_calibration
from .strategies.localize_pnp import marker_object_points
from .strategies.marker_dictionary import MarkerDictionary


@dataclass(frozen=True)
class PlacedMarker:
    """A marker at pose (rvec, tvec) in the camera frame (marker -> camera)."""

    marker_id: int
    rvec: tuple[float, float, float]
    tvec: tuple[float, float, float]
    side_m: float = 0.1


def facing_camera(marker_id: int, distance_m: float, x_m: float = 0.0, y_m: float = 0.0,
                  side_m: float = 0.1, tilt_rad: float = 0.0) -> PlacedMarker:
    """Marker parallel to the image plane (optionally tilted about its x axis)."""
    return PlacedMarker(marker_id, (math.pi + tilt_rad, 0.0, 0.0), (x_m, y_m, distance_m), side_m)


def pinhole_intrinsics(width: int = 640, height: int = 480, focal_px: float = 600.0) -> np.ndarray:
    return np.array(
        [[focal_px, 0.0, width / 2.0], [0.0, focal_px, height / 2.0], [0.0, 0.0, 1.0]],
        dtype=np.float64,
    )


def make_calibration(
    camera_id: str = "0",
    width: int = 640,
    height: int = 480,
    focal_px: float = 600.0,
    camera_to_world: Optional[np.ndarray] = None,
    marker_size_m: Optional[float] = 0.1,
    marker_sizes_m: Optional[dict[int, float]] = None,
) -> CameraCalibration:
    T = np.eye(4) if camera_to_world is None else np.asarray(camera_to_world, dtype=np.float64)
    K = pinhole_intrinsics(width, height, focal_px)
    dist = np.zeros(5)
    for a in (K, dist, T):
        a.setflags(write=False)
    return validate_calibration(
        CameraCalibration(
            camera_id=str(camera_id),
            intrinsic=K,
            distortion=dist,
            camera_to_world=T,
            resolution=(width, height),
            marker_size_m=marker_size_m,
            marker_sizes_m=dict(marker_sizes_m or {}),
        )
    )


def project_marker(marker: PlacedMarker, K: np.ndarray, dist: Optional[np.ndarray] = None) -> np.ndarray:
    """Image positions (4,2) of the marker's outer corners TL, TR, BR, BL."""
    pts, _ = cv2.projectPoints(
        marker_object_points(marker.side_m),
        np.asarray(marker.rvec, dtype=np.float64).reshape(3, 1),
        np.asarray(marker.tvec, dtype=np.float64).reshape(3, 1),
        K,
        np.zeros(5) if dist is None else dist,
    )
    return pts.reshape(4, 2)


def render_marker_scene(
    dictionary: MarkerDictionary,
    markers: Iterable[PlacedMarker],
    K: np.ndarray,
    width: int = 640,
    height: int = 480,
    background: int = 255,
    pixels_per_cell: int = 20,
    noise_sigma: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Grayscale uint8 image of the markers on a uniform background."""
    canvas = np.full((height, width), float(background), dtype=np.float32)
    n = (dictionary.marker_size + 2) * pixels_per_cell
    src = np.array(
        [[-0.5, -0.5], [n - 0.5, -0.5], [n - 0.5, n - 0.5], [-0.5, n - 0.5]],
        dtype=np.float32,
    )
    for marker in markers:
        tile = dictionary.marker_image(marker.marker_id, n)
        dst = project_marker(marker, K).astype(np.float32)
        H = cv2.getPerspectiveTransform(src, dst)
        warped = cv2.warpPerspective(tile, H, (width, height), flags=cv2.INTER_LINEAR).astype(np.float32)
        mask = cv2.warpPerspective(
            np.full((n, n), 255, dtype=np.uint8), H, (width, height), flags=cv2.INTER_LINEAR
        ).astype(np.float32) / 255.0
        canvas = canvas * (1.0 - mask) + warped * mask

    if noise_sigma > 0:
        rng = rng or np.random.default_rng(0)
        canvas = canvas + rng.normal(0.0, noise_sigma, canvas.shape)
    return np.clip(np.rint(canvas), 0, 255).astype(np.uint8)


def marker_world_position(marker: PlacedMarker, camera_to_world: Sequence) -> np.ndarray:
    """True world position of a placed marker's centre."""
    T = np.asarray(camera_to_world, dtype=np.float64)
    return T[:3, :3] @ np.asarray(marker.tvec, dtype=np.float64) + T[:3, 3]
