import logging
from typing import Optional

import cv2
import numpy as np

from ..errors import PoseEstimationError
from ..loc_types import DetectedMarker, MarkerPose, Quaternion, ReferenceFrame
from ..services.calib import CameraCalibration

log = logging.getLogger(__name__)


def marker_object_points(side_m: float) -> np.ndarray:
    """Corners (TL, TR, BR, BL) of a square marker centred in its own z=0 plane."""
    h = side_m / 2.0
    return np.array(
        [[-h, h, 0.0], [h, h, 0.0], [h, -h, 0.0], [-h, -h, 0.0]],
        dtype=np.float64,
    )


def reprojection_error(object_points, image_points, rvec, tvec, K, dist) -> float:
    """Mean Euclidean distance (px) between observed and reprojected corners."""
    projected, _ = cv2.projectPoints(
        np.asarray(object_points, dtype=np.float64),
        np.asarray(rvec, dtype=np.float64).reshape(3, 1),
        np.asarray(tvec, dtype=np.float64).reshape(3, 1),
        K,
        dist,
    )
    diff = projected.reshape(-1, 2) - np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
    return float(np.linalg.norm(diff, axis=1).mean())


class PoseEstimator:
    """
    Planar square PnP (IPPE). Both solutions of the planar ambiguity are
    scored by reprojection error; the lower one is returned.

    IPPE_SQUARE degenerates on exactly fronto-parallel corners and can return
    the same wrong pose twice. When its best error exceeds ``fallback_error_px``
    the general IPPE, SQPNP and iterative solvers are scored as well.
    """

    FALLBACK_FLAGS = (
        ("ippe", cv2.SOLVEPNP_IPPE),
        ("sqpnp", cv2.SOLVEPNP_SQPNP),
        ("iterative", cv2.SOLVEPNP_ITERATIVE),
    )

    def __init__(self, refine: bool = True, fallback_error_px: float = 0.5):
        self.refine = refine
        self.fallback_error_px = fallback_error_px

    def estimate(self, marker: DetectedMarker, calibration: CameraCalibration) -> MarkerPose:
        side = calibration.marker_length(marker.marker_id)
        if side is None:
            raise PoseEstimationError(f"marker {marker.marker_id}: no side length configured")

        obj = marker_object_points(side)
        img = np.asarray(marker.corners, dtype=np.float64).reshape(4, 2)
        K = np.asarray(calibration.intrinsic, dtype=np.float64)
        dist = np.asarray(calibration.distortion, dtype=np.float64)

        try:
            scored = self._solve(obj, img, K, dist, cv2.SOLVEPNP_IPPE_SQUARE)
        except cv2.error as exc:
            raise PoseEstimationError(f"marker {marker.marker_id}: PnP failed: {exc}") from exc

        if not scored or scored[0][0] > self.fallback_error_px:
            for name, flag in self.FALLBACK_FLAGS:
                try:
                    scored.extend(self._solve(obj, img, K, dist, flag))
                except cv2.error as exc:
                    log.debug("marker=%d solver=%s failed: %s", marker.marker_id, name, exc)
            scored.sort(key=lambda s: s[0])
        if not scored:
            raise PoseEstimationError(f"marker {marker.marker_id}: PnP returned no usable solution")

        error, rvec, tvec = scored[0]
        alternate: Optional[float] = scored[1][0] if len(scored) > 1 else None
        if self.refine:
            error, rvec, tvec = self._refine(obj, img, K, dist, error, rvec, tvec)

        log.debug(
            "marker=%d error=%.3f alternate=%s depth=%.3f",
            marker.marker_id, error, alternate, tvec[2],
        )
        return MarkerPose(
            marker_id=marker.marker_id,
            position=(float(tvec[0]), float(tvec[1]), float(tvec[2])),
            orientation=Quaternion.from_rvec(rvec),
            reprojection_error=error,
            frame=ReferenceFrame.CAMERA,
            detection_confidence=marker.confidence,
            alternate_error=alternate,
            camera_depth=float(tvec[2]),
            corners=img,
        )

    @staticmethod
    def _solve(obj, img, K, dist, flag) -> list:
        """Finite solutions in front of the camera, sorted by reprojection error."""
        count, rvecs, tvecs, _ = cv2.solvePnPGeneric(obj, img, K, dist, flags=flag)
        scored = []
        for rvec, tvec in zip(rvecs[:count], tvecs[:count]):
            rvec = np.asarray(rvec, dtype=np.float64).reshape(3)
            tvec = np.asarray(tvec, dtype=np.float64).reshape(3)
            if not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))) or tvec[2] <= 0.0:
                continue
            scored.append((reprojection_error(obj, img, rvec, tvec, K, dist), rvec, tvec))
        scored.sort(key=lambda s: s[0])
        return scored

    @staticmethod
    def _refine(obj, img, K, dist, error, rvec, tvec):
        try:
            r, t = cv2.solvePnPRefineLM(obj, img, K, dist, rvec.reshape(3, 1).copy(), tvec.reshape(3, 1).copy())
        except cv2.error:
            return error, rvec, tvec
        r = np.asarray(r, dtype=np.float64).reshape(3)
        t = np.asarray(t, dtype=np.float64).reshape(3)
        if not (np.all(np.isfinite(r)) and np.all(np.isfinite(t))) or t[2] <= 0.0:
            return error, rvec, tvec
        refined = reprojection_error(obj, img, r, t, K, dist)
        if refined <= error:
            return refined, r, t
        return error, rvec, tvec
