"""
Fusion of the world-frame marker poses seen by one camera in one frame.

Each surviving pose gets a confidence from its reprojection error,

    c = max_single_confidence / (1 + (error / error_scale) ** 2)

and several poses are combined with c as weight: weighted mean position and
the Markley eigenvector average of the orientations. The fused confidence is
the probability that at least one pose is right, damped only once the poses
spread further around the fused estimate than the tolerances allow:

    excess(s, tol) = max(0, s / tol - 1)
    (1 - prod(1 - c_i)) * exp(-0.5 * (excess(sigma_p, pos_tol) ** 2 + excess(sigma_r, rot_tol) ** 2))

Because every c_i < 1, two or more poses that agree within tolerance always
score above any one of them alone.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional, Sequence

import numpy as np

from ..config import FusionConfig
from ..loc_types import LocalizationResult, MarkerDiagnostic, MarkerPose, Quaternion, ReferenceFrame
from ..transforms import average_quaternions, canonical_quaternion, quaternion_angle

log = logging.getLogger(__name__)


def pose_confidence(error_px: float, scale_px: float, ceiling: float = 0.99) -> float:
    return ceiling / (1.0 + (error_px / scale_px) ** 2)


def _excess(spread: float, tolerance: float) -> float:
    return max(0.0, spread / tolerance - 1.0)


def range_score(depth_m: Optional[float], near_m: float = 3.0, far_m: float = 5.0) -> Optional[float]:
    """1 up to near_m, falling linearly to 0 at far_m."""
    if depth_m is None:
        return None
    depth = abs(depth_m)
    if depth <= near_m:
        return 1.0
    if depth >= far_m:
        return 0.0
    return (far_m - depth) / (far_m - near_m)


def _sort_key(pose: MarkerPose):
    q = canonical_quaternion(pose.orientation.as_array())
    return (pose.marker_id, pose.reprojection_error, tuple(pose.position), tuple(q))


class PoseFuser:
    def __init__(self, config: Optional[FusionConfig] = None):
        self.config = config or FusionConfig()

    def fuse(
        self,
        poses: Sequence[MarkerPose],
        *,
        camera_id: str,
        timestamp: float,
        diagnostics: Iterable[MarkerDiagnostic] = (),
    ) -> LocalizationResult:
        cfg = self.config
        for pose in poses:
            if pose.frame is not ReferenceFrame.WORLD:
                raise ValueError(f"marker {pose.marker_id}: fusion needs world-frame poses")

        notes = list(diagnostics)
        survivors: list[tuple[MarkerPose, float, Optional[float]]] = []
        scale = cfg.effective_error_scale_px
        for pose in sorted(poses, key=_sort_key):
            error = pose.reprojection_error
            rs = range_score(pose.camera_depth, cfg.range_near_m, cfg.range_far_m)
            if not math.isfinite(error) or error > cfg.reprojection_error_threshold_px:
                log.debug("marker=%d rejected error=%.3f", pose.marker_id, error)
                notes.append(
                    MarkerDiagnostic(pose.marker_id, False, "reprojection_error", error,
                                     position=pose.position, range_score=rs)
                )
                continue
            c = pose_confidence(error, scale, cfg.max_single_confidence)
            if cfg.use_range_score and rs is not None:
                c *= rs
                if c <= 0.0:
                    notes.append(
                        MarkerDiagnostic(pose.marker_id, False, "out_of_range", error,
                                         position=pose.position, range_score=rs)
                    )
                    continue
            survivors.append((pose, c, rs))

        if not survivors:
            return LocalizationResult.no_detection(camera_id, timestamp, tuple(notes))

        for pose, c, rs in survivors:
            notes.append(
                MarkerDiagnostic(pose.marker_id, True, "accepted", pose.reprojection_error,
                                 weight=c, position=pose.position, range_score=rs)
            )

        if len(survivors) == 1:
            pose, c, _ = survivors[0]
            return LocalizationResult(
                camera_id=camera_id,
                timestamp=timestamp,
                position=tuple(float(v) for v in pose.position),
                orientation=pose.orientation.canonical(),
                confidence=float(c),
                marker_count=1,
                markers=tuple(notes),
            )

        P = np.array([s[0].position for s in survivors], dtype=np.float64)
        Q = np.array([s[0].orientation.as_array() for s in survivors], dtype=np.float64)
        w = np.array([s[1] for s in survivors], dtype=np.float64)
        wn = w / w.sum()

        position = (wn[:, None] * P).sum(axis=0)
        q = average_quaternions(Q, w)

        sigma_p = math.sqrt(float((wn * ((P - position) ** 2).sum(axis=1)).sum()))
        angles = np.array([quaternion_angle(qi, q) for qi in Q])
        sigma_r = math.sqrt(float((wn * angles ** 2).sum()))

        agreement = math.exp(
            -0.5 * (
                _excess(sigma_p, cfg.position_tolerance_m) ** 2
                + _excess(sigma_r, cfg.rotation_tolerance_rad) ** 2
            )
        )
        confidence = (1.0 - float(np.prod(1.0 - w))) * agreement
        log.debug(
            "fused markers=%d sigma_p=%.4f sigma_r=%.4f confidence=%.3f",
            len(survivors), sigma_p, sigma_r, confidence,
        )
        return LocalizationResult(
            camera_id=camera_id,
            timestamp=timestamp,
            position=(float(position[0]), float(position[1]), float(position[2])),
            orientation=Quaternion.from_array(q),
            confidence=float(min(1.0, max(0.0, confidence))),
            marker_count=len(survivors),
            markers=tuple(notes),
        )
