from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import Any, Optional

import cv2
import numpy as np

from .transforms import (
    canonical_quaternion,
    euler_from_matrix,
    matrix_to_quaternion,
    quaternion_angle,
    quaternion_multiply,
    quaternion_to_matrix,
)


@dataclass(frozen=True)
class Frame:
    camera_id: str
    timestamp: float  # monotonic seconds
    image: Any  # numpy array, HxW (gray) or HxWxC
    generation: int = 0

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def pixel_format(self) -> str:
        if self.image.ndim == 2:
            return "gray8"
        channels = self.image.shape[2]
        return {1: "gray8", 3: "bgr8", 4: "bgra8"}.get(channels, f"{channels}ch")


@dataclass(frozen=True)
class ImageMessage:
    """Frame payload as delivered by the subscription collaborator."""

    camera_id: str
    timestamp: float
    data: bytes
    width: int = 0
    height: int = 0
    pixel_format: str = "jpeg"
    generation: int = 0


@dataclass(frozen=True)
class DetectedMarker:
    marker_id: int
    corners: Any  # (4,2) float64: TL, TR, BR, BL of the marker pattern
    confidence: float = 1.0
    hamming_distance: int = 0


@dataclass(frozen=True)
class Quaternion:
    """Unit quaternion (w, x, y, z); normalized on construction."""

    w: float = 1.0
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __post_init__(self) -> None:
        values = np.array([self.w, self.x, self.y, self.z], dtype=np.float64)
        norm = float(np.linalg.norm(values))
        if not math.isfinite(norm) or norm < 1e-12:
            raise ValueError("quaternion must have a finite, non-zero norm")
        values /= norm
        for name, value in zip(("w", "x", "y", "z"), values):
            object.__setattr__(self, name, float(value))

    @classmethod
    def from_array(cls, q) -> "Quaternion":
        w, x, y, z = np.asarray(q, dtype=np.float64).reshape(4)
        return cls(w, x, y, z)

    @classmethod
    def from_matrix(cls, R) -> "Quaternion":
        return cls.from_array(matrix_to_quaternion(R))

    @classmethod
    def from_rvec(cls, rvec) -> "Quaternion":
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3))
        return cls.from_matrix(R)

    def as_array(self) -> np.ndarray:
        return np.array([self.w, self.x, self.y, self.z], dtype=np.float64)

    def to_matrix(self) -> np.ndarray:
        return quaternion_to_matrix(self.as_array())

    def canonical(self) -> "Quaternion":
        return Quaternion.from_array(canonical_quaternion(self.as_array()))

    def __mul__(self, other: "Quaternion") -> "Quaternion":
        return Quaternion.from_array(quaternion_multiply(self.as_array(), other.as_array()))

    def angle_to(self, other: "Quaternion") -> float:
        return quaternion_angle(self.as_array(), other.as_array())

    def euler(self) -> tuple[float, float, float]:
        return euler_from_matrix(self.to_matrix())


# frame id of marker n in published transforms is 100 + n
MARKER_FRAME_OFFSET = 100


class ReferenceFrame(str, enum.Enum):
    CAMERA = "camera"
    WORLD = "world"


@dataclass(frozen=True)
class MarkerPose:
    marker_id: int
    position: tuple[float, float, float]
    orientation: Quaternion
    reprojection_error: float
    frame: ReferenceFrame = ReferenceFrame.CAMERA
    detection_confidence: float = 1.0
    alternate_error: Optional[float] = None  # error of the rejected ambiguous solution
    camera_depth: Optional[float] = None  # z in the camera frame, kept across transforms
    corners: Any = None

    def as_matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.orientation.to_matrix()
        T[:3, 3] = self.position
        return T


@dataclass(frozen=True)
class MarkerDiagnostic:
    marker_id: int
    accepted: bool
    reason: str
    reprojection_error: Optional[float] = None
    weight: float = 0.0
    position: Optional[tuple[float, float, float]] = None
    range_score: Optional[float] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "marker_id": self.marker_id,
            "accepted": self.accepted,
            "reason": self.reason,
            "reprojection_error": self.reprojection_error,
            "weight": self.weight,
            "position": list(self.position) if self.position is not None else None,
            "range_score": self.range_score,
        }


@dataclass(frozen=True)
class LocalizationResult:
    camera_id: str
    timestamp: float
    position: Optional[tuple[float, float, float]]
    orientation: Optional[Quaternion]
    confidence: float
    marker_count: int
    markers: tuple[MarkerDiagnostic, ...] = field(default_factory=tuple)
    resolution: Optional[tuple[int, int]] = field(default=None, compare=False)  # (width, height)
    detections: tuple[DetectedMarker, ...] = field(default_factory=tuple, compare=False)
    camera_poses: tuple[MarkerPose, ...] = field(default_factory=tuple, compare=False)

    @property
    def detected(self) -> bool:
        return self.marker_count > 0

    @classmethod
    def no_detection(
        cls,
        camera_id: str,
        timestamp: float,
        markers: tuple[MarkerDiagnostic, ...] = (),
    ) -> "LocalizationResult":
        return cls(camera_id, timestamp, None, None, 0.0, 0, tuple(markers))

    def to_message(self) -> dict[str, Any]:
        """Canonical wire form: quaternion orientation plus roll/pitch/yaw."""
        orientation = None
        euler = None
        if self.orientation is not None:
            q = self.orientation
            orientation = {"w": q.w, "x": q.x, "y": q.y, "z": q.z}
            roll, pitch, yaw = q.euler()
            euler = {"roll": roll, "pitch": pitch, "yaw": yaw}
        return {
            "camera_id": self.camera_id,
            "timestamp": self.timestamp,
            "position": list(self.position) if self.position is not None else None,
            "orientation": orientation,
            "euler": euler,
            "confidence": self.confidence,
            "marker_count": self.marker_count,
            "markers": [m.as_dict() for m in self.markers],
        }

    def detection_message(self) -> dict[str, Any]:
        """Image annotations of every decoded marker: id, 4 vertices, image resolution."""
        width, height = self.resolution or (0, 0)
        return {
            "camera_id": self.camera_id,
            "timestamp": self.timestamp,
            "resolution": {"width": width, "height": height},
            "annotations": [
                {
                    "id": m.marker_id,
                    "label": str(m.marker_id),
                    "vertices": [{"x": float(x), "y": float(y)} for x, y in np.asarray(m.corners).reshape(4, 2)],
                }
                for m in self.detections
            ],
        }

    def pose_messages(self) -> list[dict[str, Any]]:
        """Camera-relative marker transforms, ``from`` marker frame ``to`` camera frame."""
        to = int(self.camera_id) if self.camera_id.isdigit() else self.camera_id
        return [
            {
                "from": MARKER_FRAME_OFFSET + p.marker_id,
                "to": to,
                "timestamp": self.timestamp,
                "tf": p.as_matrix().tolist(),
                "reprojection_error": p.reprojection_error,
            }
            for p in self.camera_poses
        ]
