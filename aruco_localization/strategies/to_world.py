from dataclasses import replace

import numpy as np

from ..loc_types import MarkerPose, Quaternion, ReferenceFrame
from ..services.calib import CameraCalibration


class FrameTransformer:
    """Camera-relative marker pose -> world frame, via the static extrinsic."""

    def to_world(self, pose: MarkerPose, calibration: CameraCalibration) -> MarkerPose:
        if pose.frame is not ReferenceFrame.CAMERA:
            raise ValueError(f"marker {pose.marker_id}: expected a camera-frame pose, got {pose.frame.value}")

        T = np.asarray(calibration.camera_to_world, dtype=np.float64)
        position = T[:3, :3] @ np.asarray(pose.position, dtype=np.float64) + T[:3, 3]
        orientation = Quaternion.from_matrix(T[:3, :3]) * pose.orientation
        return replace(
            pose,
            position=(float(position[0]), float(position[1]), float(position[2])),
            orientation=orientation,
            frame=ReferenceFrame.WORLD,
        )
