"""ArUco marker localization for multi-camera setups."""

from .config import ServiceConfig, load_config
from .errors import ConfigError, FrameDecodeError, PoseEstimationError
from .loc_types import Frame, LocalizationResult, MarkerPose, Quaternion
from .service import LocalizationService
from .worker import PipelineCoordinator, PipelineStats

__all__ = [
    "ConfigError",
    "Frame",
    "FrameDecodeError",
    "LocalizationResult",
    "LocalizationService",
    "MarkerPose",
    "PipelineCoordinator",
    "PipelineStats",
    "PoseEstimationError",
    "Quaternion",
    "ServiceConfig",
    "load_config",
]
