"""Exceptions raised by the localization pipeline.

Only ConfigError is fatal, and only while a camera is being started. The other
expected outcomes (undecodable candidates, rejected poses, empty frames,
dropped frames) are ordinary values, not exceptions.
"""


class LocalizationError(Exception):
    """Base class for errors raised by aruco_localization."""


class ConfigError(LocalizationError, ValueError):
    """Missing or invalid configuration/calibration for a camera."""


class PoseEstimationError(LocalizationError):
    """The PnP solver produced no usable solution for one marker."""


class FrameDecodeError(LocalizationError):
    """An incoming image payload could not be turned into a frame."""
