import logging
import os
from typing import Union

# messages themselves are key=value (frame=... markers=...); the prefix follows suit
LOG_FORMAT = "%(asctime)s %(levelname)s cam=%(camera)s %(message)s"


class CameraContextFilter(logging.Filter):
    """Stamps every record with the camera id the pipeline runs for."""

    def __init__(self, camera_id: str):
        super().__init__()
        self.camera_id = str(camera_id)

    def filter(self, record: logging.LogRecord) -> bool:
        record.camera = self.camera_id
        return True


def _level(level: Union[int, str]) -> Union[int, str]:
    return level.upper() if isinstance(level, str) else level


def _attach(logger: logging.Logger, handler: logging.Handler, camera_id: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CameraContextFilter(camera_id))
    logger.addHandler(handler)
    return handler


def setup_logger(camera_id: str, level: Union[int, str] = logging.INFO) -> logging.Logger:
    """``aruco_localization.<camera_id>`` with one stream handler; safe to call again."""
    logger = logging.getLogger(f"aruco_localization.{camera_id}")
    logger.setLevel(_level(level))

    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        _attach(logger, logging.StreamHandler(), camera_id)

    return logger


def add_file_handler(logger: logging.Logger, camera_id: str, log_path: str) -> logging.Handler:
    """Also log to ``log_path``; a path that is already attached is not added twice."""
    path = os.path.abspath(log_path)
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == path:
            return handler
    return _attach(logger, logging.FileHandler(path), camera_id)
