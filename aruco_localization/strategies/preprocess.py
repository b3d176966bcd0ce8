from abc import ABC, abstractmethod

import cv2
import numpy as np

from ..loc_types import Frame


def to_luminance(image: np.ndarray) -> np.ndarray:
    """Single-channel uint8 luminance of a gray, BGR or BGRA image."""
    if image.ndim == 2:
        gray = image
    elif image.ndim == 3 and image.shape[2] == 1:
        gray = image[:, :, 0]
    elif image.ndim == 3 and image.shape[2] == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    elif image.ndim == 3 and image.shape[2] == 4:
        gray = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    else:
        raise ValueError(f"unsupported image shape {image.shape}")
    if gray.dtype != np.uint8:
        gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return np.ascontiguousarray(gray)


class PreprocessStrategy(ABC):
    @abstractmethod
    def apply(self, f: Frame) -> Frame: ...


class ColorFrame(PreprocessStrategy):
    def apply(self, f: Frame) -> Frame:
        return f


class GrayscaleFrame(PreprocessStrategy):
    def apply(self, f: Frame) -> Frame:
        return Frame(f.camera_id, f.timestamp, to_luminance(f.image), f.generation)
