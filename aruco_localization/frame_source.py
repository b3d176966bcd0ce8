"""Frame sources and bus-message decoding.

Provides a unified interface for the inputs the localization pipeline reads:
- Device cameras and video files (cv2.VideoCapture)
- Directories of still images
- Synthetic frames with known markers (dry runs)

and the helpers that turn middleware image messages into Frames.
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Sequence

import cv2
import numpy as np

from .errors import FrameDecodeError
from .loc_types import Frame, ImageMessage
from .strategies.marker_dictionary import MarkerDictionary
from .synthetic import PlacedMarker, render_marker_scene

FRAME_TOPIC = re.compile(r"^CameraGateway\.(?P<camera_id>[^.]+)\.Frame$")
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff"}


def parse_frame_topic(topic: str) -> Optional[str]:
    """Camera id of a ``CameraGateway.<id>.Frame`` topic, None for anything else."""
    match = FRAME_TOPIC.match(topic or "")
    return match.group("camera_id") if match else None


def frame_topic(camera_id: str) -> str:
    return f"CameraGateway.{camera_id}.Frame"


def result_topic(camera_id: str) -> str:
    return f"ArUco.{camera_id}.Localization"


def detection_topic(camera_id: str) -> str:
    return f"ArUco.{camera_id}.Detection"


def pose_topic(camera_id: str) -> str:
    return f"ArUco.{camera_id}.Pose"


def decode_image_message(msg: ImageMessage) -> Frame:
    """Turn an ImageMessage into a Frame; FrameDecodeError if the payload is unusable."""
    fmt = (msg.pixel_format or "").lower()
    data = msg.data
    if not data:
        raise FrameDecodeError(f"camera {msg.camera_id}: empty image payload")

    buf = np.frombuffer(data, dtype=np.uint8)
    if fmt in {"jpeg", "jpg", "png", "encoded"}:
        image = cv2.imdecode(buf, cv2.IMREAD_GRAYSCALE)
        if image is None:
            raise FrameDecodeError(f"camera {msg.camera_id}: cannot decode {fmt} payload")
    elif fmt in {"gray8", "mono8", "bgr8", "rgb8"}:
        channels = 1 if fmt in {"gray8", "mono8"} else 3
        expected = msg.width * msg.height * channels
        if msg.width <= 0 or msg.height <= 0 or buf.size != expected:
            raise FrameDecodeError(
                f"camera {msg.camera_id}: {fmt} payload of {buf.size} bytes does not match "
                f"{msg.width}x{msg.height}"
            )
        if channels == 1:
            image = buf.reshape(msg.height, msg.width)
        else:
            image = buf.reshape(msg.height, msg.width, 3)
            if fmt == "rgb8":
                image = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    else:
        raise FrameDecodeError(f"camera {msg.camera_id}: unsupported pixel format {msg.pixel_format!r}")

    return Frame(str(msg.camera_id), float(msg.timestamp), image, int(msg.generation))


class FrameSource(ABC):
    """Abstract base class for frame sources."""

    @abstractmethod
    def start(self) -> None:
        """Start the frame source. Called before any read() calls."""
        ...

    @abstractmethod
    def read(self) -> Optional[Frame]:
        """Next frame, or None when the source is exhausted or has no frame."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop the frame source and release resources."""
        ...


class VideoCaptureSource(FrameSource):
    """Camera device (index or /dev/videoN) or video file via cv2.VideoCapture."""

    def __init__(self, camera_id: str, device: int | str, width: int = 0, height: int = 0, fps: int = 0):
        self.camera_id = camera_id
        self.device = device
        self.width = width
        self.height = height
        self.fps = fps
        self.cap: Any = None
        self.frame_id = 0

    def start(self) -> None:
        dev = self.device
        if isinstance(dev, str):
            match = re.match(r"^/dev/video(\d+)$", dev)
            if match:
                dev = int(match.group(1))
            elif dev.isdigit():
                dev = int(dev)
        self.cap = cv2.VideoCapture(dev)
        if self.width:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        if self.height:
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        if self.fps:
            self.cap.set(cv2.CAP_PROP_FPS, self.fps)
        if not self.cap.isOpened():
            raise RuntimeError(f"Failed to open video source: {self.device}")
        self.frame_id = 0

    def read(self) -> Optional[Frame]:
        if self.cap is None:
            return None
        ok, img = self.cap.read()
        if not ok:
            return None
        self.frame_id += 1
        return Frame(self.camera_id, time.monotonic(), img, self.frame_id)

    def stop(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class ImageDirectorySource(FrameSource):
    """Still images of a directory in name order, one frame each."""

    def __init__(self, camera_id: str, directory: str | Path):
        self.camera_id = camera_id
        self.directory = Path(directory)
        self._paths: list[Path] = []
        self._idx = 0

    def start(self) -> None:
        if not self.directory.is_dir():
            raise RuntimeError(f"Not a directory: {self.directory}")
        self._paths = sorted(p for p in self.directory.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
        self._idx = 0

    def read(self) -> Optional[Frame]:
        while self._idx < len(self._paths):
            path = self._paths[self._idx]
            self._idx += 1
            img = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
            if img is not None:
                return Frame(self.camera_id, time.monotonic(), img, self._idx)
        return None

    def stop(self) -> None:
        self._paths = []


class SyntheticSource(FrameSource):
    """Renders the same known scene for every frame, paced at fps."""

    def __init__(
        self,
        camera_id: str,
        dictionary: MarkerDictionary,
        markers: Sequence[PlacedMarker],
        intrinsic: np.ndarray,
        width: int = 640,
        height: int = 480,
        fps: int = 0,
        noise_sigma: float = 0.0,
    ):
        self.camera_id = camera_id
        self.dictionary = dictionary
        self.markers = list(markers)
        self.intrinsic = intrinsic
        self.width = width
        self.height = height
        self.fps = fps
        self.noise_sigma = noise_sigma
        self.idx = 0
        self._last = 0.0
        self._rng = np.random.default_rng(0)

    def start(self) -> None:
        self._last = time.monotonic()
        self.idx = 0

    def read(self) -> Optional[Frame]:
        if self.fps > 0:
            wait = max(0.0, (1.0 / self.fps) - (time.monotonic() - self._last))
            if wait > 0:
                time.sleep(wait)
        self._last = time.monotonic()
        self.idx += 1
        img = render_marker_scene(
            self.dictionary,
            self.markers,
            self.intrinsic,
            self.width,
            self.height,
            noise_sigma=self.noise_sigma,
            rng=self._rng,
        )
        return Frame(self.camera_id, self._last, img, self.idx)

    def stop(self) -> None:
        return None
