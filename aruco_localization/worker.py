from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from .errors import PoseEstimationError
from .loc_types import Frame, LocalizationResult, MarkerDiagnostic
from .logging_utils import setup_logger
from .output import ResultSink
from .services.calib import CameraCalibration
from .strategies.detect_aruco import MarkerDetector
from .strategies.fuse import PoseFuser
from .strategies.localize_pnp import PoseEstimator
from .strategies.preprocess import ColorFrame, PreprocessStrategy
from .strategies.to_world import FrameTransformer
from .tracing import Tracer

_STOP = object()


@dataclass(frozen=True)
class PipelineStats:
    camera_id: str
    frames_processed: int
    frames_dropped: int
    errors: int
    avg_cycle_ms: float


class PipelineCoordinator:
    """
    Runs detection -> pose estimation -> world transform -> fusion for one camera.

    At most one frame is processed at a time. The exclusive token is a
    BoundedSemaphore(1); a frame that arrives while it is held is dropped and
    counted, never queued. Every accepted frame produces exactly one result,
    written to every output.
    """

    def __init__(
        self,
        camera_id: str,
        calibration: CameraCalibration,
        detector: MarkerDetector,
        estimator: Optional[PoseEstimator] = None,
        fuser: Optional[PoseFuser] = None,
        transformer: Optional[FrameTransformer] = None,
        outputs: Optional[list[ResultSink]] = None,
        tracer: Optional[Tracer] = None,
        logger: Optional[logging.Logger] = None,
        target_ids: Optional[Iterable[int]] = None,
        preprocess: Optional[PreprocessStrategy] = None,
    ):
        self.camera_id = str(camera_id)
        self.calibration = calibration
        self.detector = detector
        self.estimator = estimator or PoseEstimator()
        self.fuser = fuser or PoseFuser()
        self.transformer = transformer or FrameTransformer()
        self.outputs = list(outputs or [])
        self.tracer = tracer or Tracer()
        self.logger = logger or setup_logger(self.camera_id)
        self.preprocess = preprocess or ColorFrame()

        if target_ids is None:
            self.target_ids = None
        else:
            self.target_ids = {int(t) for t in target_ids}

        self._token = threading.BoundedSemaphore(1)
        self._slot: queue.Queue = queue.Queue(maxsize=1)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._outputs_open = False

        self._processed = 0
        self._dropped = 0
        self._errors = 0
        self._total_ms = 0.0

    # -- synchronous use ---------------------------------------------------

    def process(self, frame: Frame) -> Optional[LocalizationResult]:
        """Run one cycle on the calling thread; None if a frame is in flight."""
        if not self._token.acquire(blocking=False):
            self._drop(frame)
            return None
        try:
            return self._cycle(frame)
        finally:
            self._token.release()

    # -- worker thread -------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self.open_outputs()
        self._thread = threading.Thread(
            target=self._run, name=f"aruco-{self.camera_id}", daemon=True
        )
        self._thread.start()
        self.logger.info("coordinator started")

    def submit(self, frame: Frame) -> bool:
        """Hand a frame to the worker; False (and counted) if one is in flight."""
        if self._thread is None:
            raise RuntimeError(f"coordinator for camera {self.camera_id} is not started")
        if not self._token.acquire(blocking=False):
            self._drop(frame)
            return False
        self._slot.put_nowait(frame)
        return True

    def stop(self, timeout: Optional[float] = 5.0) -> PipelineStats:
        """Let the in-flight cycle finish, stop the worker and close the outputs."""
        thread = self._thread
        if thread is not None:
            self._slot.put(_STOP, timeout=timeout)
            thread.join(timeout)
            if thread.is_alive():
                self.logger.warning("worker did not stop within %.1fs", timeout or 0.0)
            self._thread = None
        self.close_outputs()
        stats = self.stats()
        self.logger.info(
            "summary frames=%d dropped=%d errors=%d avg_ms=%.2f",
            stats.frames_processed, stats.frames_dropped, stats.errors, stats.avg_cycle_ms,
        )
        return stats

    def _run(self) -> None:
        while True:
            item = self._slot.get()
            if item is _STOP:
                break
            try:
                self._cycle(item)
            finally:
                self._token.release()

    # -- outputs -------------------------------------------------------------

    def open_outputs(self) -> None:
        with self._lock:
            if self._outputs_open:
                return
            for out in self.outputs:
                try:
                    out.open()
                except Exception as exc:
                    self.logger.warning("sink=%s open failed: %s", type(out).__name__, exc)
            self._outputs_open = True

    def close_outputs(self) -> None:
        with self._lock:
            if not self._outputs_open:
                return
            for out in self.outputs:
                try:
                    out.close()
                except Exception as exc:
                    self.logger.warning("sink=%s close failed: %s", type(out).__name__, exc)
            self._outputs_open = False

    def _emit(self, result: LocalizationResult) -> None:
        for out in self.outputs:
            try:
                out.write_result(result)
            except Exception as exc:
                self.logger.warning("sink=%s write failed: %s", type(out).__name__, exc)

    # -- cycle -----------------------------------------------------------------

    def _drop(self, frame: Frame) -> None:
        with self._lock:
            self._dropped += 1
        self.logger.debug("frame=%d dropped (in flight)", frame.generation)

    def _cycle(self, frame: Frame) -> LocalizationResult:
        self.open_outputs()
        t0 = time.perf_counter()
        failed = False
        with self.tracer.span("localization", camera_id=self.camera_id, timestamp=frame.timestamp) as span:
            try:
                result = self._localize(frame)
            except Exception:
                self.logger.exception("frame=%d cycle failed", frame.generation)
                failed = True
                result = LocalizationResult.no_detection(self.camera_id, frame.timestamp)
            span.set_tag("marker_count", result.marker_count)
            span.set_tag("confidence", result.confidence)

        self._emit(result)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        with self._lock:
            self._processed += 1
            self._total_ms += elapsed_ms
            if failed:
                self._errors += 1
        self.logger.debug(
            "frame=%d markers=%d confidence=%.3f ms=%.2f",
            frame.generation, result.marker_count, result.confidence, elapsed_ms,
        )
        return result

    def _localize(self, frame: Frame) -> LocalizationResult:
        frame = self.preprocess.apply(frame)
        calib = self.calibration.for_resolution(frame.width, frame.height)

        with self.tracer.span("detection"):
            markers = self.detector.detect(frame)

        diagnostics: list[MarkerDiagnostic] = []
        camera_poses = []
        with self.tracer.span("estimation"):
            for marker in markers:
                if self.target_ids is not None and marker.marker_id not in self.target_ids:
                    diagnostics.append(MarkerDiagnostic(marker.marker_id, False, "not_targeted"))
                    continue
                if calib.marker_length(marker.marker_id) is None:
                    diagnostics.append(MarkerDiagnostic(marker.marker_id, False, "no_marker_size"))
                    continue
                try:
                    camera_poses.append(self.estimator.estimate(marker, calib))
                except PoseEstimationError as exc:
                    self.logger.debug("marker=%d pose failed: %s", marker.marker_id, exc)
                    diagnostics.append(MarkerDiagnostic(marker.marker_id, False, "pose_failed"))

        with self.tracer.span("transform"):
            world_poses = [self.transformer.to_world(p, calib) for p in camera_poses]

        with self.tracer.span("fusion"):
            result = self.fuser.fuse(
                world_poses,
                camera_id=self.camera_id,
                timestamp=frame.timestamp,
                diagnostics=diagnostics,
            )
        return replace(
            result,
            resolution=(frame.width, frame.height),
            detections=tuple(markers),
            camera_poses=tuple(camera_poses),
        )

    def stats(self) -> PipelineStats:
        with self._lock:
            avg = self._total_ms / self._processed if self._processed else 0.0
            return PipelineStats(self.camera_id, self._processed, self._dropped, self._errors, avg)
