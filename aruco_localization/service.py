"""Multi-camera host: one PipelineCoordinator per configured camera.

The message-bus client is not part of this package. It calls
``handle_message(topic, message)`` for every frame it receives and gets results
back through the sinks built by ``sink_factory`` (typically a CallbackOutput
that publishes to ``ArUco.<id>.Localization``).
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import cv2

from .config import ServiceConfig
from .errors import ConfigError, FrameDecodeError
from .frame_source import decode_image_message, parse_frame_topic
from .logging_utils import add_file_handler, setup_logger
from .loc_types import ImageMessage
from .output import NullOutput, ResultSink
from .services.calib import CalibrationStore
from .strategies.detect_aruco import make_detector
from .strategies.fuse import PoseFuser
from .strategies.localize_pnp import PoseEstimator
from .strategies.marker_dictionary import MarkerDictionary
from .strategies.to_world import FrameTransformer
from .tracing import Tracer
from .worker import PipelineCoordinator, PipelineStats

log = logging.getLogger(__name__)


class LocalizationService:
    def __init__(
        self,
        config: ServiceConfig,
        store: Optional[CalibrationStore] = None,
        sink_factory: Optional[Callable[[str], list[ResultSink]]] = None,
        tracer: Optional[Tracer] = None,
        dictionary: Optional[MarkerDictionary] = None,
    ):
        self.config = config
        self.store = store or CalibrationStore(
            config.calibration_path, config.marker_size_m, config.marker_sizes_m
        )
        self.sink_factory = sink_factory or (lambda _cid: [NullOutput()])
        self.tracer = tracer or Tracer()
        self.dictionary = dictionary
        self.coordinators: dict[str, PipelineCoordinator] = {}
        self.failed: dict[str, str] = {}

    def start(self) -> list[str]:
        """Start every camera that has a valid calibration; returns their ids."""
        cfg = self.config
        if cfg.cpu_parallelism is not None:
            cv2.setNumThreads(int(cfg.cpu_parallelism))
        if self.dictionary is None:
            try:
                self.dictionary = MarkerDictionary.from_opencv(cfg.marker_dictionary)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
        try:
            make_detector(self.dictionary, cfg.detector)
        except ValueError as exc:
            raise ConfigError(f"detector backend {cfg.detector.backend}: {exc}") from exc

        for cid in cfg.camera_ids:
            if cid in self.coordinators:
                continue
            logger = setup_logger(cid, cfg.log_level)
            if cfg.log_file:
                add_file_handler(logger, cid, cfg.log_file)
            try:
                calibration = self.store.load(cid)
            except ConfigError as exc:
                logger.error("camera not started: %s", exc)
                self.failed[cid] = str(exc)
                continue

            coordinator = PipelineCoordinator(
                camera_id=cid,
                calibration=calibration,
                detector=make_detector(self.dictionary, cfg.detector),
                estimator=PoseEstimator(),
                fuser=PoseFuser(cfg.fusion),
                transformer=FrameTransformer(),
                outputs=self.sink_factory(cid),
                tracer=self.tracer,
                logger=logger,
                target_ids=cfg.target_ids,
            )
            coordinator.start()
            self.coordinators[cid] = coordinator
            logger.info(
                "dictionary=%s marker_size_m=%s threshold_px=%.2f",
                self.dictionary.name, cfg.marker_size_m, cfg.reprojection_error_threshold_px,
            )
        return list(self.coordinators)

    def handle_message(self, topic: str, message: ImageMessage) -> bool:
        """Route a bus frame to its camera; True if the frame was accepted."""
        cid = parse_frame_topic(topic)
        if cid is None:
            log.debug("ignoring topic %s", topic)
            return False
        coordinator = self.coordinators.get(cid)
        if coordinator is None:
            log.debug("no running pipeline for camera %s", cid)
            return False
        try:
            frame = decode_image_message(message)
        except FrameDecodeError as exc:
            coordinator.logger.warning("frame skipped: %s", exc)
            return False
        return coordinator.submit(frame)

    def stop(self, timeout: Optional[float] = 5.0) -> dict[str, PipelineStats]:
        stats = {cid: c.stop(timeout) for cid, c in self.coordinators.items()}
        self.coordinators.clear()
        return stats
