import argparse
import json
import signal
import sys
import threading
from pathlib import Path

from .config import ServiceConfig, load_config
from .errors import ConfigError
from .frame_source import FrameSource, ImageDirectorySource, SyntheticSource, VideoCaptureSource
from .logging_utils import add_file_handler, setup_logger
from .output import CallbackOutput, CsvOutput, JsonLinesOutput, MqttOutput, ResultSink
from .services.calib import CalibrationStore
from .strategies.detect_aruco import make_detector
from .strategies.fuse import PoseFuser
from .strategies.localize_pnp import PoseEstimator
from .strategies.marker_dictionary import MarkerDictionary
from .strategies.preprocess import ColorFrame, GrayscaleFrame
from .synthetic import facing_camera, make_calibration
from .tracing import LoggingTracer
from .worker import PipelineCoordinator


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Run ArUco localization for one camera")
    ap.add_argument("--config", required=True, help="Path to JSON/YAML config")

    ap.add_argument("--source", help="Camera index, /dev/videoN, video file or image directory")
    ap.add_argument("--camera-id")
    ap.add_argument("--calib")
    ap.add_argument("--dict")
    ap.add_argument("--marker-size-m", type=float)
    ap.add_argument("--threshold-px", type=float)
    ap.add_argument("--detector", choices=["native", "opencv"], help="Marker detection backend")
    ap.add_argument("--target-ids", nargs="+", type=int)
    ap.add_argument("--dry-run", action="store_true", help="Use a synthetic marker instead of a camera")
    ap.add_argument("--max-frames", type=int)
    ap.add_argument("--grayscale", action="store_true")
    ap.add_argument("--csv")
    ap.add_argument("--jsonl")
    ap.add_argument("--print", dest="print_results", action="store_true", help="Print every result as JSON")
    ap.add_argument("--mqtt", help="Publish results to an MQTT broker, HOST[:PORT]")
    ap.add_argument("--annotations", action="store_true", help="Also publish detections and per-marker poses")
    ap.add_argument("--log-file")
    ap.add_argument("--log-level")
    ap.add_argument("--trace", action="store_true", help="Log span timings at DEBUG")

    return ap


def _apply_args(cfg: ServiceConfig, args: argparse.Namespace) -> ServiceConfig:
    cfg.apply_overrides(
        calibration_path=args.calib,
        marker_dictionary=args.dict,
        marker_size_m=args.marker_size_m,
        reprojection_error_threshold_px=args.threshold_px,
        target_ids=args.target_ids,
        log_file=args.log_file,
        log_level=args.log_level.upper() if args.log_level else None,
    )
    if args.camera_id:
        cfg.camera_ids = [args.camera_id]
    if args.detector:
        cfg.detector.backend = args.detector
    return cfg.validate()


def _build_outputs(args: argparse.Namespace) -> list[ResultSink]:
    outputs: list[ResultSink] = []
    if args.csv:
        outputs.append(CsvOutput(args.csv))
    if args.jsonl:
        outputs.append(JsonLinesOutput(args.jsonl))
    if args.print_results:
        outputs.append(
            CallbackOutput(
                lambda topic, msg: print(topic, json.dumps(msg), flush=True),
                annotations=args.annotations,
            )
        )
    if args.mqtt:
        host, _, port = args.mqtt.partition(":")
        outputs.append(MqttOutput(host, int(port) if port else 1883, annotations=args.annotations))
    return outputs


def _build_source(args: argparse.Namespace, camera_id: str) -> FrameSource:
    if not args.source:
        return VideoCaptureSource(camera_id, 0)
    if Path(args.source).is_dir():
        return ImageDirectorySource(camera_id, args.source)
    return VideoCaptureSource(camera_id, args.source)


def _stop_signals():
    sigs = [signal.SIGINT]
    if hasattr(signal, "SIGTERM"):
        sigs.append(signal.SIGTERM)
    return sigs


def main(argv=None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    try:
        cfg = _apply_args(load_config(args.config), args)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    camera_id = cfg.camera_ids[0]
    logger = setup_logger(camera_id, cfg.log_level)
    if cfg.log_file:
        add_file_handler(logger, camera_id, cfg.log_file)

    try:
        dictionary = MarkerDictionary.from_opencv(cfg.marker_dictionary)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    store = CalibrationStore(cfg.calibration_path, cfg.marker_size_m, cfg.marker_sizes_m)
    if args.dry_run:
        calibration = store.add(
            make_calibration(camera_id, marker_size_m=cfg.marker_size_m, marker_sizes_m=cfg.marker_sizes_m)
        )
        marker_id = cfg.target_ids[0] if cfg.target_ids else 0
        side = calibration.marker_length(marker_id) or 0.1
        source: FrameSource = SyntheticSource(
            camera_id,
            dictionary,
            [facing_camera(marker_id, 1.0, side_m=side)],
            calibration.intrinsic,
            *calibration.resolution,
            fps=30,
        )
    else:
        try:
            calibration = store.load(camera_id)
        except ConfigError as exc:
            logger.error("camera not started: %s", exc)
            return 2
        source = _build_source(args, camera_id)

    coordinator = PipelineCoordinator(
        camera_id=camera_id,
        calibration=calibration,
        detector=make_detector(dictionary, cfg.detector),
        estimator=PoseEstimator(),
        fuser=PoseFuser(cfg.fusion),
        outputs=_build_outputs(args),
        tracer=LoggingTracer(logger) if args.trace else None,
        logger=logger,
        target_ids=cfg.target_ids,
        preprocess=GrayscaleFrame() if args.grayscale else ColorFrame(),
    )

    stop_event = threading.Event()

    def _handle_signal(_sig, _frame):
        stop_event.set()

    previous = {sig: signal.signal(sig, _handle_signal) for sig in _stop_signals()}

    source.start()
    coordinator.open_outputs()
    frames = 0
    try:
        while not stop_event.is_set():
            if args.max_frames and frames >= args.max_frames:
                break
            frame = source.read()
            if frame is None:
                break
            coordinator.process(frame)
            frames += 1
    finally:
        source.stop()
        stats = coordinator.stop()
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)

    print(stats)
    return 0


if __name__ == "__main__":
    sys.exit(main())
