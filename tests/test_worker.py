import threading
from unittest.mock import MagicMock

import numpy as np
import pytest

from aruco_localization.loc_types import Frame
from aruco_localization.output import CallbackOutput, ResultSink
from aruco_localization.strategies.detect_aruco import MarkerDetector
from aruco_localization.synthetic import facing_camera, make_calibration
from aruco_localization.tracing import RecordingTracer
from aruco_localization.worker import PipelineCoordinator


class _Collect(ResultSink):
    def __init__(self):
        self.results = []
        self.opened = 0
        self.closed = 0

    def open(self):
        self.opened += 1

    def write_result(self, result):
        self.results.append(result)

    def close(self):
        self.closed += 1


class _BlockingDetector:
    """Detector double that holds the first cycle until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        self.entered.set()
        assert self.release.wait(5.0)
        return []


def _frame(generation=1):
    return Frame("0", float(generation), np.full((48, 64), 255, dtype=np.uint8), generation)


def test_single_frame_end_to_end(dictionary, calibration, single_marker_frame):
    sink = _Collect()
    coordinator = PipelineCoordinator("0", calibration, MarkerDetector(dictionary), outputs=[sink])

    result = coordinator.process(single_marker_frame)

    assert result.marker_count == 1
    assert result.confidence > 0.9
    assert result.position == pytest.approx((0.0, 0.0, 1.0), abs=0.02)
    assert sink.results == [result]
    stats = coordinator.stats()
    assert (stats.frames_processed, stats.frames_dropped, stats.errors) == (1, 0, 0)


def test_no_detection_result_is_still_emitted(dictionary, calibration, blank_frame):
    sink = _Collect()
    coordinator = PipelineCoordinator("0", calibration, MarkerDetector(dictionary), outputs=[sink])

    result = coordinator.process(blank_frame)

    assert not result.detected
    assert sink.results == [result]


def test_frame_arriving_while_busy_is_dropped(calibration):
    detector = _BlockingDetector()
    sink = _Collect()
    coordinator = PipelineCoordinator("0", calibration, detector, outputs=[sink])
    coordinator.start()
    try:
        assert coordinator.submit(_frame(1))
        assert detector.entered.wait(5.0)

        assert coordinator.submit(_frame(2)) is False
        assert coordinator.process(_frame(3)) is None
        assert coordinator.stats().frames_dropped == 2
    finally:
        detector.release.set()
        stats = coordinator.stop()

    assert detector.calls == 1
    assert [r.timestamp for r in sink.results] == [1.0]
    assert stats.frames_processed == 1
    assert stats.frames_dropped == 2
    assert (sink.opened, sink.closed) == (1, 1)


def test_token_is_released_after_each_cycle(calibration):
    detector = _BlockingDetector()
    detector.release.set()
    sink = _Collect()
    coordinator = PipelineCoordinator("0", calibration, detector, outputs=[sink])

    for i in range(3):
        assert coordinator.process(_frame(i)) is not None

    assert len(sink.results) == 3
    assert coordinator.stats().frames_dropped == 0


def test_unexpected_failure_yields_no_detection(calibration):
    detector = MagicMock()
    detector.detect.side_effect = RuntimeError("boom")
    sink = _Collect()
    coordinator = PipelineCoordinator("0", calibration, detector, outputs=[sink])

    result = coordinator.process(_frame(4))

    assert result.marker_count == 0
    assert sink.results == [result]
    assert coordinator.stats().errors == 1


def test_failing_sink_does_not_stop_other_sinks(dictionary, calibration, blank_frame):
    broken = MagicMock(spec=ResultSink)
    broken.write_result.side_effect = OSError("disk full")
    sink = _Collect()
    coordinator = PipelineCoordinator("0", calibration, MarkerDetector(dictionary), outputs=[broken, sink])

    coordinator.process(blank_frame)

    assert len(sink.results) == 1
    assert coordinator.stats().errors == 0


def test_target_ids_filter(dictionary, calibration, single_marker_frame):
    coordinator = PipelineCoordinator("0", calibration, MarkerDetector(dictionary), target_ids=[1, 2])
    result = coordinator.process(single_marker_frame)
    assert result.marker_count == 0
    assert [(m.marker_id, m.reason) for m in result.markers] == [(7, "not_targeted")]


def test_marker_without_side_length_is_skipped(dictionary, single_marker_frame):
    calibration = make_calibration(marker_size_m=None, marker_sizes_m={3: 0.1})
    coordinator = PipelineCoordinator("0", calibration, MarkerDetector(dictionary))
    result = coordinator.process(single_marker_frame)
    assert result.marker_count == 0
    assert [(m.marker_id, m.reason) for m in result.markers] == [(7, "no_marker_size")]


def test_spans_cover_each_stage(dictionary, calibration, single_marker_frame):
    tracer = RecordingTracer()
    coordinator = PipelineCoordinator("0", calibration, MarkerDetector(dictionary), tracer=tracer)
    coordinator.process(single_marker_frame)

    (root,) = tracer.named("localization")
    assert root.attributes == {"camera_id": "0", "timestamp": single_marker_frame.timestamp}
    assert root.tags["marker_count"] == 1
    assert root.tags["confidence"] > 0.9
    children = [s.name for s in tracer.spans if s.parent is root]
    assert children == ["detection", "estimation", "transform", "fusion"]


def test_world_position_uses_extrinsic(dictionary, render):
    T = np.eye(4)
    T[:3, 3] = [1.0, 2.0, 0.5]
    calibration = make_calibration(camera_to_world=T)
    coordinator = PipelineCoordinator("0", calibration, MarkerDetector(dictionary))

    result = coordinator.process(render([facing_camera(7, 1.0)]))

    assert result.position == pytest.approx((1.0, 2.0, 1.5), abs=0.02)


def test_callback_output_receives_wire_message(dictionary, calibration, single_marker_frame):
    published = []
    out = CallbackOutput(lambda topic, msg: published.append((topic, msg)))
    coordinator = PipelineCoordinator("0", calibration, MarkerDetector(dictionary), outputs=[out])

    coordinator.process(single_marker_frame)

    (topic, msg), = published
    assert topic == "ArUco.0.Localization"
    assert msg["marker_count"] == 1
    assert set(msg["orientation"]) == {"w", "x", "y", "z"}


def test_result_carries_detections_and_camera_poses(dictionary, calibration, single_marker_frame):
    result = PipelineCoordinator("0", calibration, MarkerDetector(dictionary)).process(single_marker_frame)

    assert result.resolution == (640, 480)
    assert [m.marker_id for m in result.detections] == [7]
    (pose,) = result.camera_poses
    assert pose.frame.value == "camera"
    assert pose.camera_depth == pytest.approx(1.0, abs=0.02)


def test_sink_that_fails_to_open_is_skipped(dictionary, calibration, blank_frame):
    broken = MagicMock(spec=ResultSink)
    broken.open.side_effect = ConnectionRefusedError("broker down")
    sink = _Collect()
    coordinator = PipelineCoordinator("0", calibration, MarkerDetector(dictionary), outputs=[broken, sink])

    coordinator.start()
    assert coordinator.submit(blank_frame)
    coordinator.stop()

    assert sink.opened == 1
    assert len(sink.results) == 1
