import cv2
import numpy as np
import pytest

from aruco_localization.config import DetectorConfig
from aruco_localization.loc_types import Frame
from aruco_localization.strategies.detect_aruco import MarkerDetector, OpenCvMarkerDetector, make_detector
from aruco_localization.strategies.marker_dictionary import MarkerDictionary
from aruco_localization.synthetic import PlacedMarker, facing_camera, project_marker


def test_empty_frame_yields_no_markers(dictionary, blank_frame):
    assert MarkerDetector(dictionary).detect(blank_frame) == []


def test_zero_sized_and_tiny_frames_yield_no_markers(dictionary):
    detector = MarkerDetector(dictionary)
    assert detector.detect(Frame("0", 0.0, np.zeros((0, 0), dtype=np.uint8))) == []
    assert detector.detect(Frame("0", 0.0, np.zeros((4, 4), dtype=np.uint8))) == []


def test_noise_only_frame_yields_no_markers(dictionary):
    rng = np.random.default_rng(3)
    image = rng.integers(0, 256, size=(240, 320), dtype=np.uint8)
    assert MarkerDetector(dictionary).detect(Frame("0", 0.0, image)) == []


def test_detects_single_marker_with_ordered_corners(dictionary, calibration, single_marker_frame):
    markers = MarkerDetector(dictionary).detect(single_marker_frame)

    assert [m.marker_id for m in markers] == [7]
    marker = markers[0]
    assert marker.hamming_distance == 0
    assert marker.confidence == 1.0

    expected = project_marker(facing_camera(7, 1.0), calibration.intrinsic)
    assert np.abs(marker.corners - expected).max() < 1.0


def test_corner_order_follows_pattern_rotation(dictionary, calibration, render):
    # marker rolled 90 degrees about the optical axis: pattern TL is now image TR
    rotated = facing_camera(7, 1.0)
    rvec = cv2.Rodrigues(
        cv2.Rodrigues(np.array([0.0, 0.0, np.pi / 2]))[0] @ cv2.Rodrigues(np.array(rotated.rvec))[0]
    )[0].reshape(3)
    placed = PlacedMarker(7, tuple(rvec), rotated.tvec, rotated.side_m)
    frame = render([placed])

    markers = MarkerDetector(dictionary).detect(frame)

    assert [m.marker_id for m in markers] == [7]
    expected = project_marker(placed, calibration.intrinsic)
    assert np.abs(markers[0].corners - expected).max() < 1.0


def test_detects_several_markers_and_bgr_input(dictionary, render):
    frame = render([facing_camera(3, 1.2, x_m=-0.2), facing_camera(5, 1.2, x_m=0.2)])
    bgr = Frame(frame.camera_id, frame.timestamp, cv2.cvtColor(frame.image, cv2.COLOR_GRAY2BGR))

    ids = sorted(m.marker_id for m in MarkerDetector(dictionary).detect(bgr))

    assert ids == [3, 5]


def test_duplicate_ids_are_both_kept(dictionary, render):
    frame = render([facing_camera(9, 1.2, x_m=-0.2), facing_camera(9, 1.2, x_m=0.2)])
    markers = MarkerDetector(dictionary).detect(frame)
    assert [m.marker_id for m in markers] == [9, 9]


def test_marker_touching_border_is_ignored(dictionary, render):
    # centre 0.5 m off-axis at 1 m puts the marker edge past the right image border
    frame = render([facing_camera(7, 1.0, x_m=0.52)])
    assert MarkerDetector(dictionary).detect(frame) == []


def test_refinement_can_be_disabled(dictionary, single_marker_frame):
    params = DetectorConfig(corner_refinement=False)
    markers = MarkerDetector(dictionary, params).detect(single_marker_frame)
    assert [m.marker_id for m in markers] == [7]


def test_make_detector_picks_backend(dictionary):
    assert type(make_detector(dictionary)) is MarkerDetector
    assert isinstance(make_detector(dictionary, DetectorConfig(backend="opencv")), OpenCvMarkerDetector)


def test_opencv_backend_agrees_with_native(dictionary, render):
    frame = render([facing_camera(3, 1.2, x_m=-0.2), facing_camera(5, 1.0, x_m=0.15, tilt_rad=0.4)])

    native = sorted(MarkerDetector(dictionary).detect(frame), key=lambda m: m.marker_id)
    opencv = sorted(OpenCvMarkerDetector(dictionary).detect(frame), key=lambda m: m.marker_id)

    assert [m.marker_id for m in opencv] == [m.marker_id for m in native] == [3, 5]
    for a, b in zip(native, opencv):
        assert np.abs(a.corners - b.corners).max() < 1.0
        assert b.hamming_distance == 0
        assert b.confidence == 1.0


def test_opencv_backend_needs_predefined_dictionary(dictionary):
    custom = MarkerDictionary.from_bits("custom", dictionary.bits[:4])
    with pytest.raises(ValueError):
        OpenCvMarkerDetector(custom)
