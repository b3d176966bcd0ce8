import json

import pytest
import yaml

from aruco_localization.config import ServiceConfig, load_config, parse_config
from aruco_localization.errors import ConfigError


def test_defaults_are_valid():
    cfg = ServiceConfig().validate()
    assert cfg.marker_dictionary == "4x4_50"
    assert cfg.reprojection_error_threshold_px == 4.0
    assert cfg.fusion.effective_error_scale_px == 4.0
    assert cfg.detector.adaptive_thresh_win_sizes == [3, 13, 23]


def test_camel_case_keys_are_accepted():
    cfg = parse_config(
        {
            "cameraIds": [0, 1],
            "markerDictionary": "DICT_5X5_100",
            "markerSizeMeters": 0.2,
            "reprojectionErrorThresholdPixels": 2.5,
            "cameraCalibrationPath": "/etc/calibs",
        }
    )
    assert cfg.camera_ids == ["0", "1"]
    assert cfg.marker_dictionary == "DICT_5X5_100"
    assert cfg.marker_size_m == 0.2
    assert cfg.fusion.reprojection_error_threshold_px == 2.5
    assert cfg.calibration_path == "/etc/calibs"


def test_nested_sections_and_marker_sizes():
    cfg = parse_config(
        {
            "marker_sizes_m": {"4": 0.25},
            "target_ids": 4,
            "detector": {"backend": "opencv", "corner_refinement": False, "adaptive_thresh_win_sizes": [5, 15]},
            "fusion": {"use_range_score": True, "error_scale_px": 2},
        }
    )
    assert cfg.marker_sizes_m == {4: 0.25}
    assert cfg.target_ids == [4]
    assert cfg.detector.backend == "opencv"
    assert cfg.detector.corner_refinement is False
    assert cfg.detector.adaptive_thresh_win_sizes == [5, 15]
    assert cfg.fusion.use_range_score is True
    assert cfg.fusion.effective_error_scale_px == 2.0


@pytest.mark.parametrize(
    "raw",
    [
        [],
        {"marker_size_m": -1},
        {"marker_size_m": None},
        {"camera_ids": []},
        {"reprojection_error_threshold_px": 0},
        {"detector": {"no_such_option": 1}},
        {"detector": {"adaptive_thresh_win_sizes": [4]}},
        {"detector": {"backend": "apriltag"}},
        {"fusion": {"range_near_m": 5.0, "range_far_m": 3.0}},
        {"fusion": {"max_single_confidence": "high"}},
        {"marker_sizes_m": [0.1]},
    ],
)
def test_invalid_configs_raise(raw):
    with pytest.raises(ConfigError):
        parse_config(raw)


def test_apply_overrides_routes_threshold_into_fusion():
    cfg = ServiceConfig().apply_overrides(reprojection_error_threshold_px=1.5, marker_dictionary=None)
    assert cfg.fusion.reprojection_error_threshold_px == 1.5
    assert cfg.marker_dictionary == "4x4_50"


def test_load_json_and_yaml(tmp_path):
    payload = {"camera_ids": ["front"], "marker_size_m": 0.05}
    json_path = tmp_path / "cfg.json"
    json_path.write_text(json.dumps(payload))
    yaml_path = tmp_path / "cfg.yaml"
    yaml_path.write_text(yaml.safe_dump(payload))

    for path in (json_path, yaml_path):
        cfg = load_config(path)
        assert cfg.camera_ids == ["front"]
        assert cfg.marker_size_m == 0.05


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.json")


def test_as_dict_is_json_serializable():
    assert json.loads(json.dumps(ServiceConfig().as_dict()))["fusion"]["max_single_confidence"] == 0.99
