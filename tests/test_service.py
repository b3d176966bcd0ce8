import json
from unittest.mock import MagicMock

import cv2
import numpy as np
import pytest

from aruco_localization.config import ServiceConfig
from aruco_localization.errors import ConfigError
from aruco_localization.loc_types import ImageMessage
from aruco_localization.output import ResultSink
from aruco_localization.service import LocalizationService
from aruco_localization.synthetic import pinhole_intrinsics


class _Collect(ResultSink):
    def __init__(self):
        self.results = []

    def open(self):
        pass

    def write_result(self, result):
        self.results.append(result)

    def close(self):
        pass


def _write_calibration(directory, camera_id):
    payload = {
        "id": camera_id,
        "resolution": {"width": 640, "height": 480},
        "intrinsic": pinhole_intrinsics().tolist(),
        "distortion": [0.0, 0.0, 0.0, 0.0, 0.0],
        "extrinsic": {"tf": np.eye(4).tolist()},
    }
    (directory / f"{camera_id}.json").write_text(json.dumps(payload))


@pytest.fixture
def service_setup(tmp_path):
    _write_calibration(tmp_path, "0")
    cfg = ServiceConfig(camera_ids=["0", "1"], calibration_path=str(tmp_path))
    sinks = {}

    def factory(cid):
        sinks[cid] = _Collect()
        return [sinks[cid]]

    service = LocalizationService(cfg, sink_factory=factory)
    yield service, sinks
    service.stop()


def test_camera_without_calibration_does_not_block_others(service_setup):
    service, sinks = service_setup
    started = service.start()

    assert started == ["0"]
    assert "1" in service.failed
    assert list(sinks) == ["0"]


def test_frame_message_is_localized_and_published(service_setup, single_marker_frame):
    service, sinks = service_setup
    service.start()
    ok, buf = cv2.imencode(".png", single_marker_frame.image)
    assert ok
    msg = ImageMessage("0", 2.5, buf.tobytes(), 640, 480, "png", 1)

    assert service.handle_message("CameraGateway.0.Frame", msg)
    stats = service.stop()

    (result,) = sinks["0"].results
    assert result.timestamp == 2.5
    assert result.marker_count == 1
    assert result.confidence > 0.9
    assert stats["0"].frames_processed == 1


def test_unroutable_and_undecodable_messages_are_skipped(service_setup):
    service, sinks = service_setup
    service.start()
    bad = ImageMessage("0", 1.0, b"garbage", pixel_format="jpeg")

    assert not service.handle_message("CameraGateway.0.Status", bad)
    assert not service.handle_message("CameraGateway.1.Frame", bad)
    assert not service.handle_message("CameraGateway.0.Frame", bad)
    service.stop()

    assert sinks["0"].results == []


def test_unknown_dictionary_is_a_config_error(tmp_path):
    cfg = ServiceConfig(calibration_path=str(tmp_path), marker_dictionary="9x9_1")
    with pytest.raises(ConfigError):
        LocalizationService(cfg).start()


def test_sink_open_failure_does_not_stop_other_cameras(tmp_path):
    _write_calibration(tmp_path, "0")
    _write_calibration(tmp_path, "1")
    cfg = ServiceConfig(camera_ids=["0", "1"], calibration_path=str(tmp_path))
    sinks = {}

    def factory(cid):
        sinks[cid] = _Collect()
        if cid == "0":
            sinks[cid].open = MagicMock(side_effect=OSError("broker unreachable"))
        return [sinks[cid]]

    service = LocalizationService(cfg, sink_factory=factory)
    try:
        assert service.start() == ["0", "1"]
    finally:
        service.stop()
