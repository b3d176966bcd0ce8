import csv
import json
import math
from dataclasses import replace
from unittest.mock import MagicMock, patch

import numpy as np

from aruco_localization.loc_types import (
    DetectedMarker,
    LocalizationResult,
    MarkerDiagnostic,
    MarkerPose,
    Quaternion,
)
from aruco_localization.output import (
    CallbackOutput,
    CsvOutput,
    JsonLinesOutput,
    MqttOutput,
    NullOutput,
    annotation_messages,
)
from aruco_localization.services.csv_writer import CsvWriter


def _detected():
    return LocalizationResult(
        camera_id="2",
        timestamp=3.25,
        position=(1.0, 2.0, 3.0),
        orientation=Quaternion(1.0, 0.0, 0.0, 0.0),
        confidence=0.93,
        marker_count=2,
        markers=(
            MarkerDiagnostic(4, True, "accepted", 0.5, 0.9, (1.0, 2.0, 3.0)),
            MarkerDiagnostic(6, True, "accepted", 0.7, 0.8, (1.0, 2.0, 3.0)),
            MarkerDiagnostic(8, False, "reprojection_error", 9.0),
        ),
    )


def test_to_message_wire_form():
    msg = _detected().to_message()
    assert msg["position"] == [1.0, 2.0, 3.0]
    assert msg["orientation"] == {"w": 1.0, "x": 0.0, "y": 0.0, "z": 0.0}
    assert msg["euler"] == {"roll": 0.0, "pitch": 0.0, "yaw": 0.0}
    assert msg["marker_count"] == 2
    assert [m["reason"] for m in msg["markers"]] == ["accepted", "accepted", "reprojection_error"]

    empty = LocalizationResult.no_detection("2", 1.0).to_message()
    assert empty["position"] is None and empty["orientation"] is None
    assert empty["confidence"] == 0.0


def test_csv_output_writes_header_and_rows(tmp_path):
    path = tmp_path / "out" / "results.csv"
    out = CsvOutput(path)
    out.open()
    out.write_result(_detected())
    out.write_result(LocalizationResult.no_detection("2", 4.0))
    out.close()

    rows = list(csv.reader(path.open()))
    assert rows[0] == CsvWriter.HEADER
    assert rows[1][:5] == ["3.250000", "2", "1", "2", "0.930000"]
    assert rows[1][-1] == "4;6"
    assert rows[2][2] == "0"
    assert math.isnan(float(rows[2][5]))


def test_csv_line_matches_row():
    line = CsvWriter.to_csv_line(_detected())
    assert line.startswith("3.250000,2,1,2,0.930000,1.0,2.0,3.0")


def test_jsonl_output(tmp_path):
    path = tmp_path / "results.jsonl"
    out = JsonLinesOutput(path)
    out.open()
    out.write_result(_detected())
    out.write_result(LocalizationResult.no_detection("2", 4.0))
    out.close()

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["marker_count"] for line in lines] == [2, 0]


def test_callback_output_custom_topic_and_raw():
    seen = []
    out = CallbackOutput(lambda topic, msg: seen.append((topic, msg)), topic=lambda cid: f"loc/{cid}", raw=True)
    result = _detected()
    out.write_result(result)
    assert seen == [("loc/2", result)]


def test_null_output_accepts_anything():
    out = NullOutput()
    out.open()
    out.write_result(_detected())
    out.close()


def test_mqtt_output_publishes_json():
    client = MagicMock()
    with patch("aruco_localization.output.mqtt.Client", return_value=client):
        out = MqttOutput("broker.local", 1884)
        out.open()
        out.write_result(_detected())
        out.close()

    client.connect.assert_called_once_with("broker.local", 1884, 60)
    topic, payload = client.publish.call_args[0]
    assert topic == "ArUco.2.Localization"
    assert json.loads(payload)["marker_count"] == 2
    client.disconnect.assert_called_once()


def _annotated():
    corners = np.array([[10.0, 20.0], [30.0, 20.0], [30.0, 40.0], [10.0, 40.0]])
    camera_pose = MarkerPose(4, (0.1, -0.2, 1.5), Quaternion(0.0, 1.0, 0.0, 0.0), 0.5, corners=corners)
    return replace(
        _detected(),
        resolution=(640, 480),
        detections=(DetectedMarker(4, corners), DetectedMarker(9, corners + 100.0)),
        camera_poses=(camera_pose,),
    )


def test_detection_message_lists_vertices_and_resolution():
    msg = _annotated().detection_message()
    assert msg["resolution"] == {"width": 640, "height": 480}
    assert [a["id"] for a in msg["annotations"]] == [4, 9]
    assert msg["annotations"][0]["vertices"][2] == {"x": 30.0, "y": 40.0}


def test_pose_messages_are_marker_to_camera_transforms():
    (msg,) = _annotated().pose_messages()
    assert msg["from"] == 104
    assert msg["to"] == 2
    tf = np.array(msg["tf"])
    assert tf.shape == (4, 4)
    assert np.allclose(tf[:3, 3], (0.1, -0.2, 1.5))
    assert np.allclose(tf[:3, :3], np.diag([1.0, -1.0, -1.0]))
    assert np.allclose(tf[3], (0.0, 0.0, 0.0, 1.0))


def test_annotation_topics():
    topics = [topic for topic, _ in annotation_messages(_annotated())]
    assert topics == ["ArUco.2.Detection", "ArUco.2.Pose"]


def test_callback_output_publishes_annotations_when_asked():
    seen = []
    CallbackOutput(lambda topic, msg: seen.append(topic), annotations=True).write_result(_annotated())
    assert seen == ["ArUco.2.Localization", "ArUco.2.Detection", "ArUco.2.Pose"]

    seen.clear()
    CallbackOutput(lambda topic, msg: seen.append(topic)).write_result(_annotated())
    assert seen == ["ArUco.2.Localization"]


def test_mqtt_output_publishes_annotations():
    client = MagicMock()
    with patch("aruco_localization.output.mqtt.Client", return_value=client):
        out = MqttOutput("broker.local", annotations=True)
        out.open()
        out.write_result(_annotated())
        out.close()

    topics = [c.args[0] for c in client.publish.call_args_list]
    assert topics == ["ArUco.2.Localization", "ArUco.2.Detection", "ArUco.2.Pose"]
    pose = json.loads(client.publish.call_args_list[-1].args[1])
    assert pose["from"] == 104
