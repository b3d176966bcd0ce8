import cv2
import numpy as np
import pytest

from aruco_localization.errors import FrameDecodeError
from aruco_localization.frame_source import (
    ImageDirectorySource,
    SyntheticSource,
    decode_image_message,
    frame_topic,
    parse_frame_topic,
    result_topic,
)
from aruco_localization.loc_types import ImageMessage
from aruco_localization.synthetic import facing_camera


def test_topics():
    assert parse_frame_topic("CameraGateway.3.Frame") == "3"
    assert parse_frame_topic(frame_topic("left")) == "left"
    assert parse_frame_topic("CameraGateway.3.Status") is None
    assert parse_frame_topic("") is None
    assert result_topic("3") == "ArUco.3.Localization"


def test_decode_png_payload_as_grayscale():
    image = np.zeros((20, 30, 3), dtype=np.uint8)
    image[:, :15] = (255, 255, 255)
    ok, buf = cv2.imencode(".png", image)
    assert ok

    frame = decode_image_message(ImageMessage("1", 4.0, buf.tobytes(), pixel_format="png", generation=9))

    assert frame.image.shape == (20, 30)
    assert frame.pixel_format == "gray8"
    assert (frame.camera_id, frame.timestamp, frame.generation) == ("1", 4.0, 9)


def test_decode_raw_rgb_is_converted_to_bgr():
    rgb = np.zeros((2, 3, 3), dtype=np.uint8)
    rgb[..., 0] = 200
    frame = decode_image_message(ImageMessage("1", 0.0, rgb.tobytes(), 3, 2, "rgb8"))
    assert frame.image.shape == (2, 3, 3)
    assert np.all(frame.image[..., 2] == 200)
    assert frame.width == 3 and frame.height == 2


@pytest.mark.parametrize(
    "msg",
    [
        ImageMessage("1", 0.0, b"", pixel_format="jpeg"),
        ImageMessage("1", 0.0, b"not an image", pixel_format="jpeg"),
        ImageMessage("1", 0.0, b"\x00" * 5, 2, 2, "gray8"),
        ImageMessage("1", 0.0, b"\x00" * 4, 2, 2, "yuv422"),
    ],
)
def test_undecodable_payloads_raise(msg):
    with pytest.raises(FrameDecodeError):
        decode_image_message(msg)


def test_image_directory_source_reads_in_name_order(tmp_path):
    for name, value in (("b.png", 20), ("a.png", 10)):
        cv2.imwrite(str(tmp_path / name), np.full((4, 4), value, dtype=np.uint8))
    (tmp_path / "notes.txt").write_text("skip me")

    src = ImageDirectorySource("0", tmp_path)
    src.start()
    values = []
    frame = src.read()
    while frame is not None:
        values.append(int(frame.image[0, 0]))
        frame = src.read()
    src.stop()

    assert values == [10, 20]


def test_synthetic_source_renders_known_marker(dictionary, calibration):
    src = SyntheticSource("0", dictionary, [facing_camera(7, 1.0)], calibration.intrinsic)
    src.start()
    first, second = src.read(), src.read()
    src.stop()

    assert first.image.shape == (480, 640)
    assert (first.generation, second.generation) == (1, 2)
    assert second.timestamp >= first.timestamp
    assert first.image.min() == 0 and first.image.max() == 255
