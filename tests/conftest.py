import numpy as np
import pytest

from aruco_localization.loc_types import Frame
from aruco_localization.strategies.marker_dictionary import MarkerDictionary
from aruco_localization.synthetic import facing_camera, make_calibration, render_marker_scene


@pytest.fixture(scope="session")
def dictionary():
    return MarkerDictionary.from_opencv("4x4_50")


@pytest.fixture
def calibration():
    return make_calibration("0")


@pytest.fixture
def render(dictionary, calibration):
    """Render placed markers into a Frame seen by the fixture calibration."""

    def _render(markers, timestamp=1.0, generation=1, **kwargs):
        image = render_marker_scene(dictionary, markers, calibration.intrinsic, 640, 480, **kwargs)
        return Frame("0", timestamp, image, generation)

    return _render


@pytest.fixture
def single_marker_frame(render):
    return render([facing_camera(7, 1.0)])


@pytest.fixture
def blank_frame():
    return Frame("0", 1.0, np.full((480, 640), 255, dtype=np.uint8), 1)
