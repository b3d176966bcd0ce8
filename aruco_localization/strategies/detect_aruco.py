"""Square fiducial detection: candidate quads, bit decoding, corner refinement."""

from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from ..config import DetectorConfig
from ..loc_types import DetectedMarker, Frame
from .marker_dictionary import MarkerDictionary, get_dict
from .preprocess import to_luminance

log = logging.getLogger(__name__)


def _order_clockwise(quad: np.ndarray) -> np.ndarray:
    """Order 4 corners clockwise in image coordinates (y pointing down)."""
    v1 = quad[1] - quad[0]
    v2 = quad[2] - quad[0]
    if v1[0] * v2[1] - v1[1] * v2[0] < 0.0:
        quad = quad[[0, 3, 2, 1]]
    return quad


def _perimeter(quad: np.ndarray) -> float:
    return float(np.linalg.norm(quad - np.roll(quad, -1, axis=0), axis=1).sum())


class MarkerDetector:
    """
    Finds dictionary markers in a frame.

    The detector holds no per-frame state: the dictionary is immutable and the
    parameters are only read, so one instance may serve a camera for its
    whole lifetime.
    """

    def __init__(self, dictionary: MarkerDictionary, params: Optional[DetectorConfig] = None):
        self.dictionary = dictionary
        self.params = params or DetectorConfig()
        self._max_distance = int(dictionary.max_correction_bits * self.params.error_correction_rate)

    def detect(self, frame: Frame) -> list[DetectedMarker]:
        image = frame.image
        if image is None or getattr(image, "size", 0) == 0:
            return []
        gray = to_luminance(np.asarray(image))
        if min(gray.shape[:2]) < self.dictionary.marker_size + 2:
            return []

        candidates = self.find_candidates(gray)
        markers: list[DetectedMarker] = []
        accepted: list[np.ndarray] = []
        for quad in candidates:
            center = quad.mean(axis=0)
            if any(
                cv2.pointPolygonTest(prev.astype(np.float32), (float(center[0]), float(center[1])), False) >= 0
                for prev in accepted
            ):
                continue
            decoded = self.decode(gray, quad)
            if decoded is None:
                continue
            marker_id, corners, distance = decoded
            if self.params.corner_refinement:
                corners = self.refine_corners(gray, corners)
            accepted.append(corners)
            markers.append(
                DetectedMarker(
                    marker_id=marker_id,
                    corners=corners,
                    confidence=1.0 - distance / float(self._max_distance + 1),
                    hamming_distance=distance,
                )
            )
        log.debug("candidates=%d markers=%d", len(candidates), len(markers))
        return markers

    def find_candidates(self, gray: np.ndarray) -> list[np.ndarray]:
        """Convex quads from every threshold window, largest perimeter first."""
        p = self.params
        h, w = gray.shape[:2]
        side = max(h, w)
        min_perimeter = p.min_perimeter_rate * side
        max_perimeter = p.max_perimeter_rate * side

        quads: list[tuple[float, np.ndarray]] = []
        for win in p.adaptive_thresh_win_sizes:
            if win > min(h, w):
                continue
            thresh = cv2.adaptiveThreshold(
                gray,
                255,
                cv2.ADAPTIVE_THRESH_MEAN_C,
                cv2.THRESH_BINARY_INV,
                int(win),
                float(p.adaptive_thresh_constant),
            )
            contours = cv2.findContours(thresh, cv2.RETR_LIST, cv2.CHAIN_APPROX_NONE)[-2]
            for contour in contours:
                n = len(contour)
                if n < min_perimeter or n > max_perimeter:
                    continue
                approx = cv2.approxPolyDP(contour, n * p.polygonal_approx_accuracy_rate, True)
                if len(approx) != 4 or not cv2.isContourConvex(approx):
                    continue
                quad = approx.reshape(4, 2).astype(np.float64)
                if not self._acceptable_shape(quad, w, h):
                    continue
                quads.append((_perimeter(quad), _order_clockwise(quad)))

        quads.sort(key=lambda item: -item[0])
        return self._drop_duplicates(quads)

    def _acceptable_shape(self, quad: np.ndarray, w: int, h: int) -> bool:
        p = self.params
        sides = np.linalg.norm(quad - np.roll(quad, -1, axis=0), axis=1)
        perimeter = float(sides.sum())
        if sides.min() < p.min_corner_distance_rate * perimeter:
            return False
        if sides.max() <= 0 or sides.min() / sides.max() < p.min_side_ratio:
            return False
        d = p.min_distance_to_border
        xs, ys = quad[:, 0], quad[:, 1]
        if xs.min() < d or ys.min() < d or xs.max() > w - 1 - d or ys.max() > h - 1 - d:
            return False
        return True

    @staticmethod
    def _drop_duplicates(quads: list[tuple[float, np.ndarray]]) -> list[np.ndarray]:
        """The same edge is found by several windows; keep the first (largest)."""
        kept: list[np.ndarray] = []
        for perimeter, quad in quads:
            tolerance = 0.02 * perimeter
            duplicate = False
            for other in kept:
                for shift in range(4):
                    if np.abs(np.roll(other, shift, axis=0) - quad).max() < tolerance:
                        duplicate = True
                        break
                if duplicate:
                    break
            if not duplicate:
                kept.append(quad)
        return kept

    def read_bits(self, gray: np.ndarray, quad: np.ndarray) -> Optional[np.ndarray]:
        """Rectify quad and return its (S+2, S+2) cell grid, 1 = white."""
        p = self.params
        cells = self.dictionary.marker_size + 2
        cell_px = int(p.cell_pixels)
        side = cells * cell_px
        dst = np.array([[0, 0], [side - 1, 0], [side - 1, side - 1], [0, side - 1]], dtype=np.float32)
        M = cv2.getPerspectiveTransform(quad.astype(np.float32), dst)
        warped = cv2.warpPerspective(gray, M, (side, side), flags=cv2.INTER_NEAREST)

        mean, std = cv2.meanStdDev(warped)
        if float(std[0][0]) < p.min_otsu_std_dev:
            # uniform patch: not a marker (all-black or all-white grid)
            return None
        _, binary = cv2.threshold(warped, 125, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)

        margin = int(cell_px * p.cell_margin_rate)
        grid = np.zeros((cells, cells), dtype=np.uint8)
        for y in range(cells):
            for x in range(cells):
                region = binary[
                    y * cell_px + margin:(y + 1) * cell_px - margin,
                    x * cell_px + margin:(x + 1) * cell_px - margin,
                ]
                if np.count_nonzero(region) > region.size / 2:
                    grid[y, x] = 1
        return grid

    def decode(self, gray: np.ndarray, quad: np.ndarray) -> Optional[tuple[int, np.ndarray, int]]:
        """Returns (marker_id, corners rotated to the pattern's top-left, distance)."""
        grid = self.read_bits(gray, quad)
        if grid is None:
            return None
        size = self.dictionary.marker_size
        border = np.ones_like(grid, dtype=bool)
        border[1:-1, 1:-1] = False
        border_errors = int(grid[border].sum())
        if border_errors > int(size * size * self.params.max_erroneous_border_rate):
            return None

        match = self.dictionary.identify(grid[1:-1, 1:-1], self._max_distance)
        if match is None:
            return None
        marker_id, rotation, distance = match
        corners = np.roll(quad, -rotation, axis=0)
        return marker_id, corners, distance

    def refine_corners(self, gray: np.ndarray, corners: np.ndarray) -> np.ndarray:
        p = self.params
        min_side = float(np.linalg.norm(corners - np.roll(corners, -1, axis=0), axis=1).min())
        cell = min_side / float(self.dictionary.marker_size + 2)
        win = int(max(1, min(p.corner_refinement_win_size, cell / 2.0)))
        criteria = (
            cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER,
            int(p.corner_refinement_max_iterations),
            float(p.corner_refinement_min_accuracy),
        )
        refined = corners.astype(np.float32).reshape(-1, 1, 2).copy()
        cv2.cornerSubPix(gray, refined, (win, win), (-1, -1), criteria)
        return refined.reshape(4, 2).astype(np.float64)


def _make_params():
    """Create detector parameters across OpenCV versions."""
    if hasattr(cv2.aruco, "DetectorParameters_create"):
        return cv2.aruco.DetectorParameters_create()
    return cv2.aruco.DetectorParameters()


class OpenCvMarkerDetector(MarkerDetector):
    """
    Candidates, ids and corner refinement come from cv2.aruco. The decoding
    margin is scored afterwards by reading the cells back from the returned
    corners. Needs one of OpenCV's predefined dictionaries.
    """

    def __init__(self, dictionary: MarkerDictionary, params: Optional[DetectorConfig] = None):
        super().__init__(dictionary, params)
        self._cv_dictionary = get_dict(dictionary.name)
        self._cv_params = self._opencv_params()
        self._detector = None
        # Prefer the newer ArucoDetector API if present
        if hasattr(cv2.aruco, "ArucoDetector"):
            self._detector = cv2.aruco.ArucoDetector(self._cv_dictionary, self._cv_params)

    def _opencv_params(self):
        p = self.params
        cv_params = _make_params()
        wins = sorted(int(w) for w in p.adaptive_thresh_win_sizes)
        cv_params.adaptiveThreshWinSizeMin = wins[0]
        cv_params.adaptiveThreshWinSizeMax = wins[-1]
        cv_params.adaptiveThreshWinSizeStep = (wins[-1] - wins[0]) // (len(wins) - 1) if len(wins) > 1 else 10
        cv_params.adaptiveThreshConstant = float(p.adaptive_thresh_constant)
        cv_params.minMarkerPerimeterRate = float(p.min_perimeter_rate)
        cv_params.maxMarkerPerimeterRate = float(p.max_perimeter_rate)
        cv_params.polygonalApproxAccuracyRate = float(p.polygonal_approx_accuracy_rate)
        cv_params.minCornerDistanceRate = float(p.min_corner_distance_rate)
        cv_params.minDistanceToBorder = int(p.min_distance_to_border)
        cv_params.perspectiveRemovePixelPerCell = int(p.cell_pixels)
        cv_params.perspectiveRemoveIgnoredMarginPerCell = float(p.cell_margin_rate)
        cv_params.maxErroneousBitsInBorderRate = float(p.max_erroneous_border_rate)
        cv_params.errorCorrectionRate = float(p.error_correction_rate)
        cv_params.minOtsuStdDev = float(p.min_otsu_std_dev)
        if p.corner_refinement:
            cv_params.cornerRefinementMethod = cv2.aruco.CORNER_REFINE_SUBPIX
            cv_params.cornerRefinementWinSize = int(p.corner_refinement_win_size)
            cv_params.cornerRefinementMaxIterations = int(p.corner_refinement_max_iterations)
            cv_params.cornerRefinementMinAccuracy = float(p.corner_refinement_min_accuracy)
        else:
            cv_params.cornerRefinementMethod = cv2.aruco.CORNER_REFINE_NONE
        return cv_params

    def detect(self, frame: Frame) -> list[DetectedMarker]:
        image = frame.image
        if image is None or getattr(image, "size", 0) == 0:
            return []
        gray = to_luminance(np.asarray(image))

        if self._detector is not None:
            corners, ids, _rej = self._detector.detectMarkers(gray)
        else:
            corners, ids, _rej = cv2.aruco.detectMarkers(
                gray, self._cv_dictionary, parameters=self._cv_params
            )

        markers: list[DetectedMarker] = []
        if ids is None or len(ids) == 0:
            return markers
        for quad, marker_id in zip(corners, ids.flatten()):
            quad = np.asarray(quad, dtype=np.float64).reshape(4, 2)
            distance = self.distance_to_id(gray, quad, int(marker_id))
            markers.append(
                DetectedMarker(
                    marker_id=int(marker_id),
                    corners=quad,
                    confidence=max(0.0, 1.0 - distance / float(self._max_distance + 1)),
                    hamming_distance=distance,
                )
            )
        log.debug("opencv markers=%d", len(markers))
        return markers

    def distance_to_id(self, gray: np.ndarray, quad: np.ndarray, marker_id: int) -> int:
        """Hamming distance between the cells under quad and marker_id, best rotation."""
        grid = self.read_bits(gray, quad)
        if grid is None:
            return self._max_distance
        inner = grid[1:-1, 1:-1]
        stored = self.dictionary.flat_bits[marker_id]
        return min(int(np.count_nonzero(np.rot90(inner, k).reshape(-1) != stored)) for k in range(4))


def make_detector(dictionary: MarkerDictionary, params: Optional[DetectorConfig] = None) -> MarkerDetector:
    params = params or DetectorConfig()
    if params.backend == "opencv":
        return OpenCvMarkerDetector(dictionary, params)
    return MarkerDetector(dictionary, params)
