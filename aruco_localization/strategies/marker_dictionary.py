"""Immutable marker dictionaries (bit pattern -> marker id)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

_PREDEFINED = {
    "4x4_50": "DICT_4X4_50",
    "4x4_100": "DICT_4X4_100",
    "4x4_250": "DICT_4X4_250",
    "4x4_1000": "DICT_4X4_1000",
    "5x5_50": "DICT_5X5_50",
    "5x5_100": "DICT_5X5_100",
    "5x5_250": "DICT_5X5_250",
    "5x5_1000": "DICT_5X5_1000",
    "6x6_50": "DICT_6X6_50",
    "6x6_100": "DICT_6X6_100",
    "6x6_250": "DICT_6X6_250",
    "6x6_1000": "DICT_6X6_1000",
    "7x7_50": "DICT_7X7_50",
    "7x7_100": "DICT_7X7_100",
    "7x7_250": "DICT_7X7_250",
    "7x7_1000": "DICT_7X7_1000",
    "original": "DICT_ARUCO_ORIGINAL",
}


def normalize_dict_name(name: str) -> str:
    key = (name or "").strip()
    if key.upper().startswith("DICT_"):
        key = key[5:]
    key = key.lower()
    if key == "aruco_original":
        key = "original"
    return key


def get_dict(name: str):
    """
    Resolve an OpenCV predefined ArUco dictionary by short name ("4x4_50",
    "DICT_6X6_250", "original"). Raises ValueError for unknown names.
    """
    key = normalize_dict_name(name)
    if key not in _PREDEFINED:
        raise ValueError(f"Unknown ArUco dictionary: {name}")
    code = getattr(cv2.aruco, _PREDEFINED[key])

    if hasattr(cv2.aruco, "getPredefinedDictionary"):           # OpenCV >= 4.7
        return cv2.aruco.getPredefinedDictionary(code)
    return cv2.aruco.Dictionary_get(code)                        # Older OpenCV


def bits_from_byte_list(byte_list: np.ndarray, marker_size: int) -> np.ndarray:
    """
    Unpack the rotation-0 pattern of one OpenCV dictionary entry.

    OpenCV stores the bits row-major, most significant bit first; the final
    byte only holds the remaining bits, right-aligned.
    """
    total = marker_size * marker_size
    nbytes = (total + 7) // 8
    raw = np.asarray(byte_list, dtype=np.uint8).reshape(-1)[:nbytes]
    bits = np.zeros(total, dtype=np.uint8)
    pos = 0
    for idx, byte in enumerate(raw):
        count = 8 if 8 * (idx + 1) <= total else total - 8 * idx
        for shift in range(count - 1, -1, -1):
            bits[pos] = (int(byte) >> shift) & 1
            pos += 1
    return bits.reshape(marker_size, marker_size)


@dataclass(frozen=True, eq=False)
class MarkerDictionary:
    """
    Fixed catalog of marker bit patterns.

    ``bits`` has shape (N, marker_size, marker_size); entry i is the pattern of
    marker id i in its canonical orientation, 1 = white cell. The array is
    read-only; instances are built once at startup and shared.
    """

    name: str
    marker_size: int
    max_correction_bits: int
    bits: np.ndarray

    def __post_init__(self) -> None:
        bits = np.array(self.bits, dtype=np.uint8, copy=True)
        if bits.ndim != 3 or bits.shape[1] != self.marker_size or bits.shape[2] != self.marker_size:
            raise ValueError(
                f"bits must have shape (N, {self.marker_size}, {self.marker_size}), got {bits.shape}"
            )
        if bits.shape[0] == 0:
            raise ValueError("dictionary must hold at least one marker")
        bits.setflags(write=False)
        flat = bits.reshape(bits.shape[0], -1).copy()
        flat.setflags(write=False)
        object.__setattr__(self, "bits", bits)
        object.__setattr__(self, "_flat", flat)

    @classmethod
    def from_opencv(cls, name: str) -> "MarkerDictionary":
        d = get_dict(name)
        marker_size = int(d.markerSize)
        patterns = np.stack(
            [bits_from_byte_list(entry, marker_size) for entry in np.asarray(d.bytesList)]
        )
        return cls(normalize_dict_name(name), marker_size, int(d.maxCorrectionBits), patterns)

    @classmethod
    def from_bits(cls, name: str, bits, max_correction_bits: Optional[int] = None) -> "MarkerDictionary":
        """Build a custom dictionary; the correction distance defaults to
        (minimum pairwise distance over all rotations - 1) // 2."""
        arr = np.asarray(bits, dtype=np.uint8)
        if arr.ndim != 3:
            raise ValueError("bits must be a (N, S, S) array")
        if max_correction_bits is None:
            max_correction_bits = (minimum_distance(arr) - 1) // 2
        return cls(name, int(arr.shape[1]), max(0, int(max_correction_bits)), arr)

    def __len__(self) -> int:
        return int(self.bits.shape[0])

    @property
    def flat_bits(self) -> np.ndarray:
        return self._flat  # type: ignore[attr-defined]

    def marker_image(self, marker_id: int, side_pixels: int, border_bits: int = 1) -> np.ndarray:
        """Render marker_id as a uint8 image (black border, 1 bits white)."""
        if not 0 <= marker_id < len(self):
            raise ValueError(f"marker id {marker_id} not in dictionary {self.name}")
        cells = self.marker_size + 2 * border_bits
        if side_pixels < cells:
            raise ValueError(f"side_pixels must be at least {cells}")
        grid = np.zeros((cells, cells), dtype=np.uint8)
        grid[border_bits:border_bits + self.marker_size, border_bits:border_bits + self.marker_size] = (
            self.bits[marker_id] * 255
        )
        return cv2.resize(grid, (side_pixels, side_pixels), interpolation=cv2.INTER_NEAREST)

    def identify(self, observed: np.ndarray, max_distance: int) -> Optional[tuple[int, int, int]]:
        """
        Match an observed (S, S) bit grid against all entries and rotations.

        Returns (marker_id, rotation, distance) where rotating the observed grid
        counter-clockwise ``rotation`` times gives the stored pattern, or None
        when nothing is within max_distance or two ids tie for the best match.
        """
        observed = np.asarray(observed, dtype=np.uint8)
        rotations = np.stack([np.rot90(observed, k).reshape(-1) for k in range(4)])
        distances = (rotations[:, None, :] != self.flat_bits[None, :, :]).sum(axis=2)
        per_id = distances.min(axis=0)
        best_id = int(np.argmin(per_id))
        best = int(per_id[best_id])
        if best > max_distance:
            return None
        if np.count_nonzero(per_id == best) > 1:
            return None
        rotation = int(np.argmin(distances[:, best_id]))
        return best_id, rotation, best


def minimum_distance(bits: np.ndarray) -> int:
    """Smallest hamming distance between any two entries (over all rotations)
    and between each entry and its own non-trivial rotations."""
    arr = np.asarray(bits, dtype=np.uint8)
    n = arr.shape[0]
    best = arr.shape[1] * arr.shape[2]
    flat = arr.reshape(n, -1)
    for i in range(n):
        for k in range(1, 4):
            rot = np.rot90(arr[i], k).reshape(-1)
            best = min(best, int(np.count_nonzero(rot != flat[i])))
            if i + 1 < n:
                best = min(best, int((flat[i + 1:] != rot).sum(axis=1).min()))
        if i + 1 < n:
            best = min(best, int((flat[i + 1:] != flat[i]).sum(axis=1).min()))
    return best
