import csv
import io

from ..loc_types import LocalizationResult


class CsvWriter:
    HEADER = [
        "timestamp", "camera_id",
        "detected", "marker_count", "confidence",
        "pos_x", "pos_y", "pos_z",
        "quat_w", "quat_x", "quat_y", "quat_z",
        "roll", "pitch", "yaw",
        "marker_ids",
    ]

    def __init__(self, csv_path: str):
        self.csv_path = csv_path
        self._opened = False
        self._fh = None
        self._w = None

    def open(self):
        self._fh = open(self.csv_path, "w", newline="")
        self._w = csv.writer(self._fh)
        self._w.writerow(self.HEADER)
        self._opened = True

    @staticmethod
    def row(result: LocalizationResult) -> list:
        nan = float("nan")
        pos = list(result.position) if result.position is not None else [nan] * 3
        if result.orientation is not None:
            q = result.orientation
            quat = [q.w, q.x, q.y, q.z]
            euler = list(q.euler())
        else:
            quat = [nan] * 4
            euler = [nan] * 3
        accepted = [str(m.marker_id) for m in result.markers if m.accepted]
        return [
            f"{result.timestamp:.6f}", result.camera_id,
            int(result.detected), result.marker_count, f"{result.confidence:.6f}",
            *pos, *quat, *euler,
            ";".join(accepted),
        ]

    def append(self, result: LocalizationResult):
        self._w.writerow(self.row(result))
        self._fh.flush()

    @classmethod
    def to_csv_line(cls, result: LocalizationResult) -> str:
        buf = io.StringIO()
        w = csv.writer(buf)
        w.writerow(cls.row(result))
        return buf.getvalue().strip()

    def close(self):
        if self._opened and self._fh:
            self._fh.close()
            self._opened = False
            self._fh = None
            self._w = None

