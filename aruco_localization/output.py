from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from .frame_source import detection_topic, pose_topic, result_topic
from .loc_types import LocalizationResult
from .services.csv_writer import CsvWriter


def annotation_messages(result: LocalizationResult) -> list[tuple[str, dict]]:
    """Detection annotations, then one camera-relative pose per estimated marker."""
    messages = [(detection_topic(result.camera_id), result.detection_message())]
    messages.extend((pose_topic(result.camera_id), msg) for msg in result.pose_messages())
    return messages


class ResultSink(ABC):
    """Receives exactly one LocalizationResult per processed frame."""

    @abstractmethod
    def open(self) -> None: ...

    @abstractmethod
    def write_result(self, result: LocalizationResult) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class CsvOutput(ResultSink):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._writer: Optional[CsvWriter] = None

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._writer = CsvWriter(str(self.path))
        self._writer.open()

    def write_result(self, result: LocalizationResult) -> None:
        if self._writer is None:
            return
        self._writer.append(result)

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._writer = None


class JsonLinesOutput(ResultSink):
    """One ``to_message()`` dict per line."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._fh = None

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("w", encoding="utf-8")

    def write_result(self, result: LocalizationResult) -> None:
        if self._fh is None:
            return
        self._fh.write(json.dumps(result.to_message()) + "\n")
        self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


class CallbackOutput(ResultSink):
    """
    Hands results to a publisher, e.g. ``lambda topic, msg: bus.publish(topic, msg)``.

    With ``raw=True`` the callback receives the LocalizationResult itself
    instead of the wire dict. With ``annotations=True`` the detection and
    per-marker pose messages follow on their own topics.
    """

    def __init__(
        self,
        callback: Callable[[str, object], None],
        topic: Optional[Callable[[str], str]] = None,
        raw: bool = False,
        annotations: bool = False,
    ):
        self.callback = callback
        self.topic = topic
        self.raw = raw
        self.annotations = annotations

    def open(self) -> None:
        return None

    def write_result(self, result: LocalizationResult) -> None:
        name = (self.topic or result_topic)(result.camera_id)
        self.callback(name, result if self.raw else result.to_message())
        if self.annotations:
            for topic, msg in annotation_messages(result):
                self.callback(topic, msg)

    def close(self) -> None:
        return None


class NullOutput(ResultSink):
    def open(self) -> None:
        return None

    def write_result(self, result: LocalizationResult) -> None:
        return None

    def close(self) -> None:
        return None


class MqttOutput(ResultSink):
    """Publishes every result as JSON on ``ArUco.<camera_id>.Localization``; optionally
    the detection and pose messages on ``.Detection`` and ``.Pose``."""

    def __init__(
        self,
        host: str,
        port: int = 1883,
        topic: Optional[Callable[[str], str]] = None,
        qos: int = 0,
        keepalive: int = 60,
        annotations: bool = False,
    ):
        self.host = host
        self.port = port
        self.topic = topic
        self.qos = qos
        self.keepalive = keepalive
        self.annotations = annotations
        self._client = None

    def open(self) -> None:
        if hasattr(mqtt, "CallbackAPIVersion"):                    # paho-mqtt >= 2.0
            client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        else:
            client = mqtt.Client()
        client.connect(self.host, self.port, self.keepalive)
        client.loop_start()
        self._client = client

    def write_result(self, result: LocalizationResult) -> None:
        if self._client is None:
            return
        name = (self.topic or result_topic)(result.camera_id)
        self._client.publish(name, json.dumps(result.to_message()), qos=self.qos)
        if self.annotations:
            for topic, msg in annotation_messages(result):
                self._client.publish(topic, json.dumps(msg), qos=self.qos)

    def close(self) -> None:
        if self._client is not None:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None
