"""Minimal span recording for pipeline cycles.

Span export belongs to the host process. A Tracer only times nested spans and
passes each finished one to ``on_finish``; subclasses decide where it goes.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional


@dataclass
class Span:
    name: str
    parent: Optional["Span"] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    tags: dict[str, Any] = field(default_factory=dict)
    start: float = 0.0
    end: Optional[float] = None
    error: Optional[str] = None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def set_tag(self, key: str, value: Any) -> None:
        self.tags[key] = value

    @property
    def duration_ms(self) -> float:
        if self.end is None:
            return 0.0
        return (self.end - self.start) * 1000.0


class Tracer:
    """Does nothing with finished spans; override on_finish to export them."""

    def __init__(self):
        self._local = threading.local()

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[Span]:
        parent = getattr(self._local, "current", None)
        s = Span(name=name, parent=parent, attributes=dict(attributes), start=time.perf_counter())
        self._local.current = s
        try:
            yield s
        except BaseException as exc:
            s.error = type(exc).__name__
            raise
        finally:
            s.end = time.perf_counter()
            self._local.current = parent
            self.on_finish(s)

    def on_finish(self, span: Span) -> None:
        return None


class LoggingTracer(Tracer):
    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.DEBUG):
        super().__init__()
        self.logger = logger or logging.getLogger(__name__)
        self.level = level

    def on_finish(self, span: Span) -> None:
        self.logger.log(
            self.level,
            "span=%s parent=%s ms=%.2f attrs=%s tags=%s",
            span.name,
            span.parent.name if span.parent else "-",
            span.duration_ms,
            span.attributes,
            span.tags,
        )


class RecordingTracer(Tracer):
    """Keeps every finished span in memory (tests, diagnostics)."""

    def __init__(self):
        super().__init__()
        self.spans: list[Span] = []
        self._lock = threading.Lock()

    def on_finish(self, span: Span) -> None:
        with self._lock:
            self.spans.append(span)

    def named(self, name: str) -> list[Span]:
        with self._lock:
            return [s for s in self.spans if s.name == name]
