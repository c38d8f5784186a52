# utils/log_capture.py

from __future__ import annotations
import logging

from domain.models import LogEvent
from domain.ports import LogSink


class _SinkHandler(logging.Handler):
    def __init__(self, sink: LogSink, level: int) -> None:
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.sink(LogEvent(level=record.levelname, logger=record.name, message=record.getMessage()))
        except Exception:
            self.handleError(record)


class RunLogCapture:
    """
    Captura temporal del log (root) durante una ejecución del pipeline:
    cada registro se reenvía como LogEvent al sink inyectado.
    Uso:
        with RunLogCapture(sink):
            ... # ejecutar proceso
    """
    def __init__(self, sink: LogSink, level=logging.INFO) -> None:
        self.level = level
        self.handler = _SinkHandler(sink, level)

    def __enter__(self):
        root = logging.getLogger()
        self._prev_level = root.level
        root.setLevel(min(self._prev_level, self.level) if self._prev_level else self.level)
        root.addHandler(self.handler)
        return self

    def __exit__(self, exc_type, exc, tb):
        root = logging.getLogger()
        try:
            root.removeHandler(self.handler)
            root.setLevel(self._prev_level)
        finally:
            self.handler.close()
