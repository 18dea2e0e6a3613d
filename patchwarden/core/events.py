"""Progress event sinks.

The pipeline only needs a callback; forwarding events over a push
transport (websocket, SSE) is left to whatever layer wraps the engine.
"""

from __future__ import annotations

import logging
from typing import Callable

from patchwarden.core.types import ProgressEvent

logger = logging.getLogger(__name__)

EventSink = Callable[[ProgressEvent], None]


class CollectingSink:
    """Keeps every event in memory. Handy for tests and CLI summaries."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def phases(self) -> list[str]:
        return [e.phase for e in self.events]


class LoggingSink:
    """Writes every event to the log at INFO level."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def __call__(self, event: ProgressEvent) -> None:
        if event.progress is not None:
            self._log.info("[%s] %s (%.1f%%)", event.phase, event.message, event.progress * 100)
        else:
            self._log.info("[%s] %s", event.phase, event.message)


def emit(sink: EventSink | None, event: ProgressEvent) -> None:
    """Deliver an event; a failing sink is logged, never fatal to the pipeline."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception:
        logger.exception("Event sink failed for phase %s", event.phase)
