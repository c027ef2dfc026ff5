"""Non-blocking progress channel.

Producers publish ``ProgressEvent`` records without ever blocking: when
the queue is full the oldest event is dropped.  Published fractions are
clamped so they never exceed 1 and never regress.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import replace
from typing import TYPE_CHECKING

from geo_loader.models.diagnostics import ProgressEvent

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

DEFAULT_MAXSIZE = 256
_CLOSED = object()


class ProgressChannel:
    """Bounded ``queue.Queue`` of progress events.

    Args:
        maxsize: Queue capacity before the oldest events are dropped.
    """

    def __init__(self, maxsize: int = DEFAULT_MAXSIZE) -> None:
        if maxsize <= 0:
            msg = f"maxsize must be > 0, got {maxsize}"
            raise ValueError(msg)
        self._queue: queue.Queue[object] = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._last: dict[str, float] = {}
        self.dropped = 0
        self.closed = False

    def publish(self, event: ProgressEvent) -> ProgressEvent:
        """Enqueue ``event`` with its fraction clamped; never blocks.

        Returns:
            The event as published (after clamping).
        """
        with self._lock:
            fraction = min(max(event.fraction, self._last.get(event.phase, 0.0)), 1.0)
            self._last[event.phase] = fraction
            published = event if fraction == event.fraction else replace(event, fraction=fraction)
            self._put(published)
        return published

    def _put(self, item: object) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def last_fraction(self, phase: str) -> float:
        return self._last.get(phase, 0.0)

    def events(self) -> list[ProgressEvent]:
        """Drain and return every queued event."""
        drained: list[ProgressEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return drained
            if isinstance(item, ProgressEvent):
                drained.append(item)

    def close(self) -> None:
        """Signal consumers that no more events will arrive."""
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._put(_CLOSED)
        if self.dropped:
            logger.debug("Progress channel closed | dropped=%d", self.dropped)

    def __iter__(self) -> Iterator[ProgressEvent]:
        """Block for events until ``close`` is called."""
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, ProgressEvent):
                yield item
