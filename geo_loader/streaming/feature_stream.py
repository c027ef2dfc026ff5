"""Streaming Feature Manager.

Consumes a feature producer (typically a parser or a transform stage)
and yields fixed-size chunks while tracking running bounds and progress.

Lifecycle of one stream:
- features are pulled one at a time; cancellation is checked between them
- every ``chunk_size`` features a chunk is yielded and progress published
- a producer exception ends the stream with ``StreamAbortedError``
  carrying the partial result (bounds so far, features emitted)
- ``buffer()`` accumulates features under a memory ceiling and raises
  ``ResourceExceededError`` when the ceiling would be crossed; through
  ``collect()`` the error carries the partial result as well
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from geo_loader.core.config import LoaderConfig
from geo_loader.core.exceptions import ResourceExceededError, StreamAbortedError, StructuralError
from geo_loader.models.diagnostics import ProgressEvent
from geo_loader.models.geometry import Bounds, BoundsBuilder, iter_positions

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from geo_loader.models.feature import Feature
    from geo_loader.streaming.progress import ProgressChannel

logger = logging.getLogger(__name__)

BYTES_PER_POSITION = 24
PHASE = "stream"


def estimate_feature_bytes(feature: Feature) -> int:
    """Rough in-memory size: 24 bytes per position plus property text length."""
    positions = sum(1 for _ in iter_positions(feature.geometry))
    text = sum(len(str(k)) + len(str(v)) for k, v in feature.properties.items())
    return positions * BYTES_PER_POSITION + text


@dataclass(slots=True)
class ProcessingState:
    """Mutable state of one stream.

    Attributes:
        offset: Features pulled from the producer so far.
        features_emitted: Features handed out in yielded chunks.
        bounds: Running bounds of every feature pulled (fallback when none).
        progress: Completion in ``[0, 1]``; only ever increases.
        complete: The producer was exhausted without error or cancellation.
        cancelled: The stream stopped because cancellation was requested.
        error: Message of the producer failure, if any.
    """

    offset: int = 0
    features_emitted: int = 0
    bounds: Bounds = field(default_factory=Bounds.empty)
    progress: float = 0.0
    complete: bool = False
    cancelled: bool = False
    error: str | None = None

    def advance(self, fraction: float) -> None:
        self.progress = min(max(self.progress, fraction), 1.0)


@dataclass(slots=True)
class StreamResult:
    """Outcome of a stream.

    ``complete=False`` marks a partial, non-authoritative result.
    """

    features: list[Feature] = field(default_factory=list)
    bounds: Bounds = field(default_factory=Bounds.empty)
    features_emitted: int = 0
    complete: bool = True
    cancelled: bool = False
    error: str | None = None


class StreamingFeatureManager:
    """Chunked, bounded, cancellable feature streaming.

    Args:
        config: Chunk size and memory ceilings.
        progress: Channel that receives one ``ProgressEvent`` per chunk.
        cancel_event: Cooperative cancellation flag.
    """

    def __init__(
        self,
        config: LoaderConfig | None = None,
        progress: ProgressChannel | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.config = config or LoaderConfig()
        self.progress = progress
        self.cancel_event = cancel_event or threading.Event()
        self.state = ProcessingState()
        self._bounds = BoundsBuilder()
        self._buffer: list[Feature] = []
        self._buffered_bytes = 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _track(self, feature: Feature) -> None:
        if feature.bbox is not None:
            self._bounds.add_bounds(feature.bbox)
        else:
            for position in iter_positions(feature.geometry):
                self._bounds.add(position)
        self.state.offset += 1

    def _publish(self, total_hint: int | None, message: str = "") -> None:
        if total_hint:
            self.state.advance(self.state.offset / total_hint)
        if self.progress is not None:
            self.progress.publish(
                ProgressEvent(
                    phase=PHASE,
                    fraction=self.state.progress,
                    features_processed=self.state.features_emitted,
                    message=message,
                )
            )

    def _partial(self, pending: list[Feature]) -> StreamResult:
        return StreamResult(
            features=pending,
            bounds=self._bounds.build(),
            features_emitted=self.state.features_emitted,
            complete=False,
            cancelled=self.state.cancelled,
            error=self.state.error,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cooperative cancellation."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def stream(self, producer: Iterable[Feature], total_hint: int | None = None) -> Iterator[list[Feature]]:
        """Yield ``chunk_size`` chunks from ``producer``.

        On cancellation the partial chunk is yielded and the stream ends
        with ``state.cancelled`` set.

        Raises:
            StreamAbortedError: If the producer raises.  ``partial`` holds
                the features pulled but not yet yielded, the bounds so far
                and ``complete=False``.
            StructuralError: Re-raised unchanged when the producer reports
                the input itself as unusable.
        """
        chunk_size = self.config.chunk_size
        chunk: list[Feature] = []
        iterator = iter(producer)
        while True:
            if self.cancel_event.is_set():
                self.state.cancelled = True
                break
            try:
                feature = next(iterator)
            except StopIteration:
                self.state.complete = True
                break
            except StructuralError as exc:
                # The producer found the input itself unusable; keep its category.
                self.state.error = str(exc)
                self.state.complete = False
                self.state.bounds = self._bounds.build()
                raise
            except Exception as exc:
                self.state.error = str(exc)
                self.state.complete = False
                self.state.bounds = self._bounds.build()
                logger.error(
                    "Feature stream aborted | offset=%d | emitted=%d | error=%s",
                    self.state.offset,
                    self.state.features_emitted,
                    exc,
                )
                msg = f"Feature stream aborted after {self.state.offset} features: {exc}"
                raise StreamAbortedError(msg, partial=self._partial(chunk)) from exc
            self._track(feature)
            chunk.append(feature)
            if len(chunk) >= chunk_size:
                self.state.features_emitted += len(chunk)
                self.state.bounds = self._bounds.build()
                self._publish(total_hint)
                yield chunk
                chunk = []

        if chunk:
            self.state.features_emitted += len(chunk)
            yield chunk
        self.state.bounds = self._bounds.build()
        if self.state.complete:
            self.state.advance(1.0)
            self._publish(total_hint, "complete")
            logger.info(
                "Feature stream complete | features=%d | fallback_bounds=%s",
                self.state.features_emitted,
                self.state.bounds.is_fallback,
            )
        else:
            self._publish(total_hint, "cancelled")
            logger.info("Feature stream cancelled | emitted=%d", self.state.features_emitted)

    def buffer(self, feature: Feature) -> None:
        """Add ``feature`` to the internal buffer.

        Raises:
            ResourceExceededError: If the feature would push the buffer
                past ``max_buffered_features`` or ``max_buffered_bytes``.
                The buffer is left unchanged; ``drain()`` or ``cancel()``.
        """
        size = estimate_feature_bytes(feature)
        count_limit = self.config.max_buffered_features
        byte_limit = self.config.max_buffered_bytes
        if len(self._buffer) + 1 > count_limit:
            msg = f"Stream buffer holds {len(self._buffer)} features; limit is {count_limit}"
            raise ResourceExceededError(
                msg, code="BUFFER_FEATURES_EXCEEDED", limit=count_limit, actual=len(self._buffer) + 1
            )
        if self._buffered_bytes + size > byte_limit:
            msg = f"Stream buffer would hold {self._buffered_bytes + size} bytes; limit is {byte_limit}"
            raise ResourceExceededError(
                msg, code="BUFFER_BYTES_EXCEEDED", limit=byte_limit, actual=self._buffered_bytes + size
            )
        self._buffer.append(feature)
        self._buffered_bytes += size

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def buffered_bytes(self) -> int:
        return self._buffered_bytes

    def drain(self) -> list[Feature]:
        """Return and clear the buffer."""
        drained, self._buffer = self._buffer, []
        self._buffered_bytes = 0
        return drained

    def collect(self, producer: Iterable[Feature], total_hint: int | None = None) -> StreamResult:
        """Stream ``producer`` into memory, subject to the buffer ceiling.

        Raises:
            StreamAbortedError: If the producer raises.
            ResourceExceededError: If the buffer ceiling is crossed.
                ``partial`` holds the features buffered so far, the bounds
                of everything pulled and ``complete=False``.
        """
        try:
            for chunk in self.stream(producer, total_hint):
                for feature in chunk:
                    self.buffer(feature)
        except StreamAbortedError as exc:
            if isinstance(exc.partial, StreamResult):
                exc.partial.features = self.drain() + exc.partial.features
            raise
        except ResourceExceededError as exc:
            self.state.complete = False
            self.state.bounds = self._bounds.build()
            logger.error(
                "Stream buffer ceiling reached | buffered=%d | bytes=%d",
                self.buffered,
                self.buffered_bytes,
            )
            exc.partial = self._partial(self.drain())
            raise
        return StreamResult(
            features=self.drain(),
            bounds=self.state.bounds,
            features_emitted=self.state.features_emitted,
            complete=self.state.complete,
            cancelled=self.state.cancelled,
        )
