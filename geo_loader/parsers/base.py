"""Parser abstract base class.

Every format parser implements this interface.  The rest of the loader
programs against ``Parser`` only and never imports a concrete parser
directly; the factory maps file extensions to implementations.

Contract:
- ``open()`` performs the structural checks and returns a lazy
  ``ParseStream``; features are produced only as the stream is iterated.
- Iteration never raises on a single malformed entity.  The entity is
  skipped, a ``ParseWarning`` naming its handle/layer/type is recorded
  on the stream, and parsing continues.
- ``StructuralError`` is raised by ``open()`` for an unrecognised
  signature, a truncated header, or a missing required companion file,
  always before any feature is produced.
- ``parse()`` drains the stream into a materialised ``ParseResult``.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from geo_loader.core.exceptions import EntityError
from geo_loader.models.diagnostics import ParseWarning

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

    from geo_loader.models.feature import Feature

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ParseResult:
    """Output of a parser.

    Attributes:
        features: Parsed features in source order.
        layers: Layer names seen (DXF layers, or the file stem for flat formats).
        warnings: Per-entity diagnostics for skipped entities.
        coordinate_system: Authority code from projection metadata, or
            ``None`` when the file carries none (detect from coordinates).
        metadata: Format-specific header facts (units, extents, shape type).
    """

    features: list[Feature] = field(default_factory=list)
    layers: set[str] = field(default_factory=set)
    warnings: list[ParseWarning] = field(default_factory=list)
    coordinate_system: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ParseStream:
    """Lazy parser output.

    Header facts (``coordinate_system``, ``metadata``) are known when the
    stream is opened.  ``layers`` and ``warnings`` are shared with the
    producer and grow while the stream is iterated, so they are only
    complete once it is exhausted.

    A stream is single-pass.  ``peek`` buffers features without
    consuming them, which lets callers inspect a sample (for coordinate
    system detection) before the main pass.
    """

    def __init__(
        self,
        features: Iterable[Feature],
        *,
        format_name: str = "",
        source: str = "",
        layers: set[str] | None = None,
        warnings: list[ParseWarning] | None = None,
        coordinate_system: str | None = None,
        metadata: dict[str, Any] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.format_name = format_name
        self.source = source
        self.layers = layers if layers is not None else set()
        self.warnings = warnings if warnings is not None else []
        self.coordinate_system = coordinate_system
        self.metadata = metadata if metadata is not None else {}
        self._features = iter(features)
        self._peeked: list[Feature] = []
        self._on_close = on_close
        self._closed = False
        self._exhausted = False
        self.produced = 0

    def peek(self, count: int) -> list[Feature]:
        """Up to ``count`` upcoming features, left in place for iteration."""
        while len(self._peeked) < count and not self._exhausted:
            feature = next(self._features, None)
            if feature is None:
                self._finish()
                break
            self._peeked.append(feature)
        return self._peeked[:count]

    def __iter__(self) -> Iterator[Feature]:
        while self._peeked:
            self.produced += 1
            yield self._peeked.pop(0)
        if self._exhausted:
            return
        for feature in self._features:
            self.produced += 1
            yield feature
        self._finish()

    def _finish(self) -> None:
        if self._exhausted:
            return
        self._exhausted = True
        logger.info(
            "Parsed %s | file=%s | features=%d | layers=%d | warnings=%d",
            self.format_name,
            self.source,
            self.produced + len(self._peeked),
            len(self.layers),
            len(self.warnings),
        )

    @property
    def exhausted(self) -> bool:
        return self._exhausted and not self._peeked

    def to_result(self) -> ParseResult:
        """Drain the stream into a ``ParseResult``."""
        features = list(self)
        return ParseResult(
            features=features,
            layers=self.layers,
            warnings=self.warnings,
            coordinate_system=self.coordinate_system,
            metadata=self.metadata,
        )

    def close(self) -> None:
        """Release the underlying file; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        close = getattr(self._features, "close", None)
        if close is not None:
            close()
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> ParseStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Parser(abc.ABC):
    """Abstract base class for format parsers.

    Subclasses must implement ``open_path``.  ``format_name`` is used
    for the logging stage and warning codes.
    """

    format_name: str = ""

    def open(self, source: Path | str) -> ParseStream:
        """Open a file on disk for lazy parsing.

        Args:
            source: Path to the main file.  Companion files are located
                next to it by stem.

        Returns:
            A ``ParseStream``; close it (or use it as a context manager)
            when done.

        Raises:
            StructuralError: On fatal structural problems.
        """
        path = Path(source)
        stream = self.open_path(path)
        logger.debug("Opened %s | file=%s", self.format_name, path.name)
        return stream

    def parse(self, source: Path | str) -> ParseResult:
        """Parse a file on disk into memory.

        Raises:
            StructuralError: On fatal structural problems.
        """
        with self.open(source) as stream:
            return stream.to_result()

    @abc.abstractmethod
    def open_path(self, path: Path) -> ParseStream:
        """Format-specific structural checks on ``path``, returning the stream."""

    def _stream(self, features: Iterable[Feature], path: Path | str, **kwargs: Any) -> ParseStream:
        name = path.name if isinstance(path, Path) else path
        return ParseStream(features, format_name=self.format_name, source=name, **kwargs)

    def _warn(self, warnings: list[ParseWarning], error: EntityError, *, row: int | None = None) -> None:
        """Record a skipped entity as a warning and log it."""
        warning = ParseWarning.from_error(error, row=row)
        warnings.append(warning)
        logger.warning(
            "Skipped %s entity | type=%s | handle=%s | layer=%s | reason=%s",
            self.format_name,
            warning.entity_type or "?",
            warning.handle or "?",
            warning.layer or "?",
            warning.message,
        )
