"""End-to-end import pipeline for one uploaded file.

Stages, in order:

1. Size check: oversize files are rejected before any parser runs.
2. Parser selection by extension.
3. Parse: the parser opens a lazy feature stream; per-entity problems
   become warnings.
4. Source system: projection metadata from the file, else detected
   from the coordinate ranges of the first features.
5. Swiss heights (opt-in, LV95 sources only): native LHN95 heights of
   3D points are converted to ellipsoidal base elevations.
6. Reprojection to the target system; failures become warnings and the
   feature is dropped or kept untransformed, as the caller chooses.
7. Streaming: chunked collection under the memory ceiling, with
   running bounds.
8. Preview generation.

Stages 3 to 7 run batch by batch: the parser is only asked for the next
``chunk_size`` features once the previous batch has been reprojected
and buffered, so the memory ceiling bounds the whole run.

Fatal-structural and resource errors propagate as the original
``PipelineError`` subclass with every warning gathered so far attached
as ``diagnostics``.  Cancellation is cooperative and yields a result
marked ``complete=False``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from geo_loader.coordinates.delta_cache import HeightDeltaCache
from geo_loader.coordinates.heights import HeightSummary, apply_swiss_heights, mark_lv95_stored
from geo_loader.coordinates.manager import CoordinateSystemManager
from geo_loader.coordinates.swiss_service import SwissReframeClient
from geo_loader.coordinates.systems import DETECTION_SAMPLE_SIZE, detect_coordinate_system
from geo_loader.core.config import LoaderConfig
from geo_loader.core.constants import SWISS_LV95, WGS84
from geo_loader.core.exceptions import ResourceExceededError, StructuralError
from geo_loader.models.diagnostics import ParseWarning, ProgressEvent
from geo_loader.models.geometry import Bounds, BoundsBuilder, iter_positions
from geo_loader.parsers.factory import check_file_size, detect_format, get_parser
from geo_loader.preview.generator import PreviewConfig, generate_preview
from geo_loader.streaming.feature_stream import StreamingFeatureManager

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from geo_loader.coordinates.delta_cache import SwissHeightTransformer
    from geo_loader.models.feature import Feature
    from geo_loader.models.preview import PreviewDataset
    from geo_loader.parsers.base import ParseStream
    from geo_loader.streaming.progress import ProgressChannel

logger = logging.getLogger("geo_loader.orchestrators.import_pipeline")

TRANSFORM_FAILURE_POLICIES = ("drop", "keep")


@dataclass(slots=True)
class ImportResult:
    """Outcome of ``import_file``.

    Attributes:
        features: Every imported feature, for the persistence collaborator.
            With ``on_transform_failure="keep"`` this includes features
            left in ``source_system`` and flagged ``transform_failed``.
        preview: Bounded preview for the rendering collaborator; built
            from transformed features only.
        warnings: Non-fatal diagnostics from every stage.
        bounds: Aggregate bounds of the transformed features in
            ``target_system``.
        complete: ``False`` when cancelled part-way.
        source_system: Authority code the input was read in.
        target_system: Authority code of ``features`` and ``preview``.
        layers: Layer names seen by the parser.
        heights: Swiss height summary, when that stage ran.
        metadata: Format-specific facts reported by the parser.
    """

    features: list[Feature]
    preview: PreviewDataset
    warnings: list[ParseWarning] = field(default_factory=list)
    bounds: Bounds = field(default_factory=Bounds.empty)
    complete: bool = True
    source_system: str = WGS84
    target_system: str = WGS84
    layers: set[str] = field(default_factory=set)
    heights: HeightSummary | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _positions(features: list[Feature]) -> Iterator[tuple[float, ...]]:
    for feature in features:
        yield from iter_positions(feature.geometry)


def _publish(progress: ProgressChannel | None, phase: str, processed: int, message: str = "") -> None:
    if progress is not None:
        progress.publish(ProgressEvent(phase=phase, fraction=1.0, features_processed=processed, message=message))


def _cancelled(cancel_event: threading.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _height_warnings(features: list[Feature]) -> list[ParseWarning]:
    return [
        ParseWarning(
            message=str(f.properties.get("height_transformation_error", "")),
            code="HEIGHT_TRANSFORM_FAILED",
            entity_type="feature",
            handle=f.id or "",
            layer=f.layer,
        )
        for f in features
        if f.properties.get("height_transformed") is False
    ]


def _is_failed(feature: Feature) -> bool:
    return feature.properties.get("transform_failed") is True


# ---------------------------------------------------------------------------
# Batched heights + reprojection
# ---------------------------------------------------------------------------


class _TransformStage:
    """Pulls features in batches, converts heights and reprojects them.

    ``run`` is a generator fed to ``StreamingFeatureManager.collect``; it
    holds at most one batch at a time.
    """

    def __init__(
        self,
        manager: CoordinateSystemManager,
        source_system: str,
        target_system: str,
        *,
        chunk_size: int,
        policy: str,
        cancel_event: threading.Event,
        heights: SwissHeightTransformer | None = None,
        allow_fallback: bool = False,
    ) -> None:
        self._manager = manager
        self._source_system = source_system
        self._target_system = target_system
        self._chunk_size = chunk_size
        self._policy = policy
        self._cancel_event = cancel_event
        self._heights = heights
        self._allow_fallback = allow_fallback
        self.warnings: list[ParseWarning] = []
        self.summary: HeightSummary | None = HeightSummary() if heights is not None else None
        self.consumed = 0
        self.attempted = 0
        self.transformed = 0
        self.failed = 0

    def run(self, features: Iterable[Feature]) -> Iterator[Feature]:
        batch: list[Feature] = []
        for feature in features:
            batch.append(feature)
            if len(batch) >= self._chunk_size:
                yield from self._process(batch)
                batch = []
        if batch:
            yield from self._process(batch)

    def _process(self, batch: list[Feature]) -> Iterator[Feature]:
        start = self.consumed
        self.consumed += len(batch)

        if self._heights is not None and self.summary is not None:
            mark_lv95_stored(batch)
            summary = apply_swiss_heights(
                batch,
                self._heights,
                allow_fallback=self._allow_fallback,
                cancel_event=self._cancel_event,
            )
            self.summary.transformed += summary.transformed
            self.summary.failed += summary.failed
            self.summary.skipped += summary.skipped
            self.summary.cancelled = self.summary.cancelled or summary.cancelled
            self.warnings.extend(_height_warnings(batch))

        outcomes = self._manager.transform_features(
            batch,
            self._source_system,
            self._target_system,
            cancel_event=self._cancel_event,
            start=start,
        )
        self.attempted += len(outcomes)
        for outcome in outcomes:
            if outcome.feature is not None:
                self.transformed += 1
                yield outcome.feature
                continue
            self.failed += 1
            warning = outcome.warning()
            if warning is not None:
                self.warnings.append(warning)
            if self._policy == "keep" and outcome.error is not None:
                original = batch[outcome.index - start]
                original.properties["transform_failed"] = True
                original.properties["transform_error"] = outcome.error.message
                yield original

    @property
    def complete(self) -> bool:
        return self.attempted == self.consumed and not (self.summary is not None and self.summary.cancelled)


def _gather_warnings(stream: ParseStream | None, stage: _TransformStage | None) -> list[ParseWarning]:
    gathered: list[ParseWarning] = []
    if stream is not None:
        gathered.extend(stream.warnings)
    if stage is not None:
        gathered.extend(stage.warnings)
    return gathered


def _transformed_bounds(features: list[Feature]) -> Bounds:
    builder = BoundsBuilder()
    for feature in features:
        for position in iter_positions(feature.geometry):
            builder.add(position)
    return builder.build()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def import_file(
    path: Path | str,
    *,
    config: LoaderConfig | None = None,
    target_system: str = WGS84,
    preview_config: PreviewConfig | None = None,
    progress: ProgressChannel | None = None,
    cancel_event: threading.Event | None = None,
    swiss_heights: bool = False,
    manager: CoordinateSystemManager | None = None,
    parser_options: dict[str, Any] | None = None,
    on_transform_failure: str = "drop",
) -> ImportResult:
    """Import one file into transformed features plus a preview.

    Args:
        path: Main file (``.dxf``, ``.shp``, ``.csv``, ``.txt``, ``.xyz``).
        config: Loader configuration (defaults when ``None``).
        target_system: Authority code to reproject into.
        preview_config: Preview settings; its ``coordinate_system`` is
            replaced by ``target_system``.
        progress: Receives one or more events per stage.
        cancel_event: Cooperative cancellation flag.
        swiss_heights: Convert LHN95 heights of LV95 3D points through
            the REFRAME service.
        manager: Coordinate manager; one is built from ``config`` when omitted.
        parser_options: Keyword options for the selected parser.
        on_transform_failure: ``"drop"`` leaves a feature that cannot be
            reprojected out of the result; ``"keep"`` keeps it in its
            source coordinates with ``transform_failed=True`` and
            ``transform_error`` set.  Either way a warning is recorded.

    Returns:
        An ``ImportResult``.

    Raises:
        ValueError: On an unknown ``on_transform_failure`` policy.
        StructuralError: On an unsupported format, a truncated or
            unrecognised file, or a missing companion.
        ResourceExceededError: On an oversize file or when the stream
            buffer ceiling is crossed.
    """
    if on_transform_failure not in TRANSFORM_FAILURE_POLICIES:
        msg = f"on_transform_failure must be one of {TRANSFORM_FAILURE_POLICIES}, got {on_transform_failure!r}"
        raise ValueError(msg)

    config = config or LoaderConfig()
    cancel_event = cancel_event or threading.Event()
    source = Path(path)
    stream: ParseStream | None = None
    stage: _TransformStage | None = None
    owned_client: SwissReframeClient | None = None

    logger.info(
        "Import started | file=%s | target=%s | on_transform_failure=%s",
        source.name,
        target_system,
        on_transform_failure,
    )

    try:
        # -------------------------------------------------------------------
        # Stages 1-3: size check, parser selection, open the feature stream
        # -------------------------------------------------------------------
        check_file_size(source)
        parser = get_parser(detect_format(source), **(parser_options or {}))
        with parser.open(source) as stream:
            # ---------------------------------------------------------------
            # Stage 4: source coordinate system
            # ---------------------------------------------------------------
            source_system = stream.coordinate_system or detect_coordinate_system(
                _positions(stream.peek(DETECTION_SAMPLE_SIZE))
            )

            if manager is None:
                if swiss_heights:
                    owned_client = SwissReframeClient.from_config(config, cancel_event=cancel_event)
                manager = CoordinateSystemManager(
                    cache=HeightDeltaCache.from_config(config),
                    service=owned_client,
                    workers=config.transform_workers,
                )

            transformer: SwissHeightTransformer | None = None
            if swiss_heights and source_system == SWISS_LV95 and not _cancelled(cancel_event):
                transformer = manager.swiss_heights
                if transformer is None:
                    logger.warning("Swiss heights requested without a REFRAME service | file=%s", source.name)

            # ---------------------------------------------------------------
            # Stages 5-7: heights, reprojection and streaming, batch by batch
            # ---------------------------------------------------------------
            stage = _TransformStage(
                manager,
                source_system,
                target_system,
                chunk_size=config.chunk_size,
                policy=on_transform_failure,
                cancel_event=cancel_event,
                heights=transformer,
                allow_fallback=config.allow_approximate,
            )
            streamer = StreamingFeatureManager(config, progress=progress, cancel_event=cancel_event)
            streamed = streamer.collect(stage.run(stream))
            layers = set(stream.layers)
            metadata = dict(stream.metadata)

        _publish(progress, "parse", stream.produced)
        if stage.summary is not None:
            _publish(progress, "heights", stage.summary.transformed + stage.summary.failed)
        _publish(progress, "transform", stage.transformed)

        # -------------------------------------------------------------------
        # Stage 8: preview
        # -------------------------------------------------------------------
        transformed = [f for f in streamed.features if not _is_failed(f)]
        if preview_config is None:
            preview_config = PreviewConfig(
                clean_tolerance=config.clean_tolerance,
                complexity_limit=config.complexity_limit,
            )
        preview = generate_preview(
            transformed,
            replace(preview_config, coordinate_system=target_system),
            progress=progress,
            cancel_event=cancel_event,
        )
    except (StructuralError, ResourceExceededError) as exc:
        gathered = _gather_warnings(stream, stage)
        exc.attach_diagnostics(gathered)
        logger.error(
            "Import failed | file=%s | category=%s | code=%s | warnings=%d | error=%s",
            source.name,
            exc.category,
            exc.code,
            len(gathered),
            exc.message,
        )
        raise
    finally:
        if owned_client is not None:
            owned_client.close()

    warnings = _gather_warnings(stream, stage)
    bounds = streamed.bounds if len(transformed) == len(streamed.features) else _transformed_bounds(transformed)
    complete = streamed.complete and preview.complete and stage.complete
    logger.info(
        "Import finished | file=%s | source=%s | target=%s | features=%d | failed=%d | warnings=%d | complete=%s",
        source.name,
        source_system,
        target_system,
        len(streamed.features),
        stage.failed,
        len(warnings),
        complete,
    )
    return ImportResult(
        features=streamed.features,
        preview=preview,
        warnings=warnings,
        bounds=bounds,
        complete=complete,
        source_system=source_system,
        target_system=target_system,
        layers=layers,
        heights=stage.summary,
        metadata=metadata,
    )
