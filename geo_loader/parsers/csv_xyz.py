"""CSV / XYZ point parser.

Each data row becomes a ``Point`` feature.  Coordinate columns are
taken from explicit indexes or names, or matched against common header
names (``x``/``lon``/``easting``...).  Remaining columns become
properties, coerced to numbers where they parse as such.

A row with a missing or non-numeric coordinate is skipped with a
``ParseWarning`` naming the row.  Blank and comment lines are ignored.
Rows are read lazily; only the header is consumed when the stream opens.
"""

from __future__ import annotations

import csv
import itertools
import logging
import math
import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from geo_loader.core.exceptions import EntityError, StructuralError
from geo_loader.models.feature import Feature
from geo_loader.models.geometry import Point
from geo_loader.parsers.base import ParseResult, Parser, ParseStream

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator
    from pathlib import Path

    from geo_loader.models.diagnostics import ParseWarning

logger = logging.getLogger("geo_loader.parsers.csv")

DELIMITER_CANDIDATES: tuple[str, ...] = (",", ";", "\t", " ")
WHITESPACE = " "

_X_NAMES = re.compile(r"x|lon|lng|long|longitude|east|easting|e|rechtswert")
_Y_NAMES = re.compile(r"y|lat|latitude|north|northing|n|hochwert")
_Z_NAMES = re.compile(r"z|alt|altitude|elevation|height|h|hoehe")


@dataclass(frozen=True, slots=True)
class CsvParseOptions:
    """CSV/XYZ parsing options.

    Attributes:
        delimiter: Field separator; ``None`` auto-detects from the first
            data line.  ``" "`` splits on runs of whitespace.
        skip_rows: Physical lines to skip before the header or data.
        has_header: Whether the first non-skipped line names the columns.
        x_column / y_column / z_column: Column index or header name.
            ``None`` derives x/y from header names (falling back to
            columns 0 and 1) and z from header names only.
        comment: Lines starting with this prefix are ignored.
        max_rows: Stop after this many data rows.
        encoding: Text encoding of the file.
    """

    delimiter: str | None = None
    skip_rows: int = 0
    has_header: bool = True
    x_column: int | str | None = None
    y_column: int | str | None = None
    z_column: int | str | None = None
    comment: str | None = "#"
    max_rows: int | None = None
    encoding: str = "utf-8"

    def __post_init__(self) -> None:
        if self.skip_rows < 0:
            msg = f"skip_rows must be >= 0, got {self.skip_rows}"
            raise ValueError(msg)
        if self.max_rows is not None and self.max_rows <= 0:
            msg = f"max_rows must be > 0, got {self.max_rows}"
            raise ValueError(msg)
        if self.delimiter is not None and len(self.delimiter) != 1:
            msg = f"delimiter must be a single character, got {self.delimiter!r}"
            raise ValueError(msg)


def xyz_options(**overrides: Any) -> CsvParseOptions:
    """Options for XYZ point clouds: whitespace-delimited, x/y/z in columns 0-2, no header."""
    base = CsvParseOptions(delimiter=WHITESPACE, has_header=False, x_column=0, y_column=1, z_column=2)
    return replace(base, **overrides)


def detect_delimiter(line: str) -> str:
    """Pick the candidate delimiter that splits ``line`` into the most fields."""
    best, best_count = ",", 1
    for candidate in DELIMITER_CANDIDATES:
        count = len(line.split()) if candidate == WHITESPACE else line.count(candidate) + 1
        if count > best_count:
            best, best_count = candidate, count
    return best


def coerce_scalar(value: str) -> Any:
    """Return ``value`` as int or float when it parses, else the stripped string."""
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return text
    return number if math.isfinite(number) else text


def _match_header(headers: list[str], pattern: re.Pattern[str]) -> int | None:
    for index, header in enumerate(headers):
        if pattern.fullmatch(header.strip().lower()):
            return index
    return None


def _resolve(column: int | str | None, headers: list[str] | None, name: str) -> int | None:
    if column is None or isinstance(column, int):
        return column
    if headers is None or column not in headers:
        msg = f"{name} column {column!r} not found in header"
        raise StructuralError(msg, stage="parse_csv", code="CSV_COLUMN_MISSING")
    return headers.index(column)


class CsvXyzParser(Parser):
    """Parser for delimited point files (``.csv``, ``.txt``, ``.xyz``).

    The header and column mapping are resolved when the stream is
    opened; data rows are read from the file as the stream is iterated.
    """

    format_name = "csv"

    def __init__(self, options: CsvParseOptions | None = None) -> None:
        self._options = options or CsvParseOptions()

    @property
    def options(self) -> CsvParseOptions:
        return self._options

    def open_path(self, path: Path) -> ParseStream:
        try:
            fh = path.open(encoding=self._options.encoding, errors="replace", newline="")
        except OSError as exc:
            msg = f"Cannot read {path.name}: {exc}"
            raise StructuralError(msg, stage="parse_csv", code="CSV_UNREADABLE") from exc
        try:
            return self.open_lines(enumerate(fh, start=1), layer=path.stem, source=path.name, on_close=fh.close)
        except BaseException:
            fh.close()
            raise

    def open_text(self, text: str, *, layer: str = "default") -> ParseStream:
        return self.open_lines(enumerate(text.splitlines(), start=1), layer=layer)

    def parse_text(self, text: str, *, layer: str = "default") -> ParseResult:
        with self.open_text(text, layer=layer) as stream:
            return stream.to_result()

    def open_lines(
        self,
        lines: Iterable[tuple[int, str]],
        *,
        layer: str,
        source: str = "",
        on_close: Callable[[], None] | None = None,
    ) -> ParseStream:
        """Read the header from numbered lines and stream the data rows.

        Raises:
            StructuralError: If a named coordinate column is absent, or
                the file cannot be read.
        """
        opts = self._options
        records = self._significant(lines)
        first = self._next_record(records)
        delimiter = opts.delimiter
        if delimiter is None and first is not None:
            delimiter = detect_delimiter(first[1])
            logger.debug("Detected delimiter | delimiter=%r", delimiter)

        headers: list[str] | None = None
        if opts.has_header and first is not None:
            headers = [f.strip() for f in self._split(first[1], delimiter or ",")]
            first = None
        columns = self._columns(headers) if headers is not None or not opts.has_header else (0, 1, None)

        pending = [first] if first is not None else []
        warnings: list[ParseWarning] = []
        features = self._rows(
            itertools.chain(pending, records),
            delimiter or ",",
            columns,
            headers,
            layer,
            warnings,
        )
        return self._stream(
            features,
            source or layer,
            layers={layer},
            warnings=warnings,
            metadata={"delimiter": delimiter, "columns": headers or []},
            on_close=on_close,
        )

    def _significant(self, lines: Iterable[tuple[int, str]]) -> Iterator[tuple[int, str]]:
        """Numbered lines that are neither skipped, blank nor comments."""
        opts = self._options
        for line_no, raw in lines:
            if line_no <= opts.skip_rows:
                continue
            line = raw.rstrip("\r\n")
            if not line.strip() or (opts.comment and line.lstrip().startswith(opts.comment)):
                continue
            yield line_no, line

    @staticmethod
    def _next_record(records: Iterator[tuple[int, str]]) -> tuple[int, str] | None:
        try:
            return next(records, None)
        except OSError as exc:
            msg = f"Cannot read delimited file: {exc}"
            raise StructuralError(msg, stage="parse_csv", code="CSV_UNREADABLE") from exc

    def _rows(
        self,
        records: Iterator[tuple[int, str]],
        delimiter: str,
        columns: tuple[int, int, int | None],
        headers: list[str] | None,
        layer: str,
        warnings: list[ParseWarning],
    ) -> Iterator[Feature]:
        max_rows = self._options.max_rows
        rows = 0
        while (record := self._next_record(records)) is not None:
            line_no, line = record
            try:
                feature = self._row_feature(self._split(line, delimiter), columns, headers, line_no, layer)
            except EntityError as exc:
                self._warn(warnings, exc, row=line_no)
                continue
            yield feature
            rows += 1
            if max_rows is not None and rows >= max_rows:
                logger.info("Stopped at max_rows | max_rows=%d", max_rows)
                return

    @staticmethod
    def _split(line: str, delimiter: str) -> list[str]:
        if delimiter == WHITESPACE:
            return line.split()
        return next(csv.reader([line], delimiter=delimiter))

    def _columns(self, headers: list[str] | None) -> tuple[int, int, int | None]:
        opts = self._options
        x = _resolve(opts.x_column, headers, "x")
        y = _resolve(opts.y_column, headers, "y")
        z = _resolve(opts.z_column, headers, "z")
        if headers is not None:
            if x is None:
                x = _match_header(headers, _X_NAMES)
            if y is None:
                y = _match_header(headers, _Y_NAMES)
            if z is None:
                z = _match_header(headers, _Z_NAMES)
        return (0 if x is None else x, 1 if y is None else y, z)

    def _row_feature(
        self,
        fields: list[str],
        columns: tuple[int, int, int | None],
        headers: list[str] | None,
        line_no: int,
        layer: str,
    ) -> Feature:
        x_col, y_col, z_col = columns
        position = [
            self._coordinate(fields, x_col, "x", line_no),
            self._coordinate(fields, y_col, "y", line_no),
        ]
        if z_col is not None:
            position.append(self._coordinate(fields, z_col, "z", line_no))

        properties: dict[str, Any] = {"layer": layer}
        used = {x_col, y_col, z_col}
        for index, value in enumerate(fields):
            if index in used:
                continue
            name = headers[index] if headers is not None and index < len(headers) else f"column_{index}"
            properties[name] = coerce_scalar(value)
        return Feature(geometry=Point(tuple(position)), properties=properties, id=str(line_no))

    @staticmethod
    def _coordinate(fields: list[str], index: int, axis: str, line_no: int) -> float:
        raw = fields[index].strip() if index < len(fields) else ""
        try:
            value = float(raw)
        except ValueError:
            value = math.nan
        if not math.isfinite(value):
            shown = repr(raw) if raw else "missing"
            raise EntityError(
                f"Row {line_no}: {axis} value {shown} is not a finite number",
                entity_type="row",
                handle=str(line_no),
                code="CSV_COORDINATE_INVALID",
                stage="parse_csv",
            )
        return value
