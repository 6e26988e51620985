"""Structural validation of CSV sources using Pandera."""

from __future__ import annotations

import csv
from collections import Counter
from collections.abc import Callable
from pathlib import Path

import pandas as pd
import pandera as pa
import structlog

from .errors import SourceUnreadableError
from .models import ValidationIssue, ValidationReport
from .readers.csv_reader import (
    combine_headers,
    detect_time_column,
    header_labels,
    parse_number,
    parse_timestamp,
)

logger = structlog.get_logger(__name__)


def _is_timestamp(time_format: str | None) -> Callable[[str], bool]:
    def check(value: str) -> bool:
        try:
            parse_timestamp(value, time_format)
        except ValueError:
            return False
        return True

    return check


def _is_number_or_empty(value: str) -> bool:
    if not value.strip():
        return True
    try:
        parse_number(value)
    except ValueError:
        return False
    return True


def build_schema(
    columns: list[str],
    time_column: str,
    time_format: str | None = None,
    allow_text_fields: bool = False,
) -> pa.DataFrameSchema:
    """Schema for the data rows of a CSV once headers are resolved.

    Args:
        columns: Resolved column names.
        time_column: Name of the timestamp column.
        time_format: Explicit timestamp format, if any.
        allow_text_fields: Accept non-numeric field cells.

    Returns:
        Schema with element-wise checks on every column.
    """
    schema_columns: dict[str, pa.Column] = {}
    for name in columns:
        if name == time_column:
            schema_columns[name] = pa.Column(
                str,
                checks=pa.Check(_is_timestamp(time_format), element_wise=True),
                coerce=True,
            )
        elif allow_text_fields:
            schema_columns[name] = pa.Column(str, coerce=True)
        else:
            schema_columns[name] = pa.Column(
                str,
                checks=pa.Check(_is_number_or_empty, element_wise=True),
                coerce=True,
            )
    return pa.DataFrameSchema(schema_columns, coerce=True, strict=False)


def _read_rows(path: Path, delimiter: str, encoding: str) -> list[tuple[int, list[str]]]:
    if not path.is_file():
        raise SourceUnreadableError("CSV file not found", source=str(path))
    rows: list[tuple[int, list[str]]] = []
    try:
        with path.open(newline="", encoding=encoding) as f:
            reader = csv.reader(f, delimiter=delimiter)
            for row in reader:
                rows.append((reader.line_num, row))
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise SourceUnreadableError(f"cannot read CSV: {e}", source=str(path)) from e
    return rows


def validate_csv(
    path: Path | str,
    header_rows: int = 1,
    time_column: str | None = None,
    time_format: str | None = None,
    allow_text_fields: bool = False,
    delimiter: str = ",",
    encoding: str = "utf-8",
) -> ValidationReport:
    """Check a CSV file for problems that would make rows fail to import.

    Checks header names (no empty or duplicate columns), consistent row width,
    a locatable and parseable timestamp column, and numeric field cells unless
    ``allow_text_fields`` is set.

    Args:
        path: CSV file.
        header_rows: Number of stacked header rows.
        time_column: Explicit timestamp column name.
        time_format: Explicit ``strptime`` format for timestamps.
        allow_text_fields: Accept non-numeric field cells.
        delimiter: Field delimiter.
        encoding: File encoding.

    Returns:
        Report listing every issue found, in file order.

    Raises:
        SourceUnreadableError: If the file is missing or cannot be decoded.
    """
    path = Path(path)
    all_rows = _read_rows(path, delimiter, encoding)
    report = ValidationReport(header_rows=header_rows)

    headers = [row for _, row in all_rows[:header_rows]]
    body = [(line, row) for line, row in all_rows[header_rows:] if any(c.strip() for c in row)]
    report.total_rows = len(headers) + len(body)

    if len(headers) < header_rows or not any(c.strip() for row in headers for c in row):
        report.issues.append(
            ValidationIssue(1, None, f"expected {header_rows} header row(s), found none")
        )
        return report

    labels = header_labels(headers)
    columns = combine_headers(headers)
    report.columns = columns
    header_line = all_rows[header_rows - 1][0]

    for col, label in enumerate(labels):
        if not label:
            report.issues.append(
                ValidationIssue(header_line, columns[col], f"column {col + 1} has no header")
            )
    for label, count in Counter(label for label in labels if label).items():
        if count > 1:
            report.issues.append(
                ValidationIssue(header_line, label, f"header appears {count} times")
            )

    first_row = body[0][1] if body else None
    time_index = detect_time_column(columns, first_row, time_column, time_format)
    if time_index is None:
        wanted = f" named {time_column!r}" if time_column else ""
        report.issues.append(ValidationIssue(header_line, None, f"no timestamp column{wanted}"))
        return report
    time_name = report.time_column = columns[time_index]

    if len(columns) < 2:
        report.issues.append(ValidationIssue(header_line, None, "no value columns"))

    well_formed: dict[int, list[str]] = {}
    for line, row in body:
        if len(row) != len(columns):
            report.issues.append(
                ValidationIssue(line, None, f"expected {len(columns)} cells, found {len(row)}")
            )
            continue
        if not any(cell.strip() for i, cell in enumerate(row) if i != time_index):
            report.issues.append(ValidationIssue(line, None, "row has no values"))
        well_formed[line] = row

    if well_formed:
        report.issues.extend(
            _check_cells(well_formed, columns, time_name, time_format, allow_text_fields)
        )

    report.issues.sort(key=lambda issue: issue.row)
    logger.info(
        "csv_validated",
        source=str(path),
        rows=report.data_rows,
        issues=len(report.issues),
        time_column=report.time_column,
    )
    return report


def _check_cells(
    rows: dict[int, list[str]],
    columns: list[str],
    time_column: str,
    time_format: str | None,
    allow_text_fields: bool,
) -> list[ValidationIssue]:
    frame = pd.DataFrame(list(rows.values()), index=list(rows), columns=columns, dtype=object)
    schema = build_schema(columns, time_column, time_format, allow_text_fields)
    try:
        schema.validate(frame, lazy=True)
    except pa.errors.SchemaErrors as exc:
        return _issues_from_failures(exc.failure_cases, time_column)
    return []


def _issues_from_failures(failures: pd.DataFrame, time_column: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for failure in failures.to_dict("records"):
        line = failure.get("index")
        column = failure.get("column")
        value = failure.get("failure_case")
        if line is None or pd.isna(line):
            problem = f"schema check failed: {failure.get('check')}"
            issues.append(ValidationIssue(0, column, problem))
            continue
        if column == time_column:
            problem = f"unparseable timestamp {value!r}"
        else:
            problem = f"non-numeric value {value!r}"
        issues.append(ValidationIssue(int(line), column, problem))
    return issues
