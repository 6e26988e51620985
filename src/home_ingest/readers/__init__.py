"""Source readers and the factory that picks one for an import request."""

from ..gap_fill import GAP_FILL_METRIC
from ..models import ImportRequest, SourceKind
from .base import SourceReader
from .csv_reader import CsvReader
from .health_connect import HealthConnectReader


def create_reader(request: ImportRequest) -> SourceReader:
    """Build the reader matching ``request.kind``."""
    if request.kind is SourceKind.CSV:
        return CsvReader(
            request.source,
            measurement=request.measurement or "",
            header_rows=request.header_rows,
            time_column=request.time_column,
            time_format=request.time_format,
            allow_text_fields=request.allow_text_fields,
            delimiter=request.delimiter,
            encoding=request.encoding,
        )
    return HealthConnectReader(
        request.source,
        metrics=(GAP_FILL_METRIC,) if request.gap_fill_days is not None else request.metrics,
        weight_unit=request.weight_unit,
    )


__all__ = ["CsvReader", "HealthConnectReader", "SourceReader", "create_reader"]
