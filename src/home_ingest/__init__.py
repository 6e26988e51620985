"""Personal time-series importer.

Reads CSV files and Health Connect SQLite exports, normalizes them into
points, and writes them to InfluxDB in batches. Import state remembers what
earlier runs wrote so re-running an import only sends new data.

Modules:
    config: Configuration management using pydantic-settings
    readers: CSV and Health Connect source readers
    health: Per-metric Health Connect table readers
    state: Persisted watermark and seen-set import state
    batch_writer: Batched, retried writes to a sink
    sinks: InfluxDB sink and the dry-run sink
    pipeline: The import run itself
    validation: Pandera checks for CSV sources

Example:
    Import a CSV file with a two-row header::

        $ home-ingest import-csv readings.csv -m home_data --header-rows 2

    Import heart rate and sleep from a Health Connect export::

        $ home-ingest import-health health_connect_export.db --metrics heart_rate,sleep
"""

__version__ = "0.1.0"

from .config import Settings
from .models import DataPoint, ImportReport, ImportRequest
from .pipeline import ImportPipeline, run_import

__all__ = [
    "DataPoint",
    "ImportPipeline",
    "ImportReport",
    "ImportRequest",
    "Settings",
    "run_import",
    "__version__",
]
