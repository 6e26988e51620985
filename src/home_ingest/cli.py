"""Command line interface: import CSV files and Health Connect exports."""

import argparse
import asyncio
import json
import sys
import tomllib
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from .config import DEFAULT_CONFIG_FILE, VALID_LOG_LEVELS, Settings, write_config_template
from .errors import SourceUnreadableError
from .health import DEFAULT_METRICS, available_metrics
from .logging import setup_logging
from .models import ImportReport, ImportRequest, SourceKind, ValidationReport
from .pipeline import ImportPipeline
from .validation import validate_csv

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_FATAL = 2


def _add_csv_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--header-rows",
        type=int,
        default=None,
        help="Number of stacked header rows (default: from config, 1)",
    )
    parser.add_argument("--time-column", help="Name of the timestamp column")
    parser.add_argument("--time-format", help="strptime format of the timestamp column")
    parser.add_argument(
        "--allow-text",
        action="store_true",
        help="Keep non-numeric cells as string fields instead of rejecting the row",
    )
    parser.add_argument("--delimiter", default=",", help="Field delimiter (default: ,)")
    parser.add_argument("--encoding", default="utf-8", help="File encoding (default: utf-8)")


def _add_import_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--state-file", type=Path, help="Import state file")
    parser.add_argument("--batch-size", type=int, help="Points per write")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Read and filter without writing to InfluxDB or updating state",
    )
    parser.add_argument(
        "--force-all",
        action="store_true",
        help="Import every record, ignoring what earlier runs imported",
    )
    parser.add_argument(
        "--no-checkpoint",
        action="store_true",
        help="Only save state at the end of the run instead of after every batch",
    )
    parser.add_argument("--url", help="InfluxDB URL")
    parser.add_argument("--org", help="InfluxDB organization")
    parser.add_argument("--bucket", help="InfluxDB bucket")
    parser.add_argument("--token", help="InfluxDB API token")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="home-ingest",
        description="Import CSV files and Health Connect exports into InfluxDB",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"TOML config file (default: {DEFAULT_CONFIG_FILE} if present)",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=sorted(VALID_LOG_LEVELS),
        help="Override the configured log level",
    )
    parser.add_argument(
        "--log-format", choices=["json", "console"], help="Override the configured log format"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    csv_parser = subparsers.add_parser("import-csv", help="Import a CSV file")
    csv_parser.add_argument("source", type=Path, help="CSV file")
    csv_parser.add_argument(
        "-m", "--measurement", required=True, help="Measurement name in InfluxDB"
    )
    _add_csv_options(csv_parser)
    _add_import_options(csv_parser)

    health_parser = subparsers.add_parser(
        "import-health", help="Import a Health Connect SQLite export"
    )
    health_parser.add_argument("source", type=Path, help="Health Connect .db file")
    health_parser.add_argument(
        "--metrics",
        default="",
        help=(
            f"Comma separated metrics (default: {','.join(DEFAULT_METRICS)}; "
            f"available: {','.join(available_metrics())})"
        ),
    )
    health_parser.add_argument(
        "--weight-unit", help="Unit of weight rows without a unit column (default: g)"
    )
    health_parser.add_argument(
        "--gap-fill-heart-rate",
        type=int,
        metavar="DAYS",
        help=(
            "Import only heart rate samples from the last DAYS days that InfluxDB "
            "does not hold yet; the state file is not used"
        ),
    )
    _add_import_options(health_parser)

    validate_parser = subparsers.add_parser(
        "validate-csv", help="Check a CSV file without importing it"
    )
    validate_parser.add_argument("source", type=Path, help="CSV file")
    _add_csv_options(validate_parser)
    validate_parser.add_argument("--json", action="store_true", help="Print issues as JSON")

    init_parser = subparsers.add_parser("init", help="Write a configuration template")
    init_parser.add_argument(
        "path",
        type=Path,
        nargs="?",
        default=DEFAULT_CONFIG_FILE,
        help=f"Destination (default: {DEFAULT_CONFIG_FILE})",
    )
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def build_request(args: argparse.Namespace, settings: Settings) -> ImportRequest:
    """Merge config settings and command line flags into an ``ImportRequest``.

    Raises:
        pydantic.ValidationError: If the combined parameters are invalid.
    """
    influx = settings.influxdb
    importer = settings.importer
    kind = SourceKind.CSV if args.command == "import-csv" else SourceKind.HEALTH
    default_state = (
        importer.csv_state_file if kind is SourceKind.CSV else importer.health_state_file
    )

    params: dict[str, Any] = {
        "source": args.source,
        "kind": kind,
        "state_file": args.state_file or default_state,
        "url": args.url or influx.url,
        "org": args.org or influx.org,
        "bucket": args.bucket or influx.bucket,
        "token": args.token or influx.token,
        "timeout_ms": influx.timeout_ms,
        "batch_size": args.batch_size or importer.batch_size,
        "max_retries": importer.max_retries,
        "retry_delay": importer.retry_delay,
        "dry_run": args.dry_run,
        "force_all": args.force_all,
        "checkpoint_every_batch": not args.no_checkpoint,
    }
    if kind is SourceKind.CSV:
        params.update(
            measurement=args.measurement,
            header_rows=args.header_rows or importer.header_rows,
            time_column=args.time_column,
            time_format=args.time_format or importer.time_format,
            allow_text_fields=args.allow_text,
            delimiter=args.delimiter,
            encoding=args.encoding,
        )
    else:
        params.update(
            metrics=args.metrics,
            weight_unit=args.weight_unit or importer.weight_unit,
            gap_fill_days=args.gap_fill_heart_rate,
        )
    return ImportRequest(**params)


def print_report(report: ImportReport, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
        return

    title = "Dry run" if report.dry_run else "Import"
    print(f"{title} of {report.source}: {report.final_state.value}")
    print(f"  Read:               {report.read}")
    print(f"  Written:            {report.written} ({report.batches_written} batches)")
    print(f"  Skipped duplicates: {report.skipped_duplicates}")
    print(f"  Malformed:          {report.malformed}")
    if report.outside_window:
        print(f"  Outside window:     {report.outside_window}")
    print(f"  Failed:             {report.failed} ({report.batches_failed} batches)")
    print(f"  Elapsed:            {report.elapsed_seconds:.2f}s")
    if report.errors:
        print(f"\n{len(report.errors)} error(s):")
        for error in report.errors[:20]:
            print(f"  {error.describe()}")
        if len(report.errors) > 20:
            print(f"  ... and {len(report.errors) - 20} more")
    if report.fatal_error:
        print(f"\nAborted: {report.fatal_error}", file=sys.stderr)


def print_validation(report: ValidationReport, as_json: bool = False) -> None:
    if as_json:
        output = {
            "valid": report.valid,
            "data_rows": report.data_rows,
            "columns": report.columns,
            "time_column": report.time_column,
            "issues": [issue._asdict() for issue in report.issues],
        }
        print(json.dumps(output, indent=2))
        return

    print(f"Header rows: {report.header_rows}")
    print(f"Data rows:   {report.data_rows}")
    print(f"Columns:     {', '.join(report.columns)}")
    print(f"Time column: {report.time_column or '-'}")
    if report.valid:
        print("\nCSV is valid")
        return
    print(f"\nFound {len(report.issues)} issue(s):")
    for issue in report.issues:
        where = f"line {issue.row}" + (f", column {issue.column!r}" if issue.column else "")
        print(f"  {where}: {issue.problem}")


async def _run_import(request: ImportRequest) -> ImportReport:
    return await ImportPipeline(request).run()


def _import(args: argparse.Namespace, settings: Settings) -> int:
    try:
        request = build_request(args, settings)
    except ValidationError as e:
        for error in e.errors():
            print(f"Error: {error['msg']}", file=sys.stderr)
        return EXIT_FATAL

    report = asyncio.run(_run_import(request))
    print_report(report, as_json=args.json)
    return report.exit_code


def _validate(args: argparse.Namespace, settings: Settings) -> int:
    try:
        report = validate_csv(
            args.source,
            header_rows=args.header_rows or settings.importer.header_rows,
            time_column=args.time_column,
            time_format=args.time_format or settings.importer.time_format,
            allow_text_fields=args.allow_text,
            delimiter=args.delimiter,
            encoding=args.encoding,
        )
    except SourceUnreadableError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    print_validation(report, as_json=args.json)
    return EXIT_OK if report.valid else EXIT_ERRORS


def _init(args: argparse.Namespace) -> int:
    try:
        path = write_config_template(args.path, overwrite=args.force)
    except FileExistsError as e:
        print(f"Error: {e} (use --force to replace it)", file=sys.stderr)
        return EXIT_ERRORS
    print(f"Wrote {path}")
    return EXIT_OK


def run(argv: Sequence[str] | None = None) -> int:
    """Parse arguments and execute a command.

    Returns:
        Process exit code: 0 success, 1 record or validation errors, 2 fatal.
    """
    args = build_parser().parse_args(argv)

    if args.command == "init":
        return _init(args)

    try:
        settings = Settings.load(args.config)
    except (FileNotFoundError, tomllib.TOMLDecodeError, ValidationError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_FATAL

    if args.log_level or args.log_format:
        overrides = {
            key: value
            for key, value in (("log_level", args.log_level), ("log_format", args.log_format))
            if value
        }
        settings.app = settings.app.model_copy(update=overrides)
    setup_logging(settings.app)
    logger.debug("command_started", command=args.command)

    if args.command == "validate-csv":
        return _validate(args, settings)
    return _import(args, settings)


def main() -> None:
    """CLI entry point.

    Usage:
        home-ingest import-csv readings.csv -m home_data [--header-rows 2] [--dry-run]
        home-ingest import-health export.db [--metrics heart_rate,sleep]
        home-ingest import-health export.db --gap-fill-heart-rate 7
        home-ingest validate-csv readings.csv
        home-ingest init
    """
    sys.exit(run())
