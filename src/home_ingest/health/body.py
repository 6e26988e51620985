"""Body measurements: weight, body fat and basal metabolic rate."""

import sqlite3

from ..models import DataPoint
from .base import HealthMetricReader, HealthRow, table_columns

# Kilograms per unit
WEIGHT_UNITS = {
    "g": 0.001,
    "kg": 1.0,
    "lb": 0.45359237,
    "lbs": 0.45359237,
    "oz": 0.028349523125,
    "st": 6.35029318,
}


def to_kilograms(value: float, unit: str) -> float:
    """Convert a weight to kilograms.

    Raises:
        ValueError: If the unit code is unknown.
    """
    factor = WEIGHT_UNITS.get(unit.strip().lower())
    if factor is None:
        raise ValueError(f"unknown weight unit {unit!r}")
    return value * factor


class WeightReader(HealthMetricReader):
    """One point per weight record, field ``kilograms``.

    Health Connect stores grams. A ``unit`` column, when the export has one,
    overrides the default unit per row.
    """

    name = "weight"
    measurement = "weight"
    tables = ("weight_record_table",)

    def __init__(self, default_unit: str = "g") -> None:
        self._default_unit = default_unit

    def query(self, conn: sqlite3.Connection, tables: set[str]) -> str:
        app_column, app_join = self.app_join("w", tables)
        unit = "w.unit" if "unit" in table_columns(conn, "weight_record_table") else "NULL"
        return f"""
            SELECT w.time, w.weight, {unit} AS unit, {app_column}
            FROM weight_record_table w
            {app_join}
            ORDER BY w.time
        """

    def to_point(self, row: HealthRow, index: int) -> DataPoint:
        weight = self._number(row, "weight", index)
        unit = str(row.get("unit") or self._default_unit)
        try:
            kilograms = to_kilograms(weight, unit)
        except ValueError as e:
            raise self._malformed(str(e), index) from e
        if kilograms <= 0:
            raise self._malformed(f"non-positive weight {weight} {unit}", index)
        return self._point(row, index, row.get("time"), {"kilograms": round(kilograms, 3)})


class BodyFatReader(HealthMetricReader):
    name = "body_fat"
    measurement = "body_fat"
    tables = ("body_fat_record_table",)

    def query(self, conn: sqlite3.Connection, tables: set[str]) -> str:
        app_column, app_join = self.app_join("b", tables)
        return f"""
            SELECT b.time, b.percentage, {app_column}
            FROM body_fat_record_table b
            {app_join}
            ORDER BY b.time
        """

    def to_point(self, row: HealthRow, index: int) -> DataPoint:
        percent = self._number(row, "percentage", index)
        if not (0.0 <= percent <= 100.0):
            raise self._malformed(f"body fat {percent}% out of range", index)
        return self._point(row, index, row.get("time"), {"percent": percent})


class BasalMetabolicRateReader(HealthMetricReader):
    name = "basal_metabolic_rate"
    measurement = "basal_metabolic_rate"
    tables = ("basal_metabolic_rate_record_table",)

    def query(self, conn: sqlite3.Connection, tables: set[str]) -> str:
        app_column, app_join = self.app_join("b", tables)
        return f"""
            SELECT b.time, b.basal_metabolic_rate, {app_column}
            FROM basal_metabolic_rate_record_table b
            {app_join}
            ORDER BY b.time
        """

    def to_point(self, row: HealthRow, index: int) -> DataPoint:
        rate = self._number(row, "basal_metabolic_rate", index)
        return self._point(row, index, row.get("time"), {"kcal_per_day": rate})
