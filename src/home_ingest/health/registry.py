"""Registry of selectable Health Connect metrics."""

from collections.abc import Iterable

from .activity import ExerciseSessionReader, StepsReader, TotalCaloriesReader
from .base import HealthMetricReader
from .body import BasalMetabolicRateReader, BodyFatReader, WeightReader
from .heart import HeartRateReader
from .sleep import SleepStageReader

# Metrics read when none are requested, in read order
DEFAULT_METRICS = ("heart_rate", "steps", "sleep", "weight")

_METRICS: dict[str, type[HealthMetricReader]] = {
    "heart_rate": HeartRateReader,
    "steps": StepsReader,
    "sleep": SleepStageReader,
    "weight": WeightReader,
    "body_fat": BodyFatReader,
    "basal_metabolic_rate": BasalMetabolicRateReader,
    "total_calories": TotalCaloriesReader,
    "exercise_session": ExerciseSessionReader,
}


def available_metrics() -> list[str]:
    """Names accepted by ``create_metric_readers``."""
    return list(_METRICS)


def create_metric_readers(
    names: Iterable[str] = (), weight_unit: str = "g"
) -> list[HealthMetricReader]:
    """Instantiate readers for the requested metrics.

    Args:
        names: Metric names; empty selects ``DEFAULT_METRICS``.
        weight_unit: Unit assumed for weight rows without a unit column.

    Raises:
        ValueError: If a name is not a known metric.
    """
    selected = list(dict.fromkeys(names)) or list(DEFAULT_METRICS)
    readers: list[HealthMetricReader] = []
    for name in selected:
        cls = _METRICS.get(name)
        if cls is None:
            raise ValueError(f"Unknown health metric: {name}")
        readers.append(WeightReader(weight_unit) if cls is WeightReader else cls())
    return readers
