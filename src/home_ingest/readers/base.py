"""Common interface for source readers."""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from types import TracebackType

from ..models import DataPoint, DedupMode, RawRecord


class SourceReader(ABC):
    """Lazily extracts records from one source and normalizes them.

    Readers are context managers: resources are acquired in ``open`` and
    released in ``close``. ``records`` may be called more than once; each call
    restarts from the beginning of the source.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def source_id(self) -> str:
        """Identifier used to key import state for this source."""
        return str(self._path.expanduser().resolve())

    def open(self) -> None:
        """Acquire resources and check the source is readable.

        Raises:
            SourceUnreadableError: If the source cannot be opened or decoded.
        """

    def close(self) -> None:
        """Release resources acquired by ``open``."""

    def __enter__(self) -> "SourceReader":
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @abstractmethod
    def records(self) -> Iterator[RawRecord]:
        """Yield raw records in source order."""

    @abstractmethod
    def normalize(self, record: RawRecord) -> DataPoint:
        """Turn a raw record into a point.

        Raises:
            MalformedRecordError: If the record cannot be represented.
        """

    @abstractmethod
    def dedup_mode(self, measurement: str) -> DedupMode:
        """Dedup policy used for points of ``measurement``."""
