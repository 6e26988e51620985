"""Exception taxonomy for the import pipeline.

Fatal errors (``SourceUnreadableError``, ``StateCorruptError``,
``SinkFatalError``) stop a run. ``MalformedRecordError`` and the per-batch
sink errors are recorded in the report and the run continues.
"""

from typing import Any


class IngestError(Exception):
    """Base class for all importer errors.

    Carries optional diagnostic context (source, measurement, record index)
    so a failed run can be understood from its report alone.
    """

    fatal = False

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize the error.

        Args:
            message: Human readable description.
            **context: Diagnostic key/value pairs; ``None`` values are dropped.
        """
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


class SourceUnreadableError(IngestError):
    """The source file or database cannot be opened or decoded."""

    fatal = True


class MalformedRecordError(IngestError):
    """A single record could not be turned into a valid point."""


class StateCorruptError(IngestError):
    """The state file cannot be read or written, or contradicts the run."""

    fatal = True


class SinkError(IngestError):
    """Base class for errors raised by a sink."""


class SinkTransientError(SinkError):
    """A batch write failed in a way that may succeed on retry."""


class SinkRejectedError(SinkError):
    """The sink refused the batch; retrying the same payload cannot help."""


class SinkFatalError(SinkError):
    """The sink is unusable for the rest of the run (e.g. bad credentials)."""

    fatal = True
