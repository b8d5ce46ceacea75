"""Error taxonomy for the scan pipeline.

Adapter-level errors are recovered by the dispatcher and turned into a fatal
ScanResult for that scanner only. Lifecycle-level errors end the scan in
`failed` with the error message. CancellationRace is never surfaced to users.
"""


class ScanPipelineError(Exception):
    """Base class; carries a human-readable message and the underlying cause."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class AdapterParseError(ScanPipelineError):
    """Raw scanner output could not be parsed."""


class AdapterTimeoutError(ScanPipelineError):
    """External scanner exceeded its time budget."""


class ScannerNotInstalledError(ScanPipelineError):
    """Scanner binary not found on PATH."""


class QuorumFailure(ScanPipelineError):
    """Too many adapters failed for the scan's results to be trusted."""


class NormalizationError(ScanPipelineError):
    """A record violates a data-model invariant (adapter bug, not a data error)."""


class EnrichmentFailure(ScanPipelineError):
    """Enrichment service unreachable or returned unusable output."""


class PersistenceFailure(ScanPipelineError):
    """The repository could not read or write scan state."""


class CancellationRace(ScanPipelineError):
    """A result arrived after the scan was cancelled and was discarded."""


class InvalidTransitionError(ScanPipelineError):
    """Requested state transition is not allowed from the scan's current status."""


class ScanNotFoundError(ScanPipelineError):
    """No scan with the given id."""
