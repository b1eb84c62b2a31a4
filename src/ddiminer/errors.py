"""Error taxonomy for the mining pipeline.

Extractor- and drug-level errors are absorbed by the orchestrator and recorded
on the run. Only finalize-time persistence failures fail a run.
"""


class DDIMinerError(Exception):
    """Base class for all DDI Miner errors."""

    pass


class EvidenceValidationError(DDIMinerError, ValueError):
    """Raised when an Evidence instance violates its invariants.

    Invalid evidence is dropped, logged and never persisted.
    """

    pass


class SourceError(DDIMinerError):
    """Base class for failures of a single evidence source."""

    def __init__(self, source_type: str, message: str) -> None:
        super().__init__(f"{source_type}: {message}")
        self.source_type = source_type
        self.message = message


class SourceUnavailableError(SourceError):
    """Raised when an upstream API stays unreachable after retries."""

    pass


class RateLimitedError(SourceError):
    """Raised when an upstream API keeps throttling requests.

    Kept distinct from SourceUnavailableError so callers can back off
    instead of treating the source as down.
    """

    def __init__(self, source_type: str, message: str, retry_after: float | None = None) -> None:
        super().__init__(source_type, message)
        self.retry_after = retry_after


class NormalizationConflictError(DDIMinerError):
    """Raised when a merge invariant cannot be satisfied for a drug pair."""

    def __init__(self, pair_key: str, message: str) -> None:
        super().__init__(f"{pair_key}: {message}")
        self.pair_key = pair_key


class OrchestrationFatalError(DDIMinerError):
    """Raised when run finalization fails (e.g. storage unreachable)."""

    pass
