"""Data models for DDI Miner."""

from ddiminer.models.evidence import (
    DrugRef,
    Evidence,
    EvidenceLevel,
    PairKeyBasis,
    Severity,
    SourceType,
)
from ddiminer.models.interaction import (
    CanonicalInteractionRecord,
    InvalidRecord,
    NormalizationResult,
    NormalizationSummary,
    ValidatedRecords,
)
from ddiminer.models.run import (
    DrugCoverage,
    ExtractionOptions,
    ExtractionReport,
    MiningConfig,
    MiningProgress,
    MiningRun,
    RunPhase,
    RunStats,
    RunStatus,
)

__all__ = [
    "DrugRef",
    "Evidence",
    "EvidenceLevel",
    "PairKeyBasis",
    "Severity",
    "SourceType",
    "CanonicalInteractionRecord",
    "InvalidRecord",
    "NormalizationResult",
    "NormalizationSummary",
    "ValidatedRecords",
    "DrugCoverage",
    "ExtractionOptions",
    "ExtractionReport",
    "MiningConfig",
    "MiningProgress",
    "MiningRun",
    "RunPhase",
    "RunStats",
    "RunStatus",
]
