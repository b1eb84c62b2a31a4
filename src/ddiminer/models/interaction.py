"""Canonical interaction records produced by the normalizer."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ddiminer.models.evidence import DrugRef, PairKeyBasis, Severity, SourceType


class CanonicalInteractionRecord(BaseModel):
    """Reconciled view of all evidence for one drug pair.

    Records are always recomputed from the pair's full evidence set, never patched.
    """

    pair_key: str = Field(..., description="Order-independent drug pair key")
    drug_a: DrugRef
    drug_b: DrugRef
    pair_key_basis: PairKeyBasis = PairKeyBasis.NAME
    consensus_severity: Severity = Field(..., description="Most severe contributing severity")
    confidence_score: float = Field(..., description="Corroboration-weighted confidence (0-100)")
    mechanisms: list[str] = Field(default_factory=list)
    enzyme_pathways: list[str] = Field(default_factory=list)
    contributing_evidence_ids: list[str] = Field(
        default_factory=list, description="Evidence ids ordered newest first"
    )
    source_types_represented: set[SourceType] = Field(default_factory=set)
    evidence_count: int = 0
    mean_evidence_score: float = 0.0
    severity_conflict: bool = False
    management: str | None = None
    last_updated: datetime

    def to_persistable(self) -> dict[str, Any]:
        """Flat storage row."""
        return {
            "pair_key": self.pair_key,
            "pair_key_basis": self.pair_key_basis.value,
            "drug_a_name": self.drug_a.name,
            "drug_a_code": self.drug_a.code,
            "drug_b_name": self.drug_b.name,
            "drug_b_code": self.drug_b.code,
            "consensus_severity": self.consensus_severity.value,
            "confidence_score": self.confidence_score,
            "mechanisms": list(self.mechanisms),
            "enzyme_pathways": list(self.enzyme_pathways),
            "contributing_evidence_ids": list(self.contributing_evidence_ids),
            "source_types_represented": sorted(s.value for s in self.source_types_represented),
            "evidence_count": self.evidence_count,
            "mean_evidence_score": self.mean_evidence_score,
            "severity_conflict": self.severity_conflict,
            "management": self.management,
            "last_updated": self.last_updated.isoformat(),
        }

    def to_report(self) -> str:
        """One-line summary for console output."""
        sources = ", ".join(sorted(s.value for s in self.source_types_represented))
        line = (
            f"{self.drug_a.name} + {self.drug_b.name}: {self.consensus_severity.value.upper()} "
            f"(confidence {self.confidence_score:.1f}, {self.evidence_count} evidence from {sources})"
        )
        if self.mechanisms:
            line += f"\n    mechanisms: {'; '.join(self.mechanisms)}"
        if self.severity_conflict:
            line += "\n    note: sources disagree on severity"
        return line


class InvalidRecord(BaseModel):
    """A record that failed output validation, with the reasons."""

    record: CanonicalInteractionRecord
    reasons: list[str]


class ValidatedRecords(BaseModel):
    """Partition of normalizer output into valid and invalid records."""

    valid: list[CanonicalInteractionRecord] = Field(default_factory=list)
    invalid: list[InvalidRecord] = Field(default_factory=list)


class NormalizationResult(BaseModel):
    """Normalizer output including groups excluded by merge conflicts."""

    records: list[CanonicalInteractionRecord] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)


class NormalizationSummary(BaseModel):
    """Report of a normalization pass."""

    raw_evidence_count: int
    canonical_record_count: int
    severity_distribution: dict[str, int] = Field(default_factory=dict)
    source_coverage: dict[str, int] = Field(default_factory=dict)
    multi_source_records: int = 0
    severity_conflicts: int = 0
    excluded_pairs: int = 0
    average_confidence: float = 0.0
