"""Evidence model: one claim about a drug-drug interaction from one source.

Evidence is immutable once built. Extractors construct it only through
Evidence.parse(), which folds severity synonyms, converts schema failures into
EvidenceValidationError and checks the remaining invariants.
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ddiminer.constants import (
    EVIDENCE_LEVEL_WEIGHTS,
    RECENCY_HORIZON_DAYS,
    RECENCY_MAX_POINTS,
    SOURCE_RELIABILITY_WEIGHTS,
)
from ddiminer.errors import EvidenceValidationError
from ddiminer.utils.vocabulary import canonical_severity

MAX_EXCERPT_LENGTH = 500


class SourceType(str, Enum):
    """External evidence sources."""

    CLINICAL_TRIAL = "clinical_trial"
    REGULATORY_LABEL = "regulatory_label"
    PUBLICATION = "publication"


class Severity(str, Enum):
    """Ordinal interaction severity: minor < moderate < major."""

    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


class EvidenceLevel(str, Enum):
    """Ordinal strength of the underlying study: low < medium < high."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


class PairKeyBasis(str, Enum):
    """What a pair key was built from."""

    CODE = "code"  # both drugs resolved to a standard code
    NAME = "name"  # neither resolved
    MIXED = "mixed"


_SEVERITY_RANK = {Severity.MINOR: 0, Severity.MODERATE: 1, Severity.MAJOR: 2}
_LEVEL_RANK = {EvidenceLevel.LOW: 0, EvidenceLevel.MEDIUM: 1, EvidenceLevel.HIGH: 2}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DrugRef(BaseModel):
    """A drug as named by a source, optionally resolved to a standard code."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Drug name as it appears in the source")
    code: str | None = Field(None, description="Resolved RXCUI")
    canonical_name: str | None = Field(None, description="Preferred name from the resolver")

    @property
    def key(self) -> str:
        """Pair-key component: the code when resolved, else the folded name."""
        if self.code:
            return self.code
        return self.name.strip().lower()


class Evidence(BaseModel):
    """A single piece of interaction evidence."""

    model_config = ConfigDict(frozen=True)

    source_type: SourceType
    source_id: str = Field(..., description="Source-native id (NCT id, label set id, PMID)")
    drug_a: DrugRef
    drug_b: DrugRef
    mechanism: str = Field(..., description="Free-text mechanism, canonicalized during normalization")
    severity: Severity
    severity_term: str | None = Field(None, description="Raw source severity term before folding")
    effect_description: str | None = None
    evidence_level: EvidenceLevel
    study_type: str | None = Field(None, description="e.g. RCT, observational, case_report, label")
    extracted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    published_at: datetime | None = Field(None, description="Source publication or label date")
    enzyme_pathways: tuple[str, ...] = Field(default_factory=tuple)
    management: str | None = None
    evidence_context: str | None = Field(
        None, description="Where in the source the claim was found (e.g. exclusion_criteria)"
    )
    source_title: str | None = None
    source_url: str | None = None
    raw_excerpt: str | None = None

    @field_validator("drug_a", "drug_b", mode="before")
    @classmethod
    def coerce_drug(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"name": v}
        return v

    @field_validator("severity", mode="before")
    @classmethod
    def fold_severity(cls, v: Any) -> Any:
        """Map source vocabulary (contraindicated, severe, mild, ...) onto the ordinal scale."""
        folded = canonical_severity(v)
        return folded if folded is not None else v

    @field_validator("extracted_at", "published_at")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @field_validator("raw_excerpt")
    @classmethod
    def truncate_excerpt(cls, v: str | None) -> str | None:
        if v is not None and len(v) > MAX_EXCERPT_LENGTH:
            return v[:MAX_EXCERPT_LENGTH]
        return v

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "Evidence":
        """Build validated evidence from a raw mapping.

        Raises:
            EvidenceValidationError: If the data fails schema validation or an invariant
        """
        payload = dict(data)
        raw_severity = payload.get("severity")
        if isinstance(raw_severity, str) and not payload.get("severity_term"):
            payload["severity_term"] = raw_severity

        try:
            evidence = cls.model_validate(payload)
        except ValidationError as e:
            fields = ", ".join(".".join(str(loc) for loc in err["loc"]) for err in e.errors())
            raise EvidenceValidationError(
                f"Invalid evidence {payload.get('source_type')}:{payload.get('source_id')} ({fields})"
            ) from e

        evidence.validate_invariants()
        return evidence

    def validate_invariants(self) -> None:
        """Check the invariants pydantic cannot express on its own.

        Raises:
            EvidenceValidationError: On identical drug names, non-enum severity or
                evidence level, or an empty source id
        """
        name_a = self.drug_a.name.strip().lower()
        name_b = self.drug_b.name.strip().lower()
        if not name_a or not name_b:
            raise EvidenceValidationError(f"Evidence {self.source_id!r} has an empty drug name")
        if name_a == name_b:
            raise EvidenceValidationError(
                f"Evidence {self.source_id!r} pairs {self.drug_a.name!r} with itself"
            )
        if self.drug_a.code and self.drug_a.code == self.drug_b.code:
            raise EvidenceValidationError(
                f"Evidence {self.source_id!r} pairs two names of the same drug ({self.drug_a.code})"
            )
        if not isinstance(self.severity, Severity):
            raise EvidenceValidationError(f"Unknown severity {self.severity!r}")
        if not isinstance(self.evidence_level, EvidenceLevel):
            raise EvidenceValidationError(f"Unknown evidence level {self.evidence_level!r}")
        if not isinstance(self.source_type, SourceType):
            raise EvidenceValidationError(f"Unknown source type {self.source_type!r}")
        if not self.source_id or not self.source_id.strip():
            raise EvidenceValidationError("Evidence source_id must be non-empty")

    def pair_key(self) -> str:
        """Order-independent key for the drug pair.

        e.g. doxorubicin (3639) + cisplatin (2555) -> "2555__3639"
        """
        return "__".join(sorted([self.drug_a.key, self.drug_b.key]))

    @property
    def pair_key_basis(self) -> PairKeyBasis:
        resolved = sum(1 for drug in (self.drug_a, self.drug_b) if drug.code)
        if resolved == 2:
            return PairKeyBasis.CODE
        if resolved == 0:
            return PairKeyBasis.NAME
        return PairKeyBasis.MIXED

    @property
    def evidence_id(self) -> str:
        return f"{self.source_type.value}:{self.source_id}#{self.pair_key()}"

    @property
    def observed_at(self) -> datetime:
        """Timestamp used for recency: the source date when known."""
        return self.published_at or self.extracted_at

    def evidence_score(self, as_of: datetime | None = None) -> float:
        """Deterministic 0-100 quality score.

        Evidence level weighs most, then source reliability, then recency
        (linear decay to zero over the recency horizon).

        Args:
            as_of: Reference time for recency. Defaults to this evidence's own
                extracted_at, so the score never depends on other evidence.
        """
        reference = _as_utc(as_of) or self.extracted_at
        age_days = max((reference - self.observed_at).total_seconds() / 86400.0, 0.0)
        recency = max(RECENCY_MAX_POINTS * (1.0 - age_days / RECENCY_HORIZON_DAYS), 0.0)

        score = (
            EVIDENCE_LEVEL_WEIGHTS[self.evidence_level.value]
            + SOURCE_RELIABILITY_WEIGHTS[self.source_type.value]
            + recency
        )
        return round(min(score, 100.0), 2)

    def conflicts_with(self, other: "Evidence") -> bool:
        """Whether two pieces of evidence about the same pair disagree sharply (major vs minor)."""
        if self.pair_key() != other.pair_key():
            return False
        return {self.severity, other.severity} == {Severity.MAJOR, Severity.MINOR}

    def to_persistable(self) -> dict[str, Any]:
        """Flat storage row."""
        return {
            "evidence_id": self.evidence_id,
            "pair_key": self.pair_key(),
            "pair_key_basis": self.pair_key_basis.value,
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "drug_a_name": self.drug_a.name,
            "drug_a_code": self.drug_a.code,
            "drug_b_name": self.drug_b.name,
            "drug_b_code": self.drug_b.code,
            "mechanism": self.mechanism,
            "severity": self.severity.value,
            "severity_term": self.severity_term,
            "effect_description": self.effect_description,
            "evidence_level": self.evidence_level.value,
            "study_type": self.study_type,
            "enzyme_pathways": list(self.enzyme_pathways),
            "management": self.management,
            "evidence_context": self.evidence_context,
            "source_title": self.source_title,
            "source_url": self.source_url,
            "raw_excerpt": self.raw_excerpt,
            "extracted_at": self.extracted_at.isoformat(),
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }
