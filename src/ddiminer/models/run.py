"""Mining run configuration, progress and bookkeeping models."""

import uuid
from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from ddiminer.models.evidence import Evidence, SourceType


class ExtractionOptions(BaseModel):
    """Options passed to every extractor call. Part of the cache key."""

    max_results: int = Field(50, ge=1, description="Maximum source records to inspect")
    include_completed_trials: bool = True
    publication_year_range: int = Field(10, ge=1, description="Literature window in years")


class MiningConfig(BaseModel):
    """Per-run options."""

    enable_clinical_trials: bool = True
    enable_regulatory_labels: bool = True
    enable_publications: bool = True
    max_results_per_source: int = Field(50, ge=1)
    concurrency_limit: int = Field(3, ge=1, description="Drugs processed in parallel")
    per_source_timeout: float = Field(120.0, gt=0, description="Seconds allowed per source call")
    min_confidence: float = Field(0.0, ge=0.0, le=100.0)
    require_mechanism: bool = False
    include_completed_trials: bool = True
    publication_year_range: int = Field(10, ge=1)

    def enabled_sources(self) -> list[SourceType]:
        sources = []
        if self.enable_clinical_trials:
            sources.append(SourceType.CLINICAL_TRIAL)
        if self.enable_regulatory_labels:
            sources.append(SourceType.REGULATORY_LABEL)
        if self.enable_publications:
            sources.append(SourceType.PUBLICATION)
        return sources

    def extraction_options(self) -> ExtractionOptions:
        return ExtractionOptions(
            max_results=self.max_results_per_source,
            include_completed_trials=self.include_completed_trials,
            publication_year_range=self.publication_year_range,
        )


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunPhase(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    NORMALIZING = "normalizing"
    PERSISTING = "persisting"
    DONE = "done"


class MiningProgress(BaseModel):
    phase: RunPhase = RunPhase.PENDING
    drugs_completed: int = 0
    drugs_total: int = 0


class RunStats(BaseModel):
    """Counters accumulated over a run."""

    drugs_processed: int = 0
    drugs_failed: int = 0
    evidence_extracted: int = 0
    evidence_rejected: int = 0
    records_added: int = 0
    records_updated: int = 0
    records_invalid: int = 0
    records_filtered: int = 0
    error_count: int = 0
    source_errors: dict[str, int] = Field(default_factory=dict)
    rate_limited: dict[str, int] = Field(default_factory=dict)


class DrugCoverage(BaseModel):
    drug: str
    evidence_count: int


class ExtractionReport(BaseModel):
    """Extraction yield of one run: evidence per source, drug coverage and success rate."""

    drugs_processed: int = 0
    drugs_failed: int = 0
    total_evidence: int = 0
    average_evidence_per_drug: float = 0.0
    success_rate: float = Field(0.0, description="Percent of processed drugs with at least one source answering")
    evidence_by_source: dict[str, int] = Field(default_factory=dict)
    drugs_with_evidence: int = 0
    top_drugs: list[DrugCoverage] = Field(default_factory=list)

    @classmethod
    def build(
        cls, evidence: Iterable[Evidence], drugs_processed: int, drugs_failed: int, top_n: int = 10
    ) -> "ExtractionReport":
        evidence = list(evidence)
        by_source = {s.value: 0 for s in SourceType}
        coverage: Counter[str] = Counter()
        for entry in evidence:
            by_source[entry.source_type.value] += 1
            coverage[entry.drug_a.name.strip().lower()] += 1
            coverage[entry.drug_b.name.strip().lower()] += 1

        # Most evidence first, ties alphabetical
        ranked = sorted(coverage.items(), key=lambda item: (-item[1], item[0]))[:top_n]
        return cls(
            drugs_processed=drugs_processed,
            drugs_failed=drugs_failed,
            total_evidence=len(evidence),
            average_evidence_per_drug=round(len(evidence) / drugs_processed, 1) if drugs_processed else 0.0,
            success_rate=(
                round(100.0 * (drugs_processed - drugs_failed) / drugs_processed, 1) if drugs_processed else 0.0
            ),
            evidence_by_source=by_source,
            drugs_with_evidence=len(coverage),
            top_drugs=[DrugCoverage(drug=drug, evidence_count=count) for drug, count in ranked],
        )

    def to_report(self) -> str:
        sources = ", ".join(f"{source} {count}" for source, count in self.evidence_by_source.items())
        report = (
            f"Extraction: {self.total_evidence} evidence ({sources}) | "
            f"success rate {self.success_rate:.1f}% | "
            f"{self.drugs_with_evidence} drugs with evidence\n"
        )
        if self.top_drugs:
            top = ", ".join(f"{d.drug} ({d.evidence_count})" for d in self.top_drugs[:5])
            report += f"Top drugs: {top}\n"
        return report


class MiningRun(BaseModel):
    """One batch mining execution.

    Created at start, mutated during the run, finalized and persisted once.
    """

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.RUNNING
    drugs_requested: list[str] = Field(default_factory=list)
    config: MiningConfig = Field(default_factory=MiningConfig)
    stats: RunStats = Field(default_factory=RunStats)
    errors: list[str] = Field(default_factory=list)
    progress: MiningProgress = Field(default_factory=MiningProgress)
    cancelled: bool = False
    extraction_report: ExtractionReport | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    def add_error(self, message: str) -> None:
        """Record a non-fatal error."""
        self.errors.append(message)
        self.stats.error_count += 1

    def record_source_error(self, source_type: SourceType, message: str, rate_limited: bool = False) -> None:
        key = source_type.value
        self.stats.source_errors[key] = self.stats.source_errors.get(key, 0) + 1
        if rate_limited:
            self.stats.rate_limited[key] = self.stats.rate_limited.get(key, 0) + 1
        self.add_error(message)

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_report(self) -> str:
        """Simple run report."""
        report = f"\nRun {self.run_id}: {self.status.value}"
        if self.cancelled:
            report += " (cancelled)"
        if self.duration_seconds is not None:
            report += f" in {self.duration_seconds:.1f}s"
        report += "\n"
        report += (
            f"Drugs: {self.stats.drugs_processed}/{len(self.drugs_requested)} | "
            f"Evidence: {self.stats.evidence_extracted} "
            f"(rejected {self.stats.evidence_rejected}) | "
            f"Records: +{self.stats.records_added} ~{self.stats.records_updated} "
            f"(invalid {self.stats.records_invalid})\n"
        )
        if self.extraction_report is not None:
            report += self.extraction_report.to_report()
        if self.errors:
            report += f"Errors ({len(self.errors)}):\n"
            for error in self.errors[:10]:
                report += f"  - {error}\n"
            if len(self.errors) > 10:
                report += f"  ... and {len(self.errors) - 10} more\n"
        return report
