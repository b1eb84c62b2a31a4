"""Evidence normalization: reconcile per-source evidence into canonical records.

ARCHITECTURE:
    Evidence[] → group by pair key → dedup within source → merge → CanonicalInteractionRecord[]

Key Design:
- Pure: the same evidence always yields the same records (recency is measured
  from each evidence's own extracted_at unless as_of pins it)
- Conservative severity: the consensus is the most severe contributing severity
- Confidence never decreases when corroborating evidence is added (noisy-OR over
  per-evidence contributions plus a source-diversity term)
- Records are recomputed from the full evidence set of a pair, never patched
"""

import logging
import math
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime

from ddiminer.constants import (
    CONFIDENCE_CONTRIBUTION_CAP,
    CONFIDENCE_CORROBORATION_WEIGHT,
    CONFIDENCE_DIVERSITY_WEIGHT,
)
from ddiminer.errors import NormalizationConflictError
from ddiminer.models.evidence import DrugRef, Evidence, PairKeyBasis, Severity, SourceType
from ddiminer.models.interaction import (
    CanonicalInteractionRecord,
    InvalidRecord,
    NormalizationResult,
    NormalizationSummary,
    ValidatedRecords,
)
from ddiminer.utils.vocabulary import extract_pathways, split_mechanisms

logger = logging.getLogger(__name__)


def _strength(evidence: Evidence) -> tuple:
    """Sort key for picking one observation: most severe, then highest level, then newest."""
    return (
        evidence.severity.rank,
        evidence.evidence_level.rank,
        evidence.observed_at,
        evidence.extracted_at,
        evidence.mechanism,
    )


def _recency(evidence: Evidence) -> tuple:
    return (evidence.observed_at, evidence.extracted_at, evidence.evidence_id)


def confidence_score(scores: Iterable[float], source_type_count: int) -> float:
    """Combine per-evidence scores (0-100) into a 0-100 confidence.

    Each evidence contributes c = 0.6 * score / 100; corroboration is the
    noisy-OR 1 - prod(1 - c); diversity is the share of source types seen.
    """
    contributions = [CONFIDENCE_CONTRIBUTION_CAP * min(max(s, 0.0), 100.0) / 100.0 for s in scores]
    corroboration = 1.0 - math.prod(1.0 - c for c in contributions)
    diversity = min(source_type_count, len(SourceType)) / len(SourceType)
    confidence = 100.0 * (
        CONFIDENCE_CORROBORATION_WEIGHT * corroboration + CONFIDENCE_DIVERSITY_WEIGHT * diversity
    )
    return round(confidence, 1)


class EvidenceNormalizer:
    """Groups, de-duplicates and merges evidence into canonical interaction records."""

    def normalize(
        self, evidence_list: Iterable[Evidence], as_of: datetime | None = None
    ) -> list[CanonicalInteractionRecord]:
        """Normalize evidence into records sorted by pair key.

        Args:
            evidence_list: Evidence from any mix of sources and pairs
            as_of: Reference time for recency. Defaults to each evidence's extracted_at.
        """
        return self.normalize_detailed(evidence_list, as_of).records

    def normalize_detailed(
        self, evidence_list: Iterable[Evidence], as_of: datetime | None = None
    ) -> NormalizationResult:
        """Normalize evidence and report pairs excluded by merge conflicts."""
        evidence_list = list(evidence_list)
        if not evidence_list:
            return NormalizationResult()

        groups: dict[str, list[Evidence]] = defaultdict(list)
        for evidence in evidence_list:
            groups[evidence.pair_key()].append(evidence)

        result = NormalizationResult()
        for pair_key in sorted(groups):
            try:
                result.records.append(self._merge(pair_key, self.deduplicate(groups[pair_key]), as_of))
            except NormalizationConflictError as e:
                logger.warning(f"Excluding pair from output: {e}")
                result.conflicts.append(str(e))
        return result

    @staticmethod
    def deduplicate(evidence_list: Iterable[Evidence]) -> list[Evidence]:
        """Keep one observation per (source type, source id), newest first."""
        best: dict[tuple[SourceType, str], Evidence] = {}
        for evidence in evidence_list:
            key = (evidence.source_type, evidence.source_id)
            current = best.get(key)
            if current is None or _strength(evidence) > _strength(current):
                best[key] = evidence
        return sorted(best.values(), key=_recency, reverse=True)

    @staticmethod
    def _representative(drugs: list[DrugRef]) -> DrugRef:
        """Prefer a resolved reference, then a canonical name, then the alphabetically first name."""
        return sorted(
            drugs,
            key=lambda d: (d.code is None, d.canonical_name is None, d.name.strip().lower()),
        )[0]

    def _merge(
        self, pair_key: str, evidence_list: list[Evidence], as_of: datetime | None
    ) -> CanonicalInteractionRecord:
        by_component: dict[str, list[DrugRef]] = defaultdict(list)
        for evidence in evidence_list:
            for drug in (evidence.drug_a, evidence.drug_b):
                by_component[drug.key].append(drug)

        components = pair_key.split("__")
        if len(components) != 2 or components[0] == components[1]:
            raise NormalizationConflictError(pair_key, "pair references a single drug")
        if set(by_component) != set(components):
            raise NormalizationConflictError(
                pair_key, f"evidence names drugs outside the pair ({sorted(by_component)})"
            )

        drug_a = self._representative(by_component[components[0]])
        drug_b = self._representative(by_component[components[1]])
        resolved = sum(1 for drug in (drug_a, drug_b) if drug.code)
        basis = PairKeyBasis.CODE if resolved == 2 else PairKeyBasis.NAME if resolved == 0 else PairKeyBasis.MIXED

        strongest = max(evidence_list, key=_strength)
        severities = {e.severity for e in evidence_list}
        source_types = {e.source_type for e in evidence_list}
        scores = [e.evidence_score(as_of) for e in evidence_list]

        mechanisms: list[str] = []
        seen: set[str] = set()
        for evidence in evidence_list:
            for phrase in split_mechanisms(evidence.mechanism):
                if phrase.lower() not in seen:
                    seen.add(phrase.lower())
                    mechanisms.append(phrase)

        pathways: set[str] = set()
        for evidence in evidence_list:
            pathways.update(extract_pathways(" ".join(evidence.enzyme_pathways)))
        pathways.update(extract_pathways("; ".join(mechanisms)))

        management = next(
            (e.management for e in sorted(evidence_list, key=_strength, reverse=True) if e.management),
            None,
        )

        return CanonicalInteractionRecord(
            pair_key=pair_key,
            drug_a=drug_a,
            drug_b=drug_b,
            pair_key_basis=basis,
            consensus_severity=strongest.severity,
            confidence_score=confidence_score(scores, len(source_types)),
            mechanisms=mechanisms,
            enzyme_pathways=sorted(pathways),
            contributing_evidence_ids=[e.evidence_id for e in evidence_list],
            source_types_represented=source_types,
            evidence_count=len(evidence_list),
            mean_evidence_score=round(sum(scores) / len(scores), 2),
            severity_conflict={Severity.MAJOR, Severity.MINOR} <= severities,
            management=management,
            last_updated=max(e.extracted_at for e in evidence_list),
        )

    @staticmethod
    def validate_normalized_output(records: Iterable[CanonicalInteractionRecord]) -> ValidatedRecords:
        """Partition records into valid and invalid. Invalid records keep their reasons."""
        validated = ValidatedRecords()
        for record in records:
            reasons: list[str] = []
            if not record.contributing_evidence_ids:
                reasons.append("no contributing evidence")
            foreign = [
                eid for eid in record.contributing_evidence_ids
                if not eid.endswith(f"#{record.pair_key}")
            ]
            if foreign:
                reasons.append(f"evidence from another pair: {', '.join(foreign)}")
            if not 0.0 <= record.confidence_score <= 100.0:
                reasons.append(f"confidence {record.confidence_score} outside 0-100")
            if not record.source_types_represented:
                reasons.append("no source types represented")
            else:
                id_types = {eid.split(":", 1)[0] for eid in record.contributing_evidence_ids}
                declared = {s.value for s in record.source_types_represented}
                if id_types and id_types != declared:
                    reasons.append(f"source types {sorted(declared)} do not match evidence {sorted(id_types)}")
            if record.evidence_count != len(record.contributing_evidence_ids):
                reasons.append(
                    f"evidence_count {record.evidence_count} != {len(record.contributing_evidence_ids)} ids"
                )

            if reasons:
                validated.invalid.append(InvalidRecord(record=record, reasons=reasons))
            else:
                validated.valid.append(record)
        return validated

    @staticmethod
    def apply_quality_filters(
        records: Iterable[CanonicalInteractionRecord],
        min_confidence: float = 0.0,
        require_mechanism: bool = False,
    ) -> list[CanonicalInteractionRecord]:
        """Keep records meeting the confidence floor and, optionally, naming a mechanism."""
        return [
            record for record in records
            if record.confidence_score >= min_confidence
            and (record.mechanisms or not require_mechanism)
        ]

    @staticmethod
    def summarize(
        raw_count: int, records: list[CanonicalInteractionRecord], conflicts: int = 0
    ) -> NormalizationSummary:
        """Normalization report."""
        severity_distribution = {s.value: 0 for s in Severity}
        source_coverage = {s.value: 0 for s in SourceType}
        for record in records:
            severity_distribution[record.consensus_severity.value] += 1
            for source_type in record.source_types_represented:
                source_coverage[source_type.value] += 1

        return NormalizationSummary(
            raw_evidence_count=raw_count,
            canonical_record_count=len(records),
            severity_distribution=severity_distribution,
            source_coverage=source_coverage,
            multi_source_records=sum(1 for r in records if len(r.source_types_represented) > 1),
            severity_conflicts=sum(1 for r in records if r.severity_conflict),
            excluded_pairs=conflicts,
            average_confidence=(
                round(sum(r.confidence_score for r in records) / len(records), 1) if records else 0.0
            ),
        )
