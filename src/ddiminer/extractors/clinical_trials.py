"""ClinicalTrials.gov extractor for trial-protocol interaction evidence.

ARCHITECTURE:
    Drug → ClinicalTrials.gov v2 /studies (query.intr, nextPageToken) → exclusion criteria + adverse events → Evidence

Trials exclude patients taking drugs that interact with the study drug
("Patients receiving strong CYP3A4 inhibitors such as ketoconazole are
excluded"). Those exclusions, plus adverse-event notes, are the evidence.

Key Design:
- Passages must contain a DDI keyword and name a second drug
- Severity from the exclusion rationale (prohibited → contraindicated, caution → moderate, ...)
- Evidence level from study design: randomized → high, other interventional → medium, observational → low
"""

import logging
from typing import Any

from ddiminer.api.http import SourceHTTPClient
from ddiminer.api.rxnorm import DrugResolver
from ddiminer.config import settings
from ddiminer.extractors.base import EvidenceCollector, parse_partial_date
from ddiminer.models.evidence import Evidence, EvidenceLevel, SourceType
from ddiminer.models.run import ExtractionOptions
from ddiminer.utils.text_mining import (
    contains_ddi_keyword,
    excerpt_around,
    extract_effect,
    extract_management,
    extract_mechanism,
    find_drug_mentions,
    severity_from_indicators,
    split_criteria_items,
    split_eligibility,
    split_sentences,
)
from ddiminer.utils.vocabulary import extract_pathways

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = "RECRUITING,NOT_YET_RECRUITING,ACTIVE_NOT_RECRUITING,ENROLLING_BY_INVITATION"


class ClinicalTrialsExtractor:
    """Extractor for ClinicalTrials.gov API v2.

    API Documentation: https://clinicaltrials.gov/data-api/api
    """

    source_type = SourceType.CLINICAL_TRIAL
    MAX_PAGE_SIZE = 100

    def __init__(
        self,
        resolver: DrugResolver | None = None,
        base_url: str | None = None,
        http: SourceHTTPClient | None = None,
    ) -> None:
        """Initialize the extractor.

        Args:
            resolver: Drug code resolver (names are used when None)
            base_url: Studies endpoint
            http: Transport to use (defaults to a throttled SourceHTTPClient)
        """
        self.resolver = resolver
        self.base_url = base_url or settings.clinical_trials_url
        self.http = http or SourceHTTPClient(
            self.source_type.value, min_interval=settings.clinical_trials_interval
        )
        self.rejected_count = 0

    async def __aenter__(self) -> "ClinicalTrialsExtractor":
        await self.http.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.http.__aexit__(exc_type, exc_val, exc_tb)

    async def search_studies(self, drug_name: str, options: ExtractionOptions) -> list[dict[str, Any]]:
        """Fetch up to options.max_results studies testing the drug, following nextPageToken."""
        studies: list[dict[str, Any]] = []
        page_token: str | None = None

        while len(studies) < options.max_results:
            params: dict[str, Any] = {
                "query.intr": drug_name,
                "pageSize": min(options.max_results - len(studies), self.MAX_PAGE_SIZE),
                "format": "json",
            }
            if not options.include_completed_trials:
                params["filter.overallStatus"] = ACTIVE_STATUSES
            if page_token:
                params["pageToken"] = page_token

            data = await self.http.get_json(self.base_url, params=params)
            if not data:
                break

            page = data.get("studies") or []
            studies.extend(page)
            page_token = data.get("nextPageToken")
            if not page or not page_token:
                break

        return studies[: options.max_results]

    async def extract(self, drug_name: str, options: ExtractionOptions) -> list[Evidence]:
        """Extract interaction evidence for a drug from trial protocols.

        Raises:
            SourceUnavailableError: If ClinicalTrials.gov stays unreachable
            RateLimitedError: If ClinicalTrials.gov keeps throttling
        """
        studies = await self.search_studies(drug_name, options)
        collector = EvidenceCollector(self, drug_name, self.resolver)

        for study in studies:
            try:
                await self._extract_study(study, collector)
            except (KeyError, TypeError, AttributeError) as e:
                logger.debug(f"Skipping malformed study record: {e}")

        evidence = collector.results()
        logger.info(f"ClinicalTrials.gov: {len(evidence)} evidence from {len(studies)} studies for {drug_name}")
        return evidence

    @staticmethod
    def evidence_level(design: dict[str, Any]) -> tuple[EvidenceLevel, str]:
        """Map study design to (evidence level, study type)."""
        study_type = (design.get("studyType") or "").upper()
        allocation = ((design.get("designInfo") or {}).get("allocation") or "").upper()

        if study_type == "OBSERVATIONAL":
            return EvidenceLevel.LOW, "observational"
        if allocation == "RANDOMIZED":
            return EvidenceLevel.HIGH, "RCT"
        return EvidenceLevel.MEDIUM, "interventional"

    @staticmethod
    def adverse_event_text(study: dict[str, Any]) -> str:
        module = (study.get("resultsSection") or {}).get("adverseEventsModule") or {}
        parts = [module.get("description") or ""]
        parts.extend(group.get("description") or "" for group in module.get("eventGroups") or [])
        return " ".join(part for part in parts if part)

    async def _extract_study(self, study: dict[str, Any], collector: EvidenceCollector) -> None:
        protocol = study["protocolSection"]
        identification = protocol.get("identificationModule") or {}
        nct_id = identification.get("nctId")
        if not nct_id:
            return

        status = protocol.get("statusModule") or {}
        published = parse_partial_date(
            (status.get("lastUpdatePostDateStruct") or {}).get("date")
            or (status.get("studyFirstPostDateStruct") or {}).get("date")
        )
        level, study_type = self.evidence_level(protocol.get("designModule") or {})

        passages: list[tuple[str, str]] = []
        eligibility = (protocol.get("eligibilityModule") or {}).get("eligibilityCriteria") or ""
        _, exclusion = split_eligibility(eligibility)
        passages.extend(("exclusion_criteria", item) for item in split_criteria_items(exclusion))
        passages.extend(("adverse_events", s) for s in split_sentences(self.adverse_event_text(study)))

        for context, passage in passages:
            if not contains_ddi_keyword(passage):
                continue
            for partner in find_drug_mentions(passage, exclude=collector.drug_name):
                await collector.add(partner, {
                    "source_id": nct_id,
                    "mechanism": extract_mechanism(passage),
                    "severity": severity_from_indicators(passage),
                    "effect_description": extract_effect(passage),
                    "evidence_level": level,
                    "study_type": study_type,
                    "published_at": published,
                    "enzyme_pathways": tuple(extract_pathways(passage)),
                    "management": extract_management(passage),
                    "evidence_context": context,
                    "source_title": identification.get("briefTitle"),
                    "source_url": f"https://clinicaltrials.gov/study/{nct_id}",
                    "raw_excerpt": excerpt_around(passage, partner),
                })
