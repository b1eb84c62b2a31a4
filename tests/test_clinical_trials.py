"""Tests for the ClinicalTrials.gov extractor and shared extractor helpers."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from ddiminer.api.rxnorm import ResolvedDrug
from ddiminer.errors import SourceUnavailableError
from ddiminer.extractors.base import EvidenceCollector, SourceExtractor, parse_partial_date
from ddiminer.extractors.clinical_trials import ClinicalTrialsExtractor
from ddiminer.models.evidence import EvidenceLevel, Severity, SourceType
from ddiminer.models.run import ExtractionOptions


@pytest.fixture
def extractor():
    return ClinicalTrialsExtractor(base_url="https://ct.test/api/v2/studies")


class TestParsePartialDate:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2024-03-15", datetime(2024, 3, 15, tzinfo=timezone.utc)),
            ("2024-03", datetime(2024, 3, 1, tzinfo=timezone.utc)),
            ("2024", datetime(2024, 1, 1, tzinfo=timezone.utc)),
            ("20230115", datetime(2023, 1, 15, tzinfo=timezone.utc)),
        ],
    )
    def test_formats(self, value, expected):
        assert parse_partial_date(value) == expected

    def test_invalid(self):
        assert parse_partial_date(None) is None
        assert parse_partial_date("unknown") is None
        assert parse_partial_date("2024-13-40") is None


class TestEvidenceCollector:
    """Tests for draft validation and per-source deduplication."""

    def _draft(self, severity="moderate"):
        return {
            "source_id": "NCT01234567",
            "mechanism": "CYP3A4 inhibition",
            "severity": severity,
            "evidence_level": EvidenceLevel.MEDIUM,
        }

    @pytest.mark.asyncio
    async def test_self_pair_rejected_and_counted(self, extractor):
        collector = EvidenceCollector(extractor, "doxorubicin", None)
        assert await collector.add("Doxorubicin", self._draft()) is None
        assert extractor.rejected_count == 1
        assert collector.results() == []

    @pytest.mark.asyncio
    async def test_most_severe_kept_per_source_and_partner(self, extractor):
        collector = EvidenceCollector(extractor, "doxorubicin", None)
        await collector.add("ketoconazole", self._draft("minor"))
        await collector.add("ketoconazole", self._draft("contraindicated"))
        await collector.add("ketoconazole", self._draft("moderate"))

        results = collector.results()
        assert len(results) == 1
        assert results[0].severity == Severity.MAJOR
        assert results[0].severity_term == "contraindicated"

    @pytest.mark.asyncio
    async def test_names_resolved_once(self, extractor):
        resolver = AsyncMock()
        resolver.resolve.side_effect = lambda name: ResolvedDrug(
            code={"doxorubicin": "3639", "ketoconazole": "6135"}[name.strip().lower()],
            canonical_name=name.strip().lower(),
        )
        collector = EvidenceCollector(extractor, "Doxorubicin", resolver)

        evidence = await collector.add("ketoconazole", self._draft())
        await collector.add("ketoconazole", {**self._draft(), "source_id": "NCT7"})

        assert evidence.pair_key() == "3639__6135"
        assert resolver.resolve.await_count == 2


class TestClinicalTrialsExtractor:
    """Tests for trial protocol mining."""

    def test_is_source_extractor(self, extractor):
        assert isinstance(extractor, SourceExtractor)
        assert extractor.source_type == SourceType.CLINICAL_TRIAL

    @pytest.mark.parametrize(
        "design,expected",
        [
            ({"studyType": "INTERVENTIONAL", "designInfo": {"allocation": "RANDOMIZED"}}, (EvidenceLevel.HIGH, "RCT")),
            ({"studyType": "INTERVENTIONAL", "designInfo": {"allocation": "NA"}}, (EvidenceLevel.MEDIUM, "interventional")),
            ({"studyType": "OBSERVATIONAL"}, (EvidenceLevel.LOW, "observational")),
            ({}, (EvidenceLevel.MEDIUM, "interventional")),
        ],
    )
    def test_evidence_level(self, design, expected):
        assert ClinicalTrialsExtractor.evidence_level(design) == expected

    @pytest.mark.asyncio
    async def test_extract_from_exclusion_criteria(self, extractor, sample_trial_study):
        with patch.object(
            extractor.http, "get_json", new=AsyncMock(return_value={"studies": [sample_trial_study]})
        ):
            evidence = await extractor.extract("doxorubicin", ExtractionOptions())

        by_partner = {e.drug_b.name: e for e in evidence}
        assert set(by_partner) == {"ketoconazole", "cisplatin"}

        keto = by_partner["ketoconazole"]
        assert keto.source_id == "NCT01234567"
        assert keto.drug_a.name == "doxorubicin"
        assert keto.severity == Severity.MAJOR
        assert keto.severity_term == "contraindicated"
        assert keto.mechanism == "CYP3A4 inhibition"
        assert keto.enzyme_pathways == ("CYP3A4",)
        assert keto.evidence_level == EvidenceLevel.HIGH
        assert keto.study_type == "RCT"
        assert keto.management == "Contraindicated"
        assert keto.evidence_context == "exclusion_criteria"
        assert keto.published_at == datetime(2024, 3, 15, tzinfo=timezone.utc)
        assert keto.source_url == "https://clinicaltrials.gov/study/NCT01234567"

        cis = by_partner["cisplatin"]
        assert cis.severity == Severity.MODERATE
        assert cis.mechanism == "Mechanism not specified"
        assert cis.management == "Monitor closely"

    @pytest.mark.asyncio
    async def test_adverse_event_sentences_mined(self, extractor):
        study = {
            "protocolSection": {
                "identificationModule": {"nctId": "NCT09999999"},
                "designModule": {"studyType": "OBSERVATIONAL"},
            },
            "resultsSection": {
                "adverseEventsModule": {
                    "description": "Two patients on concomitant warfarin had bleeding events. No other events.",
                }
            },
        }
        with patch.object(extractor.http, "get_json", new=AsyncMock(return_value={"studies": [study]})):
            evidence = await extractor.extract("doxorubicin", ExtractionOptions())

        assert len(evidence) == 1
        assert evidence[0].drug_b.name == "warfarin"
        assert evidence[0].evidence_context == "adverse_events"
        assert evidence[0].evidence_level == EvidenceLevel.LOW
        assert evidence[0].mechanism == "Increased bleeding risk"

    @pytest.mark.asyncio
    async def test_malformed_study_skipped(self, extractor, sample_trial_study):
        studies = [{"unexpected": True}, sample_trial_study]
        with patch.object(extractor.http, "get_json", new=AsyncMock(return_value={"studies": studies})):
            evidence = await extractor.extract("doxorubicin", ExtractionOptions())
        assert len(evidence) == 2

    @pytest.mark.asyncio
    async def test_search_follows_page_token(self, extractor):
        pages = [
            {"studies": [{"id": 1}, {"id": 2}], "nextPageToken": "abc"},
            {"studies": [{"id": 3}]},
        ]
        with patch.object(extractor.http, "get_json", new=AsyncMock(side_effect=pages)) as mock_get:
            studies = await extractor.search_studies(
                "doxorubicin", ExtractionOptions(max_results=3, include_completed_trials=False)
            )

        assert [s["id"] for s in studies] == [1, 2, 3]
        first, second = (call.kwargs["params"] for call in mock_get.await_args_list)
        assert first["query.intr"] == "doxorubicin"
        assert first["pageSize"] == 3
        assert "filter.overallStatus" in first
        assert second["pageToken"] == "abc"
        assert second["pageSize"] == 1

    @pytest.mark.asyncio
    async def test_no_results(self, extractor):
        with patch.object(extractor.http, "get_json", new=AsyncMock(return_value=None)):
            assert await extractor.extract("notadrug", ExtractionOptions()) == []

    @pytest.mark.asyncio
    async def test_unavailable_propagates(self, extractor):
        error = SourceUnavailableError("clinical_trial", "HTTP 503 after 3 attempt(s)")
        with patch.object(extractor.http, "get_json", new=AsyncMock(side_effect=error)):
            with pytest.raises(SourceUnavailableError):
                await extractor.extract("doxorubicin", ExtractionOptions())
