"""Tests for the mining orchestrator."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from ddiminer.cache import SingleFlightCache
from ddiminer.engine import MiningOrchestrator
from ddiminer.errors import RateLimitedError, SourceUnavailableError
from ddiminer.models.evidence import SourceType
from ddiminer.models.run import MiningConfig, RunStatus
from ddiminer.storage import InMemoryRepository
from ddiminer.utils.logging_config import RunEventLogger


class FakeExtractor:
    """In-memory extractor with scripted outcomes per call."""

    def __init__(self, source_type, evidence=None, errors=None, gate=None, started=None, rejected=0):
        self.source_type = source_type
        self.rejected_count = 0
        self.calls = []
        self._evidence = evidence or {}
        self._errors = list(errors or [])
        self._gate = gate
        self._started = started
        self._rejected = rejected

    async def extract(self, drug_name, options):
        self.calls.append(drug_name)
        if self._started is not None:
            self._started.set()
        if self._gate is not None and drug_name in self._gate:
            await self._gate[drug_name].wait()
        await asyncio.sleep(0.01)
        self.rejected_count += self._rejected
        if self._errors:
            error = self._errors.pop(0)
            if error is not None:
                raise error
        return list(self._evidence.get(drug_name, []))


@pytest.fixture
def pair_evidence(make_evidence):
    """Doxorubicin/cisplatin evidence keyed by source type."""
    return {
        SourceType.CLINICAL_TRIAL: [make_evidence()],
        SourceType.REGULATORY_LABEL: [
            make_evidence(
                source_type="regulatory_label",
                source_id="a1b2c3d4",
                severity="contraindicated",
                evidence_level="high",
                mechanism="CYP3A4 inhibition",
            )
        ],
        SourceType.PUBLICATION: [
            make_evidence(source_type="publication", source_id="31111111", severity="severe", evidence_level="high")
        ],
    }


def make_extractors(pair_evidence, **overrides):
    extractors = []
    for source_type in SourceType:
        options = {"evidence": {"doxorubicin": pair_evidence[source_type]}}
        options.update(overrides.get(source_type, {}))
        extractors.append(FakeExtractor(source_type, **options))
    return extractors


def make_orchestrator(extractors, **kwargs):
    options = {
        "repository": InMemoryRepository(),
        "cache": SingleFlightCache(ttl=60),
        "run_logger": RunEventLogger(enable_file_logging=False),
    }
    options.update(kwargs)
    return MiningOrchestrator(extractors=extractors, **options)


class TestMiningRun:
    """Tests for end-to-end runs."""

    @pytest.mark.asyncio
    async def test_three_sources_merge_into_one_record(self, pair_evidence):
        orchestrator = make_orchestrator(make_extractors(pair_evidence))

        async with orchestrator:
            records = await orchestrator.mine_for_drug("doxorubicin")

        assert len(records) == 1
        record = records[0]
        assert record.pair_key == "2555__3639"
        assert record.source_types_represented == set(SourceType)
        assert record.evidence_count == 3
        assert record.consensus_severity.value == "major"

        run = orchestrator.last_run
        assert run.status == RunStatus.COMPLETED
        assert run.errors == []
        assert run.stats.drugs_processed == 1
        assert run.stats.evidence_extracted == 3
        assert run.stats.records_added == 1
        assert orchestrator.repository.records["2555__3639"]["evidence_count"] == 3
        assert run.run_id in orchestrator.repository.runs

        report = run.extraction_report
        assert report.evidence_by_source == {"clinical_trial": 1, "regulatory_label": 1, "publication": 1}
        assert report.success_rate == 100.0
        assert [(d.drug, d.evidence_count) for d in report.top_drugs] == [("cisplatin", 3), ("doxorubicin", 3)]

    @pytest.mark.asyncio
    async def test_rerun_updates_nothing(self, pair_evidence):
        orchestrator = make_orchestrator(make_extractors(pair_evidence))
        await orchestrator.mine_for_drug("doxorubicin")
        run = await orchestrator.mine_for_drug_list(["doxorubicin"])

        assert run.stats.records_added == 0
        assert run.stats.records_updated == 0

    @pytest.mark.asyncio
    async def test_one_unavailable_source_is_one_error(self, pair_evidence):
        error = SourceUnavailableError("publication", "HTTP 503 after 3 attempt(s)")
        extractors = make_extractors(pair_evidence, **{SourceType.PUBLICATION: {"errors": [error]}})
        orchestrator = make_orchestrator(extractors)

        run = await orchestrator.mine_for_drug_list(["doxorubicin"])

        assert run.status == RunStatus.COMPLETED
        assert run.errors == ["doxorubicin: publication unavailable (HTTP 503 after 3 attempt(s))"]
        assert run.stats.source_errors == {"publication": 1}
        assert orchestrator.last_records[0].source_types_represented == {
            SourceType.CLINICAL_TRIAL,
            SourceType.REGULATORY_LABEL,
        }

    @pytest.mark.asyncio
    async def test_all_sources_failing_records_drug_failure(self, pair_evidence):
        overrides = {
            source_type: {"errors": [SourceUnavailableError(source_type.value, "down")]}
            for source_type in SourceType
        }
        orchestrator = make_orchestrator(make_extractors(pair_evidence, **overrides))

        run = await orchestrator.mine_for_drug_list(["doxorubicin"])

        assert run.status == RunStatus.COMPLETED
        assert len(run.errors) == 4
        assert run.errors[-1] == "doxorubicin: no source succeeded (all 3 source(s) failed)"
        assert orchestrator.last_records == []
        assert run.stats.drugs_failed == 1
        assert run.extraction_report.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_unexpected_extractor_error_is_contained(self, pair_evidence):
        extractors = make_extractors(pair_evidence, **{SourceType.CLINICAL_TRIAL: {"errors": [KeyError("nctId")]}})
        run = await make_orchestrator(extractors).mine_for_drug_list(["doxorubicin"])

        assert run.status == RunStatus.COMPLETED
        assert run.errors == ["doxorubicin: clinical_trial failed (KeyError: 'nctId')"]

    @pytest.mark.asyncio
    async def test_source_timeout(self, pair_evidence):
        gate = {"doxorubicin": asyncio.Event()}
        extractors = make_extractors(pair_evidence, **{SourceType.REGULATORY_LABEL: {"gate": gate}})
        orchestrator = make_orchestrator(extractors)

        run = await orchestrator.mine_for_drug_list(["doxorubicin"], MiningConfig(per_source_timeout=0.05))
        orchestrator.cache.cancel_in_flight()

        assert run.errors == ["doxorubicin: regulatory_label timed out after 0.05s"]
        assert orchestrator.last_records[0].evidence_count == 2

    @pytest.mark.asyncio
    async def test_drug_names_deduplicated(self, pair_evidence):
        orchestrator = make_orchestrator(make_extractors(pair_evidence))
        run = await orchestrator.mine_for_drug_list(["Doxorubicin", " doxorubicin ", ""])

        assert run.drugs_requested == ["Doxorubicin"]
        assert orchestrator.extractors[SourceType.PUBLICATION].calls == ["Doxorubicin"]

    @pytest.mark.asyncio
    async def test_disabled_sources_not_queried(self, pair_evidence):
        extractors = make_extractors(pair_evidence)
        orchestrator = make_orchestrator(extractors)
        config = MiningConfig(enable_clinical_trials=False, enable_publications=False)

        await orchestrator.mine_for_drug_list(["doxorubicin"], config)

        assert [len(e.calls) for e in extractors] == [0, 1, 0]
        assert orchestrator.last_records[0].source_types_represented == {SourceType.REGULATORY_LABEL}

    @pytest.mark.asyncio
    async def test_no_sources_enabled(self, pair_evidence):
        orchestrator = make_orchestrator(make_extractors(pair_evidence))
        config = MiningConfig(enable_clinical_trials=False, enable_regulatory_labels=False, enable_publications=False)

        run = await orchestrator.mine_for_drug_list(["doxorubicin"], config)

        assert run.status == RunStatus.COMPLETED
        assert run.errors == ["No sources enabled"]
        assert orchestrator.last_records == []

    @pytest.mark.asyncio
    async def test_quality_filters_applied(self, pair_evidence):
        orchestrator = make_orchestrator(make_extractors(pair_evidence))
        run = await orchestrator.mine_for_drug_list(["doxorubicin"], MiningConfig(min_confidence=99.0))

        assert orchestrator.last_records == []
        assert run.stats.records_filtered == 1

    @pytest.mark.asyncio
    async def test_rejected_evidence_counted(self, pair_evidence):
        extractors = make_extractors(pair_evidence, **{SourceType.PUBLICATION: {"rejected": 2}})
        run = await make_orchestrator(extractors).mine_for_drug_list(["doxorubicin"])
        assert run.stats.evidence_rejected == 2

    @pytest.mark.asyncio
    async def test_finalize_failure_fails_run(self, pair_evidence):
        repository = MagicMock()
        repository.upsert_records = AsyncMock(side_effect=OSError("disk full"))
        repository.save_run = AsyncMock()
        orchestrator = make_orchestrator(make_extractors(pair_evidence), repository=repository)

        run = await orchestrator.mine_for_drug_list(["doxorubicin"])

        assert run.status == RunStatus.FAILED
        assert run.completed_at is not None
        assert run.errors[-1].startswith(f"Persisting run {run.run_id} failed: disk full")
        repository.save_run.assert_not_awaited()


class TestConcurrency:
    """Tests for caching, cooldowns and cancellation."""

    @pytest.mark.asyncio
    async def test_concurrent_runs_share_extractor_calls(self, pair_evidence):
        extractors = make_extractors(pair_evidence)
        cache = SingleFlightCache(ttl=60)
        first = make_orchestrator(extractors, cache=cache)
        second = make_orchestrator(extractors, cache=cache)

        await asyncio.gather(first.mine_for_drug("doxorubicin"), second.mine_for_drug("doxorubicin"))
        await first.mine_for_drug("doxorubicin")

        assert [len(e.calls) for e in extractors] == [1, 1, 1]
        stats = cache.stats()
        assert stats.misses == 3
        assert stats.coalesced == 3
        assert stats.hits == 3

    @pytest.mark.asyncio
    async def test_clear_cache_forces_refetch(self, pair_evidence):
        extractors = make_extractors(pair_evidence)
        resolver = MagicMock()
        orchestrator = make_orchestrator(extractors, resolver=resolver)

        await orchestrator.mine_for_drug("doxorubicin")
        orchestrator.clear_cache()
        await orchestrator.mine_for_drug("doxorubicin")

        assert [len(e.calls) for e in extractors] == [2, 2, 2]
        resolver.clear_cache.assert_called_once()

    @pytest.mark.asyncio
    async def test_rate_limited_source_cools_down(self, pair_evidence):
        error = RateLimitedError("publication", "HTTP 429 after 2 attempt(s)", retry_after=45)
        extractors = make_extractors(pair_evidence, **{SourceType.PUBLICATION: {"errors": [error]}})
        sleep = AsyncMock()
        orchestrator = make_orchestrator(extractors, clock=lambda: 100.0, sleep=sleep)

        run = await orchestrator.mine_for_drug_list(["doxorubicin", "warfarin"], MiningConfig(concurrency_limit=1))

        assert run.stats.rate_limited == {"publication": 1}
        assert run.errors == ["doxorubicin: publication rate limited (HTTP 429 after 2 attempt(s))"]
        sleep.assert_awaited_once_with(45)
        assert extractors[2].calls == ["doxorubicin", "warfarin"]

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_results(self, pair_evidence):
        started = asyncio.Event()
        gate = {"warfarin": asyncio.Event()}
        extractors = make_extractors(
            pair_evidence, **{SourceType.CLINICAL_TRIAL: {"gate": gate, "started": started}}
        )
        orchestrator = make_orchestrator(extractors)
        assert orchestrator.cancel() is False

        task = asyncio.create_task(
            orchestrator.mine_for_drug_list(
                ["doxorubicin", "warfarin", "imatinib"], MiningConfig(concurrency_limit=1)
            )
        )
        while extractors[0].calls[-1:] != ["warfarin"]:
            await started.wait()
            started.clear()
        assert orchestrator.cancel() is True

        run = await task

        assert run.cancelled is True
        assert run.status == RunStatus.COMPLETED
        assert run.stats.drugs_processed == 1
        assert run.errors == ["Run cancelled after 1 of 3 drug(s); partial evidence was normalized and persisted"]
        assert "imatinib" not in extractors[0].calls
        assert "2555__3639" in orchestrator.repository.records
        assert orchestrator.cache.stats().in_flight == 0

    @pytest.mark.asyncio
    async def test_progress_and_status(self, pair_evidence):
        orchestrator = make_orchestrator(make_extractors(pair_evidence))
        assert orchestrator.progress() == {"phase": "pending", "drugs_completed": 0, "drugs_total": 0}

        await orchestrator.mine_for_drug_list(["doxorubicin", "warfarin"])

        assert orchestrator.progress() == {"phase": "done", "drugs_completed": 2, "drugs_total": 2}
        status = orchestrator.status()
        assert status["status"] == "completed"
        assert status["cancelled"] is False
        assert status["cache"]["misses"] == 6

    @pytest.mark.asyncio
    async def test_concurrent_runs_on_one_orchestrator_are_independent(self, pair_evidence):
        started = asyncio.Event()
        gate = {"warfarin": asyncio.Event(), "imatinib": asyncio.Event()}
        extractors = make_extractors(
            pair_evidence, **{SourceType.CLINICAL_TRIAL: {"gate": gate, "started": started}}
        )
        orchestrator = make_orchestrator(extractors)

        async def wait_for_call(drug):
            while drug not in extractors[0].calls:
                await started.wait()
                started.clear()

        first = asyncio.create_task(orchestrator.mine_for_drug_list(["warfarin"]))
        await wait_for_call("warfarin")
        second = asyncio.create_task(orchestrator.mine_for_drug_list(["imatinib"]))
        await wait_for_call("imatinib")

        first_id, second_id = orchestrator.active_runs
        assert orchestrator.progress(first_id) == {"phase": "extracting", "drugs_completed": 0, "drugs_total": 1}
        assert orchestrator.cancel() is True

        second_run = await second
        assert second_run.run_id == second_id
        assert orchestrator.active_runs == [first_id]
        assert orchestrator.status()["run_id"] == first_id
        assert orchestrator.cancel(second_id) is False

        gate["warfarin"].set()
        first_run = await first

        assert second_run.cancelled is True
        assert second_run.stats.drugs_processed == 0
        assert first_run.cancelled is False
        assert first_run.errors == []
        assert first_run.stats.drugs_processed == 1
        assert orchestrator.active_runs == []
        assert orchestrator.cache.stats().in_flight == 0

    @pytest.mark.asyncio
    async def test_cancel_targets_named_run(self, pair_evidence):
        started = asyncio.Event()
        gate = {"warfarin": asyncio.Event()}
        extractors = make_extractors(
            pair_evidence, **{SourceType.CLINICAL_TRIAL: {"gate": gate, "started": started}}
        )
        orchestrator = make_orchestrator(extractors)

        task = asyncio.create_task(orchestrator.mine_for_drug_list(["warfarin"]))
        while "warfarin" not in extractors[0].calls:
            await started.wait()
            started.clear()

        assert orchestrator.cancel("unknown") is False
        assert orchestrator.cancel(orchestrator.active_runs[0]) is True
        assert (await task).cancelled is True


class TestExport:
    @pytest.mark.asyncio
    async def test_export_last_run(self, pair_evidence):
        orchestrator = make_orchestrator(make_extractors(pair_evidence))
        with pytest.raises(ValueError):
            orchestrator.export_results()

        run = await orchestrator.mine_for_drug_list(["doxorubicin"])

        assert json.loads(orchestrator.export_results("json"))["run"]["run_id"] == run.run_id
        lines = orchestrator.export_results("tsv").splitlines()
        assert len(lines) == 2
        assert lines[1].startswith("cisplatin\t2555\tdoxorubicin\t3639")


class TestRunEventLog:
    @pytest.mark.asyncio
    async def test_events_written_as_jsonl(self, pair_evidence, tmp_path):
        error = SourceUnavailableError("publication", "HTTP 503 after 3 attempt(s)")
        extractors = make_extractors(pair_evidence, **{SourceType.PUBLICATION: {"errors": [error]}})
        run_logger = RunEventLogger(log_dir=tmp_path, enable_file_logging=True)

        run = await make_orchestrator(extractors, run_logger=run_logger).mine_for_drug_list(["doxorubicin"])
        run_logger.close()

        events = [json.loads(line) for line in run_logger.log_file.read_text().splitlines()]
        assert [e["event_type"] for e in events] == ["run_started", "source_error", "run_finalized"]
        assert all(e["run_id"] == run.run_id for e in events)
        assert events[1]["error"]["type"] == "SourceUnavailableError"
        assert events[2]["status"] == "completed"
