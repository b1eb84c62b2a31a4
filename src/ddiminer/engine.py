"""Mining orchestrator: drives extraction, normalization and persistence.

ARCHITECTURE:
    drugs → work queue → N workers → [ClinicalTrials + openFDA + PubMed] per drug → Evidence
          → EvidenceNormalizer (whole run) → validate → quality filters → repository

Key Design:
- Async context manager for HTTP session lifecycle
- Drug-level parallelism bounded by a queue and concurrency_limit workers
- Sources for one drug run concurrently, each bounded by per_source_timeout
- Source and drug failures are recorded on the run, never raised
- Shared single-flight cache: concurrent identical requests hit the upstream once
- Rate-limited sources cool down before their next call
- Only a persistence failure at finalize marks a run failed
- Concurrent runs on one orchestrator keep their own cancel flag and progress
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any

from ddiminer.api.rxnorm import DrugResolver, RxNormClient
from ddiminer.cache import SingleFlightCache, make_key
from ddiminer.config import settings
from ddiminer.errors import (
    OrchestrationFatalError,
    RateLimitedError,
    SourceUnavailableError,
)
from ddiminer.extractors import (
    ClinicalTrialsExtractor,
    PublicationExtractor,
    RegulatoryLabelExtractor,
    SourceExtractor,
)
from ddiminer.models.evidence import Evidence, SourceType
from ddiminer.models.interaction import CanonicalInteractionRecord
from ddiminer.export import export_results as render_results
from ddiminer.models.run import (
    ExtractionOptions,
    ExtractionReport,
    MiningConfig,
    MiningRun,
    RunPhase,
    RunStatus,
)
from ddiminer.normalizer import EvidenceNormalizer
from ddiminer.storage import InteractionRepository, JsonFileRepository
from ddiminer.utils.logging_config import RunEventLogger, get_logger

logger = logging.getLogger(__name__)


class MiningOrchestrator:
    """
    Orchestrator for DDI evidence mining runs.

    Uses async/await so drugs, and the sources for each drug, are mined
    concurrently while waiting on upstream I/O.
    """

    def __init__(
        self,
        extractors: list[SourceExtractor] | None = None,
        repository: InteractionRepository | None = None,
        normalizer: EvidenceNormalizer | None = None,
        cache: SingleFlightCache | None = None,
        resolver: DrugResolver | None = None,
        run_logger: RunEventLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            extractors: Source extractors (defaults to all three, sharing an RxNorm resolver)
            repository: Persistence collaborator (defaults to JSON files under settings.data_dir)
            normalizer: Evidence normalizer
            cache: Extractor result cache (defaults to settings.cache_ttl)
            resolver: Drug code resolver used by the default extractors
            run_logger: Run event logger
            clock: Monotonic clock for rate-limit cooldowns
            sleep: Awaitable sleep for rate-limit cooldowns
        """
        if extractors is None:
            resolver = resolver or RxNormClient()
            extractors = [
                ClinicalTrialsExtractor(resolver),
                RegulatoryLabelExtractor(resolver),
                PublicationExtractor(resolver),
            ]
        self.resolver = resolver
        self.extractors: dict[SourceType, SourceExtractor] = {e.source_type: e for e in extractors}
        self.repository = repository or JsonFileRepository(settings.data_dir)
        self.normalizer = normalizer or EvidenceNormalizer()
        self.cache = cache or SingleFlightCache(ttl=settings.cache_ttl)
        self.run_logger = run_logger or get_logger(enable_file_logging=False)
        self._clock = clock
        self._sleep = sleep

        self.last_run: MiningRun | None = None
        self.last_records: list[CanonicalInteractionRecord] = []
        self._active_runs: dict[str, MiningRun] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._cooldown_until: dict[SourceType, float] = {}
        self._exit_stack: AsyncExitStack | None = None

    async def __aenter__(self) -> "MiningOrchestrator":
        """Open HTTP sessions for the resolver and every extractor."""
        self._exit_stack = AsyncExitStack()
        for component in [self.resolver, *self.extractors.values()]:
            if component is not None and hasattr(component, "__aenter__"):
                await self._exit_stack.enter_async_context(component)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Close HTTP sessions to prevent resource leaks."""
        if self._exit_stack is not None:
            await self._exit_stack.__aexit__(exc_type, exc_val, exc_tb)
            self._exit_stack = None

    async def mine_for_drug(
        self, drug_name: str, config: MiningConfig | None = None
    ) -> list[CanonicalInteractionRecord]:
        """Mine one drug. The one-drug run is finalized, persisted and kept as last_run."""
        _, records = await self._execute([drug_name], config)
        return records

    async def mine_for_drug_list(self, drug_names: list[str], config: MiningConfig | None = None) -> MiningRun:
        """Mine a list of drugs as one run.

        Never raises for source, drug or persistence failures: the returned run
        carries status, stats and errors.
        """
        run, _ = await self._execute(drug_names, config)
        return run

    async def _execute(
        self, drug_names: list[str], config: MiningConfig | None
    ) -> tuple[MiningRun, list[CanonicalInteractionRecord]]:
        config = config or MiningConfig()
        drugs: list[str] = []
        for name in drug_names:
            name = name.strip()
            if name and name.lower() not in (d.lower() for d in drugs):
                drugs.append(name)

        run = MiningRun(drugs_requested=drugs, config=config)
        run.progress.drugs_total = len(drugs)
        cancel_event = asyncio.Event()
        self._active_runs[run.run_id] = run
        self._cancel_events[run.run_id] = cancel_event
        try:
            records = await self._run_phases(run, drugs, config, cancel_event)
        finally:
            del self._active_runs[run.run_id]
            del self._cancel_events[run.run_id]

        self.last_run = run
        self.last_records = records
        return run, records

    async def _run_phases(
        self, run: MiningRun, drugs: list[str], config: MiningConfig, cancel_event: asyncio.Event
    ) -> list[CanonicalInteractionRecord]:
        self.run_logger.log_run_started(run.run_id, drugs, config.model_dump(mode="json"))

        if not config.enabled_sources():
            run.add_error("No sources enabled")

        # Phase 1: extraction
        run.progress.phase = RunPhase.EXTRACTING
        rejected_before = self._rejected_total()
        evidence = await self._extract_all(run, drugs, cancel_event)
        run.stats.evidence_rejected = self._rejected_total() - rejected_before
        run.extraction_report = ExtractionReport.build(
            evidence, run.stats.drugs_processed, run.stats.drugs_failed
        )

        if cancel_event.is_set():
            run.cancelled = True
            run.add_error(
                f"Run cancelled after {run.progress.drugs_completed} of {len(drugs)} drug(s); "
                f"partial evidence was normalized and persisted"
            )

        # Phase 2: normalization over the whole run's evidence
        run.progress.phase = RunPhase.NORMALIZING
        records = self._normalize(run, evidence)

        # Phase 3: persistence
        run.progress.phase = RunPhase.PERSISTING
        await self._finalize(run, records)
        return records

    def _rejected_total(self) -> int:
        return sum(getattr(e, "rejected_count", 0) for e in self.extractors.values())

    async def _extract_all(self, run: MiningRun, drugs: list[str], cancel_event: asyncio.Event) -> list[Evidence]:
        """Process drugs through a bounded work queue until done or cancelled."""
        evidence: list[Evidence] = []
        if not drugs:
            return evidence

        queue: asyncio.Queue[str] = asyncio.Queue()
        for drug in drugs:
            queue.put_nowait(drug)

        async def worker() -> None:
            while not cancel_event.is_set():
                try:
                    drug = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                evidence.extend(await self._mine_drug(run, drug))
                run.stats.drugs_processed += 1
                run.progress.drugs_completed += 1

        workers = {asyncio.create_task(worker()) for _ in range(min(run.config.concurrency_limit, len(drugs)))}
        cancel_waiter = asyncio.create_task(cancel_event.wait())

        pending = set(workers)
        try:
            while pending and not cancel_event.is_set():
                done, pending = await asyncio.wait(pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                pending.discard(cancel_waiter)
                for task in done:
                    if task is not cancel_waiter and not task.cancelled() and task.exception():
                        logger.error("Mining worker crashed", exc_info=task.exception())
                        run.add_error(f"Worker failed: {task.exception()!r}")
        finally:
            cancel_waiter.cancel()

        if pending:
            # Cancelled: abandon in-flight drugs, then the fetches no other run still awaits.
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self.cache.cancel_in_flight(only_orphaned=True)

        return evidence

    async def _mine_drug(self, run: MiningRun, drug: str) -> list[Evidence]:
        """Query every enabled source for one drug; record failures on the run."""
        options = run.config.extraction_options()
        extractors = [self.extractors[s] for s in run.config.enabled_sources() if s in self.extractors]
        if not extractors:
            return []

        results = await asyncio.gather(
            *(self._extract_source(e, drug, options, run.config.per_source_timeout) for e in extractors),
            return_exceptions=True,
        )

        evidence: list[Evidence] = []
        succeeded = 0
        for extractor, result in zip(extractors, results):
            if isinstance(result, Exception):
                self._record_source_failure(run, drug, extractor.source_type, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                succeeded += 1
                evidence.extend(result)

        run.stats.evidence_extracted += len(evidence)
        if succeeded == 0:
            reason = f"all {len(extractors)} source(s) failed"
            run.stats.drugs_failed += 1
            run.add_error(f"{drug}: no source succeeded ({reason})")
            self.run_logger.log_drug_failed(run.run_id, drug, reason)
        else:
            logger.info(f"{drug}: {len(evidence)} evidence from {succeeded}/{len(extractors)} source(s)")
        return evidence

    async def _extract_source(
        self, extractor: SourceExtractor, drug: str, options: ExtractionOptions, timeout: float
    ) -> list[Evidence]:
        source_type = extractor.source_type

        async def fetch() -> list[Evidence]:
            await self._wait_for_cooldown(source_type)
            return await extractor.extract(drug, options)

        key = make_key(source_type.value, drug, options)
        return await asyncio.wait_for(self.cache.get_or_fetch(key, fetch), timeout)

    async def _wait_for_cooldown(self, source_type: SourceType) -> None:
        remaining = self._cooldown_until.get(source_type, 0.0) - self._clock()
        if remaining > 0:
            logger.info(f"{source_type.value}: cooling down for {remaining:.1f}s after rate limiting")
            await self._sleep(remaining)

    def _record_source_failure(self, run: MiningRun, drug: str, source_type: SourceType, error: Exception) -> None:
        """Turn one source failure into one run error entry."""
        rate_limited = False
        if isinstance(error, RateLimitedError):
            rate_limited = True
            backoff = error.retry_after if error.retry_after is not None else settings.rate_limit_backoff
            self._cooldown_until[source_type] = max(
                self._cooldown_until.get(source_type, 0.0), self._clock() + backoff
            )
            message = f"{drug}: {source_type.value} rate limited ({error.message})"
        elif isinstance(error, SourceUnavailableError):
            message = f"{drug}: {source_type.value} unavailable ({error.message})"
        elif isinstance(error, asyncio.TimeoutError):
            message = f"{drug}: {source_type.value} timed out after {run.config.per_source_timeout:g}s"
        else:
            logger.error(f"Unexpected {source_type.value} failure for {drug}", exc_info=error)
            message = f"{drug}: {source_type.value} failed ({type(error).__name__}: {error})"

        run.record_source_error(source_type, message, rate_limited=rate_limited)
        self.run_logger.log_source_error(run.run_id, drug, source_type.value, error)

    def _normalize(self, run: MiningRun, evidence: list[Evidence]) -> list[CanonicalInteractionRecord]:
        result = self.normalizer.normalize_detailed(evidence)
        for conflict in result.conflicts:
            run.add_error(f"Normalization conflict: {conflict}")

        validated = self.normalizer.validate_normalized_output(result.records)
        run.stats.records_invalid = len(validated.invalid)
        for invalid in validated.invalid:
            run.add_error(f"Invalid record {invalid.record.pair_key}: {'; '.join(invalid.reasons)}")

        records = self.normalizer.apply_quality_filters(
            validated.valid,
            min_confidence=run.config.min_confidence,
            require_mechanism=run.config.require_mechanism,
        )
        run.stats.records_filtered = len(validated.valid) - len(records)

        summary = self.normalizer.summarize(len(evidence), records, conflicts=len(result.conflicts))
        logger.info(
            f"Normalized {summary.raw_evidence_count} evidence into {summary.canonical_record_count} records "
            f"({summary.multi_source_records} multi-source, {summary.severity_conflicts} with severity conflicts)"
        )
        return records

    async def _finalize(self, run: MiningRun, records: list[CanonicalInteractionRecord]) -> None:
        """Persist records and the run. A failure here fails the run but is not raised."""
        error: str | None = None
        try:
            upsert = await self.repository.upsert_records(records)
            run.stats.records_added = upsert.inserted
            run.stats.records_updated = upsert.updated
            run.status = RunStatus.COMPLETED
            run.completed_at = datetime.now(timezone.utc)
            run.progress.phase = RunPhase.DONE
            await self.repository.save_run(run)
        except Exception as e:
            fatal = OrchestrationFatalError(f"Persisting run {run.run_id} failed: {e}")
            logger.error(str(fatal), exc_info=e)
            error = str(fatal)
            run.status = RunStatus.FAILED
            run.completed_at = datetime.now(timezone.utc)
            run.progress.phase = RunPhase.DONE
            run.add_error(error)

        self.run_logger.log_run_finalized(
            run.run_id,
            run.status.value,
            run.stats.model_dump(mode="json"),
            cancelled=run.cancelled,
            error=error,
        )

    @property
    def active_runs(self) -> list[str]:
        """Ids of runs in progress, oldest first."""
        return list(self._active_runs)

    def _find_run(self, run_id: str | None) -> MiningRun | None:
        """The named run, else the newest active run, else the last finished run."""
        if run_id is not None:
            if run_id in self._active_runs:
                return self._active_runs[run_id]
            if self.last_run is not None and self.last_run.run_id == run_id:
                return self.last_run
            return None
        if self._active_runs:
            return next(reversed(self._active_runs.values()))
        return self.last_run

    def cancel(self, run_id: str | None = None) -> bool:
        """Stop a run: no new drugs are started and its in-flight drugs are abandoned.

        Other runs on this orchestrator are unaffected.

        Args:
            run_id: Run to cancel (defaults to the most recently started active run)

        Returns:
            True if the run was in progress and not already cancelled
        """
        if run_id is None:
            if not self._active_runs:
                return False
            run_id = next(reversed(self._active_runs))
        event = self._cancel_events.get(run_id)
        if event is None or event.is_set():
            return False
        logger.warning(f"Cancelling run {run_id}")
        event.set()
        return True

    def progress(self, run_id: str | None = None) -> dict[str, Any]:
        """Phase and drug counts of a run (defaults to the newest active, else the last run)."""
        run = self._find_run(run_id)
        if run is None:
            return {"phase": RunPhase.PENDING.value, "drugs_completed": 0, "drugs_total": 0}
        return {
            "phase": run.progress.phase.value,
            "drugs_completed": run.progress.drugs_completed,
            "drugs_total": run.progress.drugs_total,
        }

    def status(self, run_id: str | None = None) -> dict[str, Any]:
        """Progress plus per-source error counts and cache statistics."""
        run = self._find_run(run_id)
        status = self.progress(run_id)
        status.update({
            "run_id": run.run_id if run else None,
            "status": run.status.value if run else None,
            "cancelled": run.cancelled if run else False,
            "source_errors": dict(run.stats.source_errors) if run else {},
            "rate_limited": dict(run.stats.rate_limited) if run else {},
            "active_runs": self.active_runs,
            "cache": self.cache.stats().model_dump(),
        })
        return status

    def export_results(self, fmt: str = "json") -> str:
        """Render the last finished run and its records as json, csv or tsv.

        Raises:
            ValueError: If no run has finished or fmt is unsupported
        """
        if self.last_run is None:
            raise ValueError("No finished run to export")
        return render_results(self.last_run, self.last_records, fmt)

    def clear_cache(self) -> None:
        """Drop cached extractor results (and resolver lookups when supported)."""
        self.cache.clear()
        if self.resolver is not None and hasattr(self.resolver, "clear_cache"):
            self.resolver.clear_cache()
