"""Command-line interface for DDI Miner.

ARCHITECTURE:
    CLI Commands → MiningOrchestrator → JSON Output

Two workflows: mine (single drug) and batch (drug list file)

Key Design:
- Typer framework for auto-help and type validation
- asyncio.run() bridges sync CLI → async orchestrator
- Flexible I/O: stdout or file output as JSON, CSV or TSV
- Human-readable reports go to stderr so stdout stays machine-readable
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

from ddiminer.config import settings
from ddiminer.engine import MiningOrchestrator
from ddiminer.export import EXPORT_FORMATS, export_results
from ddiminer.models.run import MiningConfig, MiningRun
from ddiminer.storage import InMemoryRepository, JsonFileRepository
from ddiminer.utils.logging_config import get_logger

load_dotenv()

app = typer.Typer(
    name="ddiminer",
    help="Drug-drug interaction evidence mining across trials, labels and literature",
    add_completion=False,
)


def _build_config(
    trials: bool,
    labels: bool,
    publications: bool,
    max_results: int,
    concurrency: int,
    timeout: float,
    min_confidence: float,
    require_mechanism: bool,
    completed_trials: bool,
    years: int,
) -> MiningConfig:
    return MiningConfig(
        enable_clinical_trials=trials,
        enable_regulatory_labels=labels,
        enable_publications=publications,
        max_results_per_source=max_results,
        concurrency_limit=concurrency,
        per_source_timeout=timeout,
        min_confidence=min_confidence,
        require_mechanism=require_mechanism,
        include_completed_trials=completed_trials,
        publication_year_range=years,
    )


def _load_drugs(input_file: Path) -> list[str]:
    """Read drug names from a JSON list or a one-name-per-line text file."""
    text = input_file.read_text(encoding="utf-8")
    if input_file.suffix.lower() == ".json":
        data = json.loads(text)
        if isinstance(data, dict):
            data = data.get("drugs", [])
        return [str(item) for item in data]
    return [line.strip() for line in text.splitlines() if line.strip() and not line.startswith("#")]


async def _run(drugs: list[str], config: MiningConfig, persist: bool, log: bool) -> tuple[MiningRun, list]:
    logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    run_logger = get_logger(log_dir=settings.log_dir, enable_file_logging=log)
    repository = JsonFileRepository(settings.data_dir) if persist else InMemoryRepository()

    async with MiningOrchestrator(repository=repository, run_logger=run_logger) as orchestrator:
        run = await orchestrator.mine_for_drug_list(drugs, config)
        return run, orchestrator.last_records


def _report(message: str) -> None:
    print(message, file=sys.stderr)


def _check_format(fmt: str) -> str:
    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        _report(f"Error: Unsupported format {fmt!r} (choose from {', '.join(EXPORT_FORMATS)})")
        raise typer.Exit(1)
    return fmt


def _write_output(run: MiningRun, records: list, output: Optional[Path], fmt: str = "json") -> None:
    content = export_results(run, records, fmt)
    if output:
        with open(output, "w") as f:
            f.write(content)
        _report(f"Saved to {output}")
    else:
        print(content)


@app.command()
def mine(
    drug: str = typer.Argument(..., help="Drug name (e.g., doxorubicin)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (default: stdout)"),
    fmt: str = typer.Option("json", "--format", "-f", help="Output format: json, csv or tsv"),
    trials: bool = typer.Option(True, "--trials/--no-trials", help="Query ClinicalTrials.gov"),
    labels: bool = typer.Option(True, "--labels/--no-labels", help="Query openFDA drug labels"),
    publications: bool = typer.Option(True, "--publications/--no-publications", help="Query PubMed"),
    max_results: int = typer.Option(50, "--max-results", "-n", help="Max records per source"),
    timeout: float = typer.Option(120.0, "--timeout", help="Seconds allowed per source"),
    min_confidence: float = typer.Option(0.0, "--min-confidence", help="Drop records below this confidence"),
    require_mechanism: bool = typer.Option(False, "--require-mechanism", help="Drop records without a mechanism"),
    completed_trials: bool = typer.Option(True, "--completed-trials/--active-trials-only", help="Include completed trials"),
    years: int = typer.Option(10, "--years", help="Literature window in years"),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Write records to the data directory"),
    log: bool = typer.Option(True, "--log/--no-log", help="Enable run event logging"),
) -> None:
    """Mine interaction evidence for a single drug."""
    fmt = _check_format(fmt)
    config = _build_config(
        trials, labels, publications, max_results, 1, timeout,
        min_confidence, require_mechanism, completed_trials, years,
    )
    _report(f"\nMining interactions for {drug}...")
    run, records = asyncio.run(_run([drug], config, persist, log))

    for record in records:
        _report(record.to_report())
    _report(run.to_report())
    _write_output(run, records, output, fmt)

    if run.status.value == "failed":
        raise typer.Exit(1)


@app.command()
def batch(
    input_file: Path = typer.Argument(..., help="Drug list (JSON array or one name per line)"),
    output: Path = typer.Option("ddi_results.json", "--output", "-o", help="Output file"),
    fmt: str = typer.Option("json", "--format", "-f", help="Output format: json, csv or tsv"),
    trials: bool = typer.Option(True, "--trials/--no-trials", help="Query ClinicalTrials.gov"),
    labels: bool = typer.Option(True, "--labels/--no-labels", help="Query openFDA drug labels"),
    publications: bool = typer.Option(True, "--publications/--no-publications", help="Query PubMed"),
    max_results: int = typer.Option(50, "--max-results", "-n", help="Max records per source"),
    concurrency: int = typer.Option(3, "--concurrency", "-c", help="Drugs mined in parallel"),
    timeout: float = typer.Option(120.0, "--timeout", help="Seconds allowed per source"),
    min_confidence: float = typer.Option(0.0, "--min-confidence", help="Drop records below this confidence"),
    require_mechanism: bool = typer.Option(False, "--require-mechanism", help="Drop records without a mechanism"),
    completed_trials: bool = typer.Option(True, "--completed-trials/--active-trials-only", help="Include completed trials"),
    years: int = typer.Option(10, "--years", help="Literature window in years"),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Write records to the data directory"),
    log: bool = typer.Option(True, "--log/--no-log", help="Enable run event logging"),
) -> None:
    """Mine interaction evidence for a list of drugs."""
    fmt = _check_format(fmt)

    if not input_file.exists():
        _report(f"Error: Input file not found: {input_file}")
        raise typer.Exit(1)

    drugs = _load_drugs(input_file)
    _report(f"\nLoaded {len(drugs)} drugs from {input_file}")

    config = _build_config(
        trials, labels, publications, max_results, concurrency, timeout,
        min_confidence, require_mechanism, completed_trials, years,
    )
    run, records = asyncio.run(_run(drugs, config, persist, log))

    _report(run.to_report())
    _write_output(run, records, output, fmt)

    # Simple severity counts
    severity_counts: dict[str, int] = {}
    for record in records:
        severity = record.consensus_severity.value
        severity_counts[severity] = severity_counts.get(severity, 0) + 1

    _report("\nSeverity Distribution:")
    for severity, count in sorted(severity_counts.items()):
        _report(f"  {severity}: {count}")

    if run.status.value == "failed":
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from ddiminer import __version__
    print(f"DDI Miner version {__version__}")


if __name__ == "__main__":
    app()
