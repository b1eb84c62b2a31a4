"""Export of mining results.

json: the run and its records as one document
csv / tsv: one row per canonical interaction record, built with pandas
"""

import json

import pandas as pd

from ddiminer.models.interaction import CanonicalInteractionRecord
from ddiminer.models.run import MiningRun

EXPORT_FORMATS = ("json", "csv", "tsv")

EXPORT_COLUMNS = [
    "drug_a_name",
    "drug_a_code",
    "drug_b_name",
    "drug_b_code",
    "consensus_severity",
    "confidence_score",
    "mechanisms",
    "enzyme_pathways",
    "management",
    "source_types_represented",
    "evidence_count",
    "mean_evidence_score",
    "severity_conflict",
    "pair_key",
    "last_updated",
]

# List fields are flattened into one cell
_LIST_SEPARATOR = "; "


def records_frame(records: list[CanonicalInteractionRecord]) -> pd.DataFrame:
    """One row per record, columns in EXPORT_COLUMNS order."""
    rows = []
    for record in records:
        row = record.to_persistable()
        for field in ("mechanisms", "enzyme_pathways", "source_types_represented"):
            row[field] = _LIST_SEPARATOR.join(row[field])
        rows.append(row)
    return pd.DataFrame(rows, columns=EXPORT_COLUMNS)


def export_results(run: MiningRun, records: list[CanonicalInteractionRecord], fmt: str = "json") -> str:
    """Render a run's results.

    Args:
        run: The finished mining run
        records: Canonical records the run produced
        fmt: "json", "csv" or "tsv"

    Raises:
        ValueError: If fmt is not a supported format
    """
    fmt = fmt.lower()
    if fmt == "json":
        return json.dumps(
            {
                "run": run.model_dump(mode="json"),
                "records": [record.model_dump(mode="json") for record in records],
            },
            indent=2,
        )
    if fmt in ("csv", "tsv"):
        return records_frame(records).to_csv(index=False, sep="," if fmt == "csv" else "\t")
    raise ValueError(f"Unsupported export format: {fmt} (expected one of {', '.join(EXPORT_FORMATS)})")
