"""Persistence for canonical interaction records and mining runs.

Upserts are keyed by pair key and idempotent: writing the same record twice
leaves storage unchanged.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

from ddiminer.models.interaction import CanonicalInteractionRecord
from ddiminer.models.run import MiningRun

logger = logging.getLogger(__name__)


class UpsertResult(BaseModel):
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0


class InteractionRepository(Protocol):
    """Storage collaborator used by the orchestrator."""

    async def upsert_records(self, records: list[CanonicalInteractionRecord]) -> UpsertResult: ...

    async def save_run(self, run: MiningRun) -> None: ...


def _merge_rows(table: dict[str, dict[str, Any]], records: list[CanonicalInteractionRecord]) -> UpsertResult:
    result = UpsertResult()
    for record in records:
        row = record.to_persistable()
        existing = table.get(record.pair_key)
        if existing is None:
            result.inserted += 1
        elif existing != row:
            result.updated += 1
        else:
            result.unchanged += 1
        table[record.pair_key] = row
    return result


class InMemoryRepository:
    """Dict-backed repository for tests and one-off runs."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.runs: dict[str, dict[str, Any]] = {}

    async def upsert_records(self, records: list[CanonicalInteractionRecord]) -> UpsertResult:
        return _merge_rows(self.records, records)

    async def save_run(self, run: MiningRun) -> None:
        self.runs[run.run_id] = run.model_dump(mode="json")

    async def get_record(self, pair_key: str) -> dict[str, Any] | None:
        return self.records.get(pair_key)


class JsonFileRepository:
    """Repository storing JSON documents under a data directory.

    Layout:
        <data_dir>/interactions.json    pair key → record row
        <data_dir>/runs/<run_id>.json   one document per run
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.records_path = self.data_dir / "interactions.json"
        self.runs_dir = self.data_dir / "runs"
        self._lock = asyncio.Lock()

    @staticmethod
    def _write_json(path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, path)

    def _load_records(self) -> dict[str, dict[str, Any]]:
        if not self.records_path.exists():
            return {}
        with open(self.records_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _upsert_sync(self, records: list[CanonicalInteractionRecord]) -> UpsertResult:
        table = self._load_records()
        result = _merge_rows(table, records)
        if result.inserted or result.updated:
            self._write_json(self.records_path, table)
        return result

    async def upsert_records(self, records: list[CanonicalInteractionRecord]) -> UpsertResult:
        async with self._lock:
            result = await asyncio.to_thread(self._upsert_sync, records)
        logger.debug(f"Upserted into {self.records_path}: {result}")
        return result

    async def save_run(self, run: MiningRun) -> None:
        async with self._lock:
            await asyncio.to_thread(
                self._write_json, self.runs_dir / f"{run.run_id}.json", run.model_dump(mode="json")
            )

    async def get_record(self, pair_key: str) -> dict[str, Any] | None:
        async with self._lock:
            table = await asyncio.to_thread(self._load_records)
        return table.get(pair_key)
