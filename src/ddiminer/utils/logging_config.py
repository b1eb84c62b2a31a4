"""Logging configuration for DDI Miner runs.

Provides structured logging of mining run events for monitoring and debugging.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any


class RunEventLogger:
    """Logger for mining run events with structured output."""

    def __init__(self, log_dir: Path | None = None, enable_file_logging: bool = True):
        """Initialize the run event logger.

        Args:
            log_dir: Directory for log files. Defaults to ./logs
            enable_file_logging: Whether to write JSONL event logs
        """
        self.logger = logging.getLogger("ddiminer.runs")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        # Remove existing handlers to avoid duplicates
        self.logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        self.logger.addHandler(console_handler)

        self.log_file: Path | None = None
        self._event_stream = None
        if enable_file_logging:
            if log_dir is None:
                log_dir = Path("./logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            timestamp = datetime.now().strftime("%Y%m%d")
            self.log_file = log_dir / f"mining_runs_{timestamp}.jsonl"
            self._event_stream = open(self.log_file, "a", encoding="utf-8")
            self.logger.info(f"Run event logging enabled: {self.log_file}")

    def _write_event(self, event_type: str, run_id: str, payload: dict[str, Any]) -> None:
        if self._event_stream is None:
            return
        entry = {
            "timestamp": datetime.now().isoformat(),
            "event_type": event_type,
            "run_id": run_id,
            **payload,
        }
        self._event_stream.write(json.dumps(entry, default=str) + "\n")
        self._event_stream.flush()

    def log_run_started(self, run_id: str, drugs: list[str], config: dict[str, Any]) -> None:
        self.logger.info(f"Run {run_id} started: {len(drugs)} drug(s)")
        self._write_event("run_started", run_id, {"drugs": drugs, "config": config})

    def log_source_error(self, run_id: str, drug: str, source_type: str, error: Exception) -> None:
        self.logger.warning(f"Run {run_id}: {source_type} failed for {drug}: {error}")
        self._write_event("source_error", run_id, {
            "drug": drug,
            "source_type": source_type,
            "error": {"type": type(error).__name__, "message": str(error)},
        })

    def log_drug_failed(self, run_id: str, drug: str, reason: str) -> None:
        self.logger.error(f"Run {run_id}: no source succeeded for {drug} ({reason})")
        self._write_event("drug_failed", run_id, {"drug": drug, "reason": reason})

    def log_run_finalized(
        self,
        run_id: str,
        status: str,
        stats: dict[str, Any],
        cancelled: bool = False,
        error: str | None = None,
    ) -> None:
        """Log the final state of a run."""
        message = (
            f"Run {run_id} {status}"
            f"{' (cancelled)' if cancelled else ''}: "
            f"{stats.get('records_added', 0)} added, {stats.get('records_updated', 0)} updated, "
            f"{stats.get('error_count', 0)} error(s)"
        )
        if error:
            self.logger.error(f"{message} - {error}")
        else:
            self.logger.info(message)

        self._write_event("run_finalized", run_id, {
            "status": status,
            "cancelled": cancelled,
            "stats": stats,
            "error": error,
        })

    def close(self) -> None:
        if self._event_stream is not None:
            self._event_stream.close()
            self._event_stream = None


# Global logger instance
_global_logger: RunEventLogger | None = None


def get_logger(log_dir: Path | None = None, enable_file_logging: bool = True) -> RunEventLogger:
    """Get or create the global run event logger."""
    global _global_logger

    if _global_logger is None:
        _global_logger = RunEventLogger(log_dir=log_dir, enable_file_logging=enable_file_logging)

    return _global_logger


def reset_logger() -> None:
    """Reset the global logger (mainly for testing)."""
    global _global_logger
    if _global_logger is not None:
        _global_logger.close()
    _global_logger = None
