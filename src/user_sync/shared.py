"""user_sync.shared

Shared types used across the reconciliation stages: exceptions, tagged
status values, the audit LogEntry, RejectWriter, run counters and the
JSON run report writer.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class UserSyncError(Exception):
    """Base class for fatal run errors."""


class StagingError(UserSyncError):
    """Raised when the input file cannot be staged or opened."""


class HeaderValidationError(UserSyncError):
    """Raised when mandatory fields cannot be matched to a header column."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "header validation failed")
        self.errors = list(errors)


class ConcurrentRunError(UserSyncError):
    """Raised when another run already holds the sync lock for this store."""


class WriteFailure(UserSyncError):
    """Raised when a batch transaction fails; the batch is rolled back."""

    def __init__(self, message: str, batch_size: int, first_line: int | None) -> None:
        super().__init__(message)
        self.batch_size = batch_size
        self.first_line = first_line


class LogPersistenceError(UserSyncError):
    """Raised when audit log entries cannot be written to the log sink."""


class RejectWriteError(UserSyncError):
    """Raised when a rejected row cannot be written to the reject file."""


# ---------------------------------------------------------------------------
# Tagged status values
# ---------------------------------------------------------------------------

class IdentifierStatus(Enum):
    VALIDATED = "validated"
    REJECTED = "rejected"


class LogType(Enum):
    VALIDATION_FAILED = "validation_failed"
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    RESTORED = "restored"


class RunOutcome(Enum):
    FAILED_BEFORE_MUTATION = "failed_before_mutation"
    FAILED_DURING_MUTATION = "failed_during_mutation"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# LogEntry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LogEntry:
    type: LogType
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_line(
        cls,
        type_: LogType,
        line: int | None,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> "LogEntry":
        prefix = f"line {line}: " if line is not None else ""
        return cls(type_, prefix + message, dict(context or {}))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "context": self.context,
        }


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    Rows are written positionally (the input may carry duplicate or unmatched
    headers), prefixed with the source line number and the reject reason.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, line: int, row: list[str], reason: str) -> None:
        try:
            if self._fh is None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._fh = open(self._path, "w", newline="", encoding="utf-8")
                self._writer = csv.writer(self._fh)
                self._writer.writerow(["_line", "_reject_reason", "_row"])
            self._writer.writerow([line, reason, *row])
            self._fh.flush()
        except OSError as exc:
            raise RejectWriteError(f"Cannot write reject file {self._path}: {exc}") from exc
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# SyncSummary
# ---------------------------------------------------------------------------

@dataclass
class SyncSummary:
    new: int = 0
    updated: int = 0
    restored: int = 0
    rejected: int = 0
    deleted: int = 0
    rows_read: int = 0
    malformed: int = 0
    batches_written: int = 0
    started_at: datetime | None = None
    elapsed_seconds: float | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "new": self.new,
            "updated": self.updated,
            "restored": self.restored,
            "rejected": self.rejected,
            "deleted": self.deleted,
            "rows_read": self.rows_read,
            "malformed": self.malformed,
            "batches_written": self.batches_written,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "elapsed_seconds": self.elapsed_seconds,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    outcome: RunOutcome,
    source_path: str,
    summary: SyncSummary,
    errors: list[str],
    config_hash: str | None = None,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "outcome": outcome.value,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "source_path": source_path,
        "config_hash": config_hash,
        "errors": errors,
        "summary": summary.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
