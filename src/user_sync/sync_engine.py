"""user_sync.sync_engine

Reconciles the ``users`` table with a delivered user CSV file.

After a completed run the table mirrors the file's valid rows: users in the
file are inserted, updated or restored from soft-deleted; users not written
during the run are soft-deleted.

Stages (one run, strictly sequential):
  1. map_header          -- match header columns to canonical fields by synonym
  2. collect_identifiers -- pass 1: mark every external_id validated/rejected
  3. sync_records        -- pass 2 (file rewound): queue validated rows in chunks
  4. write_batch         -- one transaction per chunk: insert / update / restore
  5. prune_stale         -- soft-delete users untouched since the run watermark

Duplicate external ids reject every row carrying that id. Malformed rows
(unparseable id, empty mandatory field, short row) are rejected the same
way: counted, logged and written to the reject CSV, never fatal.

Failure model:
  - anything before the first batch (lock, staging, header) leaves the store
    untouched and reports FAILED_BEFORE_MUTATION
  - a failing batch is rolled back as a whole; batches committed before it
    stay applied and the run reports FAILED_DURING_MUTATION
  - the staged copy of the input is always removed
"""

from __future__ import annotations

import csv
import logging
import shutil
import tempfile
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

import click
import psycopg

from user_sync.log_sink import DbLogSink, LogSink
from user_sync.normalize import normalize_header, parse_external_id, trim
from user_sync.shared import (
    ConcurrentRunError,
    HeaderValidationError,
    IdentifierStatus,
    LogEntry,
    LogType,
    RejectWriter,
    RunOutcome,
    StagingError,
    SyncSummary,
    UserSyncError,
    WriteFailure,
)
from user_sync.sync_config import FieldSpec, SyncConfig
from user_sync.user_store import (
    USER_COLUMNS,
    fetch_db_now,
    find_user,
    insert_user,
    release_run_lock,
    soft_delete_stale,
    try_acquire_run_lock,
    update_user,
)

log = logging.getLogger(__name__)

Row = list[str]
NumberedRow = tuple[int, Row]


# ---------------------------------------------------------------------------
# Run state machine
# ---------------------------------------------------------------------------

class RunState(Enum):
    IDLE = "idle"
    INITIALIZED = "initialized"
    HEADER_VALIDATED = "header_validated"
    IDENTIFIERS_COLLECTED = "identifiers_collected"
    SYNCING = "syncing"
    PRUNED = "pruned"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.INITIALIZED}),
    RunState.INITIALIZED: frozenset({RunState.HEADER_VALIDATED}),
    RunState.HEADER_VALIDATED: frozenset({RunState.IDENTIFIERS_COLLECTED}),
    RunState.IDENTIFIERS_COLLECTED: frozenset({RunState.SYNCING}),
    RunState.SYNCING: frozenset({RunState.PRUNED}),
    RunState.PRUNED: frozenset({RunState.COMPLETED}),
    RunState.COMPLETED: frozenset(),
    RunState.FAILED: frozenset(),
}

# States from which a failure may have left committed writes behind.
_MUTATING_STATES = frozenset({RunState.SYNCING, RunState.PRUNED})


class InvalidTransition(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Stage 1: header mapping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HeaderMapping:
    columns: Mapping[str, int]
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def min_row_length(self) -> int:
        return max(self.columns.values()) + 1 if self.columns else 0


def map_header(
    raw_headers: Sequence[str] | None,
    field_specs: Sequence[FieldSpec],
) -> HeaderMapping:
    """Match header columns to canonical fields.

    Each header is trimmed and lower-cased, then offered to the field specs in
    order; the first spec listing it as a synonym claims the column. Unmatched
    headers and repeated columns for an already-claimed field are warnings.
    Every mandatory field left without a column is an error; all errors are
    collected before returning.
    """
    if not raw_headers:
        return HeaderMapping(columns={}, errors=["Unable to read file header"])

    columns: dict[str, int] = {}
    warnings: list[str] = []
    for idx, raw in enumerate(raw_headers):
        value = normalize_header(raw) or ""
        spec = next((s for s in field_specs if value in s.synonyms), None)
        if spec is None:
            warnings.append(f"Unable to match column: {value!r}")
            continue
        if spec.name in columns:
            warnings.append(
                f"Column {idx} ({value!r}) ignored: {spec.name} already "
                f"mapped to column {columns[spec.name]}"
            )
            continue
        columns[spec.name] = idx

    errors = [
        f"Not found match for mandatory field: {spec.name}"
        for spec in field_specs
        if spec.mandatory and spec.name not in columns
    ]
    return HeaderMapping(columns=MappingProxyType(columns), warnings=warnings, errors=errors)


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def iter_rows(reader: Iterator[Row]) -> Iterator[NumberedRow]:
    """Yield (line_number, row) for each non-blank data row.

    ``reader`` must be a csv.reader positioned after the header; line numbers
    are physical file lines (quoted fields may span several).
    """
    for row in reader:
        if not row or all(not cell.strip() for cell in row):
            continue
        yield reader.line_num, row


def _cell(row: Row, mapping: HeaderMapping, name: str) -> str | None:
    idx = mapping.columns.get(name)
    if idx is None or idx >= len(row):
        return None
    return row[idx]


def _row_problem(
    row: Row,
    mapping: HeaderMapping,
    field_specs: Sequence[FieldSpec],
) -> str | None:
    if len(row) < mapping.min_row_length:
        return "short_row"
    for spec in field_specs:
        if spec.mandatory and spec.name != "external_id" and trim(_cell(row, mapping, spec.name)) is None:
            return "missing_mandatory_field"
    return None


# ---------------------------------------------------------------------------
# Stage 2: identifier collection (pass 1)
# ---------------------------------------------------------------------------

@dataclass
class IdentifierScan:
    statuses: Mapping[int, IdentifierStatus]
    rows_read: int = 0
    rejected: int = 0
    malformed: int = 0
    log_entries: list[LogEntry] = field(default_factory=list)


def collect_identifiers(
    rows: Iterable[NumberedRow],
    mapping: HeaderMapping,
    field_specs: Sequence[FieldSpec],
    rejects: RejectWriter | None = None,
) -> IdentifierScan:
    """Build the external_id -> IdentifierStatus map in one pass.

    The first clean occurrence of an id is VALIDATED. Every later occurrence
    flips it to REJECTED and counts one rejection. A malformed row is
    rejected too; if its id parsed, that id is REJECTED so no row carrying
    it is synced. The returned map is read-only.
    """
    statuses: dict[int, IdentifierStatus] = {}
    scan = IdentifierScan(statuses=MappingProxyType(statuses))

    def reject(line: int, row: Row, reason: str, message: str, malformed: bool) -> None:
        scan.rejected += 1
        if malformed:
            scan.malformed += 1
        scan.log_entries.append(
            LogEntry.for_line(LogType.VALIDATION_FAILED, line, message, {"reason": reason})
        )
        if rejects is not None:
            rejects.write(line, row, reason)

    for line, row in rows:
        scan.rows_read += 1
        raw_id = _cell(row, mapping, "external_id")
        external_id = parse_external_id(raw_id)

        if external_id is None:
            reason = "short_row" if raw_id is None else "malformed_external_id"
            reject(line, row, reason, f"invalid external id {raw_id!r}", malformed=True)
            continue

        if external_id in statuses:
            statuses[external_id] = IdentifierStatus.REJECTED
            reject(
                line, row, "duplicate_external_id",
                f"{external_id} already exists in file", malformed=False,
            )
            continue

        problem = _row_problem(row, mapping, field_specs)
        if problem is not None:
            statuses[external_id] = IdentifierStatus.REJECTED
            reject(line, row, problem, f"{external_id} rejected: {problem}", malformed=True)
            continue

        statuses[external_id] = IdentifierStatus.VALIDATED

    return scan


# ---------------------------------------------------------------------------
# Stage 3: record syncing (pass 2)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserRecord:
    external_id: int
    email: str | None
    first_name: str | None
    last_name: str | None
    cart_number: str | None
    line: int | None = None

    def values(self) -> dict[str, Any]:
        """Field values as written to the store (line number excluded)."""
        out = asdict(self)
        out.pop("line")
        return out


def build_record(line: int, row: Row, mapping: HeaderMapping, external_id: int) -> UserRecord:
    return UserRecord(
        external_id=external_id,
        email=trim(_cell(row, mapping, "email")),
        first_name=trim(_cell(row, mapping, "first_name")),
        last_name=trim(_cell(row, mapping, "last_name")),
        cart_number=trim(_cell(row, mapping, "cart_number")),
        line=line,
    )


def sync_records(
    rows: Iterable[NumberedRow],
    mapping: HeaderMapping,
    statuses: Mapping[int, IdentifierStatus],
    chunk_size: int,
    flush: Callable[[list[UserRecord]], Any],
) -> int:
    """Queue validated rows and hand them to ``flush`` in chunks.

    A chunk is flushed as soon as it holds ``chunk_size`` records; any
    remainder is flushed after the last row. Rows with an unparseable or
    rejected id are skipped without logging (pass 1 already logged them).
    Returns the number of records queued.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    pending: list[UserRecord] = []
    queued = 0
    for line, row in rows:
        external_id = parse_external_id(_cell(row, mapping, "external_id"))
        if external_id is None or statuses.get(external_id) is not IdentifierStatus.VALIDATED:
            continue
        pending.append(build_record(line, row, mapping, external_id))
        queued += 1
        if len(pending) >= chunk_size:
            flush(pending)
            pending = []

    if pending:
        flush(pending)
    return queued


# ---------------------------------------------------------------------------
# Stage 4: batch writer
# ---------------------------------------------------------------------------

@dataclass
class BatchResult:
    new: int = 0
    updated: int = 0
    restored: int = 0
    log_entries: list[LogEntry] = field(default_factory=list)


def _snapshot(user: dict[str, Any]) -> dict[str, Any]:
    return {col: user[col] for col in USER_COLUMNS}


def write_batch(conn: psycopg.Connection, records: Sequence[UserRecord]) -> BatchResult:
    """Apply one chunk in a single transaction.

    Each record is looked up by external_id, soft-deleted rows included:
      no match      -> INSERT,  new += 1,      'added'
      soft-deleted  -> UPDATE + deleted_at cleared, restored += 1, 'restored'
      active        -> UPDATE,  updated += 1,  'updated'

    Any error rolls back the whole chunk and raises WriteFailure; the
    returned counts only exist for committed chunks.
    """
    result = BatchResult()
    try:
        for rec in records:
            values = rec.values()
            existing = find_user(conn, rec.external_id, with_trashed=True)
            if existing is None:
                insert_user(conn, values)
                result.new += 1
                result.log_entries.append(LogEntry.for_line(
                    LogType.ADDED, rec.line, f"{rec.external_id} added", {"new": values},
                ))
                continue

            update_user(conn, values)
            context = {"previous": _snapshot(existing), "new": values}
            if existing["deleted_at"] is not None:
                result.restored += 1
                result.log_entries.append(LogEntry.for_line(
                    LogType.RESTORED, rec.line, f"{rec.external_id} restored", context,
                ))
            else:
                result.updated += 1
                result.log_entries.append(LogEntry.for_line(
                    LogType.UPDATED, rec.line, f"{rec.external_id} updated", context,
                ))
        conn.commit()
    except Exception as exc:
        conn.rollback()
        first_line = records[0].line if records else None
        raise WriteFailure(
            f"batch of {len(records)} starting at line {first_line} rolled back: "
            f"{type(exc).__name__}: {exc}",
            batch_size=len(records),
            first_line=first_line,
        ) from exc
    return result


# ---------------------------------------------------------------------------
# Stage 5: stale pruning
# ---------------------------------------------------------------------------

def prune_stale(conn: psycopg.Connection, watermark: Any) -> int:
    """Soft-delete users not written since the watermark; commit; return count."""
    try:
        deleted = soft_delete_stale(conn, watermark)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return deleted


# ---------------------------------------------------------------------------
# Run object
# ---------------------------------------------------------------------------

@dataclass
class SyncRun:
    """Mutable run context: state, counters and the pending audit entries."""

    run_id: str
    config: SyncConfig
    log_sink: LogSink | None = None
    summary: SyncSummary = field(default_factory=SyncSummary)
    state: RunState = RunState.IDLE
    pending_log: list[LogEntry] = field(default_factory=list)
    batch_sizes: list[int] = field(default_factory=list)

    def advance(self, new_state: RunState) -> None:
        if new_state is RunState.FAILED:
            self.state = new_state
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        self.state = new_state

    def buffer_log(self, entries: Iterable[LogEntry]) -> None:
        self.pending_log.extend(entries)

    def persist_log(self) -> None:
        """Hand every pending entry to the sink, then clear the buffer."""
        if not self.pending_log:
            return
        if self.log_sink is None:
            raise RuntimeError("no log sink configured")
        self.log_sink.write(self.run_id, self.pending_log)
        self.pending_log = []

    def flush_batch(self, conn: psycopg.Connection, records: list[UserRecord]) -> None:
        result = write_batch(conn, records)
        self.summary.new += result.new
        self.summary.updated += result.updated
        self.summary.restored += result.restored
        self.summary.batches_written += 1
        self.batch_sizes.append(len(records))
        self.buffer_log(result.log_entries)
        self.persist_log()


@dataclass
class SyncResult:
    run_id: str
    outcome: RunOutcome
    summary: SyncSummary
    errors: list[str] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is RunOutcome.COMPLETED


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------

def stage_input(csv_path: Path, work_dir: Path | None = None) -> Path:
    """Copy the input to a private working file so it cannot change mid-run."""
    target_dir = work_dir or Path(tempfile.gettempdir()) / "user_sync"
    staged = target_dir / f"{uuid.uuid4().hex}.csv"
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(csv_path, staged)
    except OSError as exc:
        staged.unlink(missing_ok=True)
        raise StagingError(f"Cannot copy file {csv_path}: {exc}") from exc
    return staged


def cleanup_staged(staged: Path | None) -> None:
    if staged is not None:
        staged.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Main run entry point
# ---------------------------------------------------------------------------

def run_user_sync(
    db_dsn: str,
    csv_path: Path,
    config: SyncConfig | None = None,
    run_id: str | None = None,
    log_sink: LogSink | None = None,
    rejects: RejectWriter | None = None,
) -> SyncResult:
    """Run one reconciliation of ``users`` against ``csv_path``.

    Returns a SyncResult; fatal run errors are reported through its outcome
    rather than raised. ``log_sink`` defaults to DbLogSink on the run's
    connection.
    """
    run_id = run_id or str(uuid.uuid4())
    config = config or SyncConfig()
    run = SyncRun(run_id=run_id, config=config, log_sink=log_sink)
    summary = run.summary
    started = time.monotonic()

    conn: psycopg.Connection | None = None
    lock_held = False
    staged: Path | None = None
    fh = None
    errors: list[str] = []
    error: BaseException | None = None

    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
        if run.log_sink is None:
            run.log_sink = DbLogSink(conn)

        lock_held = try_acquire_run_lock(conn, config.lock_key)
        if not lock_held:
            raise ConcurrentRunError(
                f"another user sync holds lock {config.lock_key}; refusing to run"
            )

        summary.started_at = fetch_db_now(conn)
        staged = stage_input(csv_path, config.work_dir)
        try:
            fh = staged.open(encoding="utf-8-sig", newline="")
        except OSError as exc:
            raise StagingError(f"Cannot open file {staged}: {exc}") from exc
        run.advance(RunState.INITIALIZED)

        try:
            reader = csv.reader(fh)
            mapping = map_header(next(reader, None), config.field_specs)
            for warning in mapping.warnings:
                log.warning("[%s] %s", run_id, warning)
            summary.warnings.extend(mapping.warnings)
            if not mapping.ok:
                raise HeaderValidationError(mapping.errors)
            run.advance(RunState.HEADER_VALIDATED)

            scan = collect_identifiers(iter_rows(reader), mapping, config.field_specs, rejects)
        except (UnicodeDecodeError, csv.Error) as exc:
            raise StagingError(f"Cannot read file {csv_path}: {exc}") from exc
        summary.rows_read = scan.rows_read
        summary.rejected = scan.rejected
        summary.malformed = scan.malformed
        run.buffer_log(scan.log_entries)
        run.advance(RunState.IDENTIFIERS_COLLECTED)
        click.echo(
            f"[{run_id}] Header and identifiers validated: {scan.rows_read} rows, "
            f"{scan.rejected} rejected"
        )

        # Pass 2 from just past the header.
        fh.seek(0)
        reader = csv.reader(fh)
        next(reader, None)
        run.advance(RunState.SYNCING)
        sync_records(
            iter_rows(reader),
            mapping,
            scan.statuses,
            config.chunk_size,
            lambda records: run.flush_batch(conn, records),
        )

        summary.deleted = prune_stale(conn, summary.started_at)
        run.buffer_log([LogEntry(
            LogType.REMOVED,
            f"{summary.deleted} users not present in file soft-deleted",
            {"deleted": summary.deleted, "watermark": summary.started_at},
        )])
        run.persist_log()
        run.advance(RunState.PRUNED)
        run.advance(RunState.COMPLETED)

    except HeaderValidationError as exc:
        errors, error = list(exc.errors), exc
    except UserSyncError as exc:
        errors, error = [str(exc)], exc
    except psycopg.Error as exc:
        errors, error = [f"database error: {exc}"], exc
    finally:
        if fh is not None:
            fh.close()
        cleanup_staged(staged)
        if conn is not None:
            if lock_held:
                try:
                    release_run_lock(conn, config.lock_key)
                except psycopg.Error as exc:
                    # Session locks are dropped with the connection below.
                    log.warning("[%s] advisory unlock failed: %s", run_id, exc)
            conn.close()
        summary.elapsed_seconds = round(time.monotonic() - started, 3)

    if error is None:
        outcome = RunOutcome.COMPLETED
    else:
        outcome = (
            RunOutcome.FAILED_DURING_MUTATION
            if run.state in _MUTATING_STATES
            else RunOutcome.FAILED_BEFORE_MUTATION
        )
        run.advance(RunState.FAILED)

    click.echo(
        f"[{run_id}] {outcome.value}: {summary.new} new, {summary.updated} updated, "
        f"{summary.restored} restored, {summary.rejected} rejected, "
        f"{summary.deleted} deleted"
    )
    return SyncResult(run_id=run_id, outcome=outcome, summary=summary, errors=errors, error=error)
