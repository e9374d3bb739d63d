"""Unit tests for the batch writer, run state machine, staging and log sinks.

The database is replaced by MagicMock connections and patched store helpers;
real SQL behaviour is covered in tests/integration.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from user_sync.log_sink import DbLogSink, JsonlLogSink
from user_sync.shared import (
    LogEntry,
    LogPersistenceError,
    LogType,
    StagingError,
    WriteFailure,
)
from user_sync.sync_config import SyncConfig
from user_sync.sync_engine import (
    InvalidTransition,
    RunState,
    SyncRun,
    UserRecord,
    cleanup_staged,
    stage_input,
    write_batch,
)

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _record(external_id: int, line: int = 2) -> UserRecord:
    return UserRecord(
        external_id, f"u{external_id}@x.com", "First", "Last", f"C{external_id}", line=line,
    )


def _stored(external_id: int, deleted_at: datetime | None = None) -> dict:
    return {
        "id": 100 + external_id,
        "external_id": external_id,
        "email": "old@x.com",
        "first_name": "Old",
        "last_name": "Name",
        "cart_number": f"C{external_id}",
        "created_at": T0,
        "updated_at": T0,
        "deleted_at": deleted_at,
    }


class _ListSink:
    def __init__(self) -> None:
        self.calls: list[tuple[str, list[LogEntry]]] = []

    def write(self, run_id, entries):
        self.calls.append((run_id, list(entries)))
        return len(entries)


# ---------------------------------------------------------------------------
# write_batch
# ---------------------------------------------------------------------------

class TestWriteBatch:
    def test_classifies_insert_update_restore(self):
        conn = MagicMock()
        existing = {1: None, 2: _stored(2), 3: _stored(3, deleted_at=T0)}
        with patch("user_sync.sync_engine.find_user", side_effect=lambda c, eid, with_trashed: existing[eid]), \
             patch("user_sync.sync_engine.insert_user") as ins, \
             patch("user_sync.sync_engine.update_user") as upd:
            result = write_batch(conn, [_record(1, 2), _record(2, 3), _record(3, 4)])

        assert (result.new, result.updated, result.restored) == (1, 1, 1)
        assert ins.call_count == 1
        assert upd.call_count == 2
        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()

        added, updated, restored = result.log_entries
        assert added.type is LogType.ADDED
        assert added.message == "line 2: 1 added"
        assert added.context == {"new": _record(1).values()}
        assert updated.type is LogType.UPDATED
        assert updated.context["previous"]["email"] == "old@x.com"
        assert updated.context["new"]["email"] == "u2@x.com"
        assert restored.type is LogType.RESTORED
        assert restored.message == "line 4: 3 restored"
        assert restored.context["previous"]["deleted_at"] == T0

    def test_lookup_includes_soft_deleted(self):
        conn = MagicMock()
        with patch("user_sync.sync_engine.find_user", return_value=None) as find, \
             patch("user_sync.sync_engine.insert_user"):
            write_batch(conn, [_record(1)])
        find.assert_called_once_with(conn, 1, with_trashed=True)

    def test_failure_rolls_back_whole_batch(self):
        conn = MagicMock()
        with patch("user_sync.sync_engine.find_user", return_value=None), \
             patch("user_sync.sync_engine.insert_user",
                   side_effect=[1, psycopg.errors.UniqueViolation("dup email")]):
            with pytest.raises(WriteFailure) as exc_info:
                write_batch(conn, [_record(1, 5), _record(2, 6)])

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        assert exc_info.value.batch_size == 2
        assert exc_info.value.first_line == 5
        assert isinstance(exc_info.value.__cause__, psycopg.errors.UniqueViolation)


# ---------------------------------------------------------------------------
# SyncRun
# ---------------------------------------------------------------------------

class TestSyncRun:
    def test_happy_path_transitions(self):
        run = SyncRun(run_id="r1", config=SyncConfig())
        for state in (
            RunState.INITIALIZED, RunState.HEADER_VALIDATED,
            RunState.IDENTIFIERS_COLLECTED, RunState.SYNCING,
            RunState.PRUNED, RunState.COMPLETED,
        ):
            run.advance(state)
        assert run.state is RunState.COMPLETED

    def test_skipping_a_stage_rejected(self):
        run = SyncRun(run_id="r1", config=SyncConfig())
        run.advance(RunState.INITIALIZED)
        with pytest.raises(InvalidTransition):
            run.advance(RunState.SYNCING)

    def test_fail_from_any_state(self):
        run = SyncRun(run_id="r1", config=SyncConfig())
        run.advance(RunState.INITIALIZED)
        run.advance(RunState.FAILED)
        assert run.state is RunState.FAILED
        with pytest.raises(InvalidTransition):
            run.advance(RunState.HEADER_VALIDATED)

    def test_persist_log_clears_buffer(self):
        sink = _ListSink()
        run = SyncRun(run_id="r1", config=SyncConfig(), log_sink=sink)
        entry = LogEntry(LogType.VALIDATION_FAILED, "line 3: 5 already exists in file")
        run.buffer_log([entry])
        run.persist_log()
        run.persist_log()
        assert sink.calls == [("r1", [entry])]
        assert run.pending_log == []

    def test_persist_log_without_sink(self):
        run = SyncRun(run_id="r1", config=SyncConfig())
        run.buffer_log([LogEntry(LogType.ADDED, "x")])
        with pytest.raises(RuntimeError):
            run.persist_log()

    def test_flush_batch_accumulates_and_logs_after_commit(self):
        sink = _ListSink()
        run = SyncRun(run_id="r1", config=SyncConfig(), log_sink=sink)
        validation = LogEntry(LogType.VALIDATION_FAILED, "line 9: 5 already exists in file")
        run.buffer_log([validation])
        conn = MagicMock()
        with patch("user_sync.sync_engine.find_user", return_value=None), \
             patch("user_sync.sync_engine.insert_user"):
            run.flush_batch(conn, [_record(1), _record(2)])
            run.flush_batch(conn, [_record(3)])

        assert run.summary.new == 3
        assert run.summary.batches_written == 2
        assert run.batch_sizes == [2, 1]
        first_entries = sink.calls[0][1]
        assert first_entries[0] is validation
        assert [e.type for e in first_entries[1:]] == [LogType.ADDED, LogType.ADDED]
        assert len(sink.calls[1][1]) == 1

    def test_failed_batch_leaves_counters_untouched(self):
        sink = _ListSink()
        run = SyncRun(run_id="r1", config=SyncConfig(), log_sink=sink)
        conn = MagicMock()
        with patch("user_sync.sync_engine.find_user", side_effect=psycopg.OperationalError("gone")):
            with pytest.raises(WriteFailure):
                run.flush_batch(conn, [_record(1)])
        assert run.summary.new == 0
        assert run.summary.batches_written == 0
        assert sink.calls == []


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------

class TestStaging:
    def test_copies_and_cleans_up(self, tmp_path):
        src = tmp_path / "users.csv"
        src.write_text("id,card\n1,111\n", encoding="utf-8")
        staged = stage_input(src, tmp_path / "work")
        assert staged.parent == tmp_path / "work"
        assert staged.read_text(encoding="utf-8") == "id,card\n1,111\n"
        src.write_text("changed", encoding="utf-8")
        assert staged.read_text(encoding="utf-8") == "id,card\n1,111\n"
        cleanup_staged(staged)
        assert not staged.exists()

    def test_missing_source(self, tmp_path):
        with pytest.raises(StagingError, match="Cannot copy file"):
            stage_input(tmp_path / "missing.csv", tmp_path / "work")
        assert list((tmp_path / "work").iterdir()) == []

    def test_cleanup_tolerates_missing(self, tmp_path):
        cleanup_staged(tmp_path / "gone.csv")
        cleanup_staged(None)


# ---------------------------------------------------------------------------
# Log sinks
# ---------------------------------------------------------------------------

class TestJsonlLogSink:
    def test_appends_entries(self, tmp_path):
        path = tmp_path / "logs" / "sync.jsonl"
        sink = JsonlLogSink(path)
        sink.write("r1", [LogEntry(LogType.ADDED, "line 2: 1 added", {"new": {"external_id": 1}})])
        sink.write("r1", [LogEntry(LogType.REMOVED, "3 users soft-deleted", {"watermark": T0})])
        lines = [json.loads(x) for x in path.read_text(encoding="utf-8").splitlines()]
        assert lines[0] == {
            "run_id": "r1",
            "type": "added",
            "message": "line 2: 1 added",
            "context": {"new": {"external_id": 1}},
        }
        assert lines[1]["type"] == "removed"
        assert lines[1]["context"]["watermark"].startswith("2026-01-01")

    def test_empty_write_is_noop(self, tmp_path):
        path = tmp_path / "sync.jsonl"
        assert JsonlLogSink(path).write("r1", []) == 0
        assert not path.exists()

    def test_failure_raises(self, tmp_path):
        sink = JsonlLogSink(tmp_path)  # a directory cannot be opened for append
        with pytest.raises(LogPersistenceError):
            sink.write("r1", [LogEntry(LogType.ADDED, "x")])


class TestDbLogSink:
    def test_inserts_in_order_and_commits(self):
        conn = MagicMock()
        sink = DbLogSink(conn)
        sink.write("r1", [LogEntry(LogType.ADDED, "a"), LogEntry(LogType.UPDATED, "b")])
        sink.write("r1", [LogEntry(LogType.REMOVED, "c")])

        cur = conn.cursor.return_value.__enter__.return_value
        first_rows = cur.executemany.call_args_list[0].args[1]
        second_rows = cur.executemany.call_args_list[1].args[1]
        assert [(r[1], r[2], r[3]) for r in first_rows] == [(1, "added", "a"), (2, "updated", "b")]
        assert second_rows[0][1] == 3
        assert conn.commit.call_count == 2

    def test_failure_rolls_back_and_raises(self):
        conn = MagicMock()
        cur = conn.cursor.return_value.__enter__.return_value
        cur.executemany.side_effect = psycopg.OperationalError("connection lost")
        sink = DbLogSink(conn)
        with pytest.raises(LogPersistenceError, match="connection lost"):
            sink.write("r1", [LogEntry(LogType.ADDED, "a")])
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
