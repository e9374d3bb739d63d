"""user_sync.log_sink

Persistent sinks for the per-record audit trail.

Every sink receives ordered LogEntry batches and stores them as
``{type, message, context}`` records tagged with the run id. A sink either
persists the whole batch or raises LogPersistenceError; failures are never
swallowed.

Sinks:
  DbLogSink    -- rows in user_sync_log (migrations/0001_users.sql)
  JsonlLogSink -- append-only newline-delimited JSON file
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence

import psycopg

from user_sync.shared import LogEntry, LogPersistenceError


class LogSink(Protocol):
    def write(self, run_id: str, entries: Sequence[LogEntry]) -> int:
        """Persist entries in order; return the number written."""
        ...


@dataclass
class DbLogSink:
    """Write entries to user_sync_log in their own transaction.

    The connection must not have an open transaction when write() is
    called; BatchWriter only calls it after the batch commit.
    """

    conn: psycopg.Connection
    _seq: int = field(default=0, init=False)

    def write(self, run_id: str, entries: Sequence[LogEntry]) -> int:
        if not entries:
            return 0
        start = self._seq
        rows = [
            (run_id, start + idx + 1, e.type.value, e.message,
             json.dumps(e.context, ensure_ascii=False, default=str))
            for idx, e in enumerate(entries)
        ]
        try:
            with self.conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO user_sync_log
                      (run_id, seq, entry_type, message, context)
                    VALUES (%s, %s, %s, %s, %s::jsonb)
                    """,
                    rows,
                )
            self.conn.commit()
        except psycopg.Error as exc:
            self.conn.rollback()
            raise LogPersistenceError(
                f"failed to persist {len(entries)} log entries: {exc}"
            ) from exc
        self._seq = start + len(entries)
        return len(entries)


@dataclass
class JsonlLogSink:
    """Append entries to a newline-delimited JSON file."""

    path: Path

    def write(self, run_id: str, entries: Sequence[LogEntry]) -> int:
        if not entries:
            return 0
        lines = [
            json.dumps({"run_id": run_id, **e.to_dict()}, ensure_ascii=False, default=str)
            for e in entries
        ]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write("\n".join(lines) + "\n")
                fh.flush()
        except OSError as exc:
            raise LogPersistenceError(
                f"failed to append {len(entries)} log entries to {self.path}: {exc}"
            ) from exc
        return len(entries)
