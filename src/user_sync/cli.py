"""user_sync.cli

Command-line entry point for the user file reconciliation.

Usage:
    python -m user_sync.cli \\
        --db-dsn "$DB_DSN" \\
        --csv-path "storage/users.csv" \\
        --config config/user_sync.yml \\
        --rejects-path "artifacts/rejects/user_sync_rejects.csv"

Exit codes:
    0  completed
    1  failed before any change to the store
    2  failed after some batches were committed (store partially updated)

Runs must be serialized per store; a second concurrent run exits 1.
"""

from __future__ import annotations

import sys
import time
import uuid
from pathlib import Path

import click

from user_sync.log_sink import JsonlLogSink
from user_sync.shared import RejectWriter, RunOutcome, write_run_report
from user_sync.sync_config import (
    ConfigValidationError,
    SyncConfig,
    load_sync_config,
)
from user_sync.sync_engine import run_user_sync

_EXIT_CODES = {
    RunOutcome.COMPLETED: 0,
    RunOutcome.FAILED_BEFORE_MUTATION: 1,
    RunOutcome.FAILED_DURING_MUTATION: 2,
}


@click.command()
@click.option("--db-dsn", required=True, envvar="USER_SYNC_DB_DSN", help="PostgreSQL DSN")
@click.option("--csv-path", required=True, type=click.Path(path_type=Path), help="User file to reconcile")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML run config (fields, synonyms, chunk size, lock key)",
)
@click.option("--chunk-size", default=None, type=click.IntRange(min=1), help="Records per transaction [default: 10000]")
@click.option("--work-dir", default=None, type=click.Path(file_okay=False, path_type=Path), help="Where the input is staged")
@click.option(
    "--log-sink",
    default="db",
    type=click.Choice(["db", "jsonl"]),
    show_default=True,
    help="Audit log target: user_sync_log table or a JSONL file",
)
@click.option(
    "--log-path",
    default="./artifacts/logs/user_sync.jsonl",
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="[jsonl] Audit log file",
)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/user_sync_rejects.csv",
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
)
@click.option("--report/--no-report", default=True, show_default=True, help="Write a JSON run report")
@click.option(
    "--reports-dir",
    default="./artifacts/reports",
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    db_dsn: str,
    csv_path: Path,
    config_path: Path | None,
    chunk_size: int | None,
    work_dir: Path | None,
    log_sink: str,
    log_path: Path,
    rejects_path: Path,
    report: bool,
    reports_dir: Path,
    run_id: str | None,
) -> None:
    """Sync users from a CSV file."""
    start = time.monotonic()
    run_id = run_id or str(uuid.uuid4())

    try:
        config = load_sync_config(config_path) if config_path else SyncConfig()
        config = config.with_overrides(chunk_size=chunk_size, work_dir=work_dir)
    except (ConfigValidationError, OSError) as exc:
        click.echo(f"[{run_id}] FATAL: invalid config: {exc}", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] processing file {csv_path} (chunk_size={config.chunk_size})")

    sink = JsonlLogSink(log_path) if log_sink == "jsonl" else None
    rejects = RejectWriter(rejects_path)
    try:
        result = run_user_sync(
            db_dsn,
            csv_path,
            config=config,
            run_id=run_id,
            log_sink=sink,
            rejects=rejects,
        )
    finally:
        rejects.close()

    if rejects.rows_written:
        click.echo(f"[{run_id}] {rejects.rows_written} rejected rows written to {rejects_path}")

    if report:
        report_path = write_run_report(
            run_id,
            result.outcome,
            str(csv_path),
            result.summary,
            result.errors,
            config_hash=config.yaml_hash,
            reports_dir=reports_dir,
        )
        click.echo(f"[{run_id}] report written to {report_path}")

    if not result.ok:
        click.echo(f"[{run_id}] Something went wrong ({result.outcome.value}):", err=True)
        for error in result.errors:
            click.echo(f"[{run_id}]   {error}", err=True)
        sys.exit(_EXIT_CODES[result.outcome])

    click.echo(f"[{run_id}] finished in {time.monotonic() - start:.2f} sec")


if __name__ == "__main__":
    main()
