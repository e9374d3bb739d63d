"""user_sync.user_store

SQL helpers for the ``users`` table and the run lock.

Callers manage transactions; none of the row-level helpers commit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import psycopg

USER_COLUMNS = (
    "id", "external_id", "email", "first_name", "last_name", "cart_number",
    "created_at", "updated_at", "deleted_at",
)

# Fields written from the input file.
SYNCED_FIELDS = ("external_id", "email", "first_name", "last_name", "cart_number")


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

def fetch_db_now(conn: psycopg.Connection) -> datetime:
    """Return the database clock in a transaction of its own.

    Used as the staleness watermark: every write made by later transactions
    of the run gets an ``updated_at`` strictly after it.
    """
    row = conn.execute("SELECT now()").fetchone()
    conn.commit()
    return row[0]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def find_user(
    conn: psycopg.Connection,
    external_id: int,
    with_trashed: bool = True,
) -> dict[str, Any] | None:
    """Return the user row for external_id as a dict, locking it for update."""
    trashed_clause = "" if with_trashed else "AND deleted_at IS NULL"
    row = conn.execute(
        f"""
        SELECT {", ".join(USER_COLUMNS)}
        FROM users
        WHERE external_id = %s {trashed_clause}
        FOR UPDATE
        """,
        (external_id,),
    ).fetchone()
    if row is None:
        return None
    return dict(zip(USER_COLUMNS, row))


def insert_user(conn: psycopg.Connection, values: dict[str, Any]) -> int:
    row = conn.execute(
        """
        INSERT INTO users
          (external_id, email, first_name, last_name, cart_number,
           created_at, updated_at, deleted_at)
        VALUES (%s, %s, %s, %s, %s, now(), now(), NULL)
        RETURNING id
        """,
        tuple(values[f] for f in SYNCED_FIELDS),
    ).fetchone()
    return int(row[0])


def update_user(conn: psycopg.Connection, values: dict[str, Any]) -> None:
    """Overwrite every synced field, refresh updated_at and clear deleted_at."""
    conn.execute(
        """
        UPDATE users SET
          email = %s,
          first_name = %s,
          last_name = %s,
          cart_number = %s,
          updated_at = now(),
          deleted_at = NULL
        WHERE external_id = %s
        """,
        (values["email"], values["first_name"], values["last_name"],
         values["cart_number"], values["external_id"]),
    )


def soft_delete_stale(conn: psycopg.Connection, before: datetime) -> int:
    """Soft-delete every active user not written since ``before``.

    Selecting by watermark avoids a NOT IN over every identifier in the file.
    """
    cur = conn.execute(
        """
        UPDATE users
        SET deleted_at = now()
        WHERE deleted_at IS NULL
          AND (updated_at IS NULL OR updated_at < %s)
        """,
        (before,),
    )
    return cur.rowcount


# ---------------------------------------------------------------------------
# Run lock
# ---------------------------------------------------------------------------

def try_acquire_run_lock(conn: psycopg.Connection, lock_key: int) -> bool:
    """Take the session-level advisory lock; False if another run holds it."""
    row = conn.execute("SELECT pg_try_advisory_lock(%s)", (lock_key,)).fetchone()
    conn.commit()
    return bool(row[0])


def release_run_lock(conn: psycopg.Connection, lock_key: int) -> None:
    conn.rollback()
    conn.execute("SELECT pg_advisory_unlock(%s)", (lock_key,))
    conn.commit()
