"""Database layer for ripple - SQLite with pluggable connections.

This module provides the persistence operations for ripple:
- Thread-local connections configured from RIPPLE_DB (CLI, tests)
- Explicit connections for the async store adapter
- In-memory databases for testing

Every operation takes an optional ``conn``; when omitted the thread-local
connection is used.

Connection Management:
    # Global thread-local connection
    init_db()
    user = create_user(display_name="Alice")

    # Scoped connection
    with scoped_connection("/path/to/ripple.db") as conn:
        init_db_with_conn(conn)
        room = create_room(user["user_id"], conn=conn)

Ordering:
    Room messages carry a ``seq`` order key assigned inside the INSERT
    statement itself (max + 1 for the room) and guarded by a
    UNIQUE(room_id, seq) constraint, so two writers can never share a key.
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from uuid_extensions import uuid7 as make_uuid7

from .auth import derive_user_id, generate_token, hash_token

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 3

# Thread-local storage for per-thread connections
_local = threading.local()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Connection Management ---


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create database connection.

    Args:
        db_path: Optional explicit database path. If given, a new connection
                 is returned that the caller owns. ":memory:" creates a private
                 in-memory database. If None, a thread-local connection based
                 on RIPPLE_DB is returned.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            conn = sqlite3.connect(str(db_path), check_same_thread=False)
            # WAL lets several server processes share one database file
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    if not hasattr(_local, "conn") or _local.conn is None:
        db_path_env = os.environ.get("RIPPLE_DB", ":memory:")

        if db_path_env == ":memory:":
            # Shared cache so all threads in this process see the same data
            _local.conn = sqlite3.connect(
                f"file:ripple_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
        else:
            _local.conn = sqlite3.connect(db_path_env, check_same_thread=False)
            _local.conn.execute("PRAGMA journal_mode=WAL")
        _local.conn.execute("PRAGMA busy_timeout=5000")
        _local.conn.execute("PRAGMA foreign_keys=ON")
        _local.conn.row_factory = sqlite3.Row

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for scoped database connections.

    Creates a new connection that is automatically closed when the context exits.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db():
    """Close the thread-local connection, if any."""
    if hasattr(_local, "conn") and _local.conn is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Helper to get connection - uses provided conn or falls back to thread-local."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list) -> list[dict]:
    return [dict(row) for row in rows]


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    """Create the schema_version table if it doesn't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection | None = None) -> int:
    """Get the current schema version. Returns 0 if no migrations were applied."""
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)

    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
    row = cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


def record_migration(conn: sqlite3.Connection, version: int, description: str) -> None:
    """Record that a migration has been applied."""
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )
    conn.commit()


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """Check if a column exists in a table."""
    cursor = conn.execute(f"PRAGMA table_info({table})")
    columns = [row[1] for row in cursor.fetchall()]
    return column in columns


def _migrate_001_add_delivery_records(conn: sqlite3.Connection) -> None:
    """Migration 001: Add per-recipient delivery tracking."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS delivery_records (
            mid TEXT NOT NULL REFERENCES messages(mid) ON DELETE CASCADE,
            recipient_id TEXT NOT NULL,
            delivered_at TIMESTAMP,
            read_at TIMESTAMP,
            PRIMARY KEY (mid, recipient_id)
        )
    """)
    conn.commit()


def _migrate_002_add_reactions(conn: sqlite3.Connection) -> None:
    """Migration 002: Add message reactions."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS reactions (
            mid TEXT NOT NULL REFERENCES messages(mid) ON DELETE CASCADE,
            user_id TEXT NOT NULL,
            reaction TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (mid, user_id, reaction)
        )
    """)
    conn.commit()


def _migrate_003_add_attachments(conn: sqlite3.Connection) -> None:
    """Migration 003: Add attachments column to messages."""
    if not _column_exists(conn, "messages", "attachments"):
        conn.execute("ALTER TABLE messages ADD COLUMN attachments JSON DEFAULT '[]'")
        conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Add delivery_records table", _migrate_001_add_delivery_records),
    (2, "Add reactions table", _migrate_002_add_reactions),
    (3, "Add attachments column to messages", _migrate_003_add_attachments),
]


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Run any pending migrations.

    Returns a list of migration versions that were applied.
    """
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                record_migration(conn, version, description)
                applied.append(version)
            except Exception as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


# --- Schema Definition ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL,
        display_name TEXT,
        metadata JSON DEFAULT '{}',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS rooms (
        room_id TEXT PRIMARY KEY,
        display_name TEXT,
        is_private INTEGER NOT NULL DEFAULT 0,
        created_by TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS room_members (
        room_id TEXT NOT NULL REFERENCES rooms(room_id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
        role TEXT NOT NULL DEFAULT 'member',
        joined_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (room_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_room_members_user ON room_members(user_id);

    CREATE TABLE IF NOT EXISTS messages (
        mid TEXT PRIMARY KEY,
        room_id TEXT NOT NULL REFERENCES rooms(room_id) ON DELETE CASCADE,
        seq INTEGER NOT NULL,
        sender_id TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        attachments JSON DEFAULT '[]',
        created_at TIMESTAMP NOT NULL,
        edited_at TIMESTAMP,
        deleted_at TIMESTAMP,
        UNIQUE (room_id, seq)
    );
"""


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def init_db():
    """Initialize database schema using the thread-local connection."""
    conn = get_connection()
    init_db_with_conn(conn)


def reset_db(conn: sqlite3.Connection | None = None):
    """Reset database (for testing)."""
    conn = _get_conn(conn)
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("""
        DROP TABLE IF EXISTS reactions;
        DROP TABLE IF EXISTS delivery_records;
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS room_members;
        DROP TABLE IF EXISTS rooms;
        DROP TABLE IF EXISTS users;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- User Operations ---


def create_user(
    display_name: str | None = None,
    metadata: dict[str, Any] | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a user. Returns {user_id, token, display_name, metadata, created_at}.

    The token is only ever returned here; the database keeps its hash.
    """
    conn = _get_conn(conn)

    token = generate_token()
    user_id = derive_user_id(token)
    now = _now()

    conn.execute(
        """INSERT INTO users (user_id, token_hash, display_name, metadata, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (user_id, hash_token(token), display_name, json.dumps(metadata or {}), now),
    )
    conn.commit()

    return {
        "user_id": user_id,
        "token": token,
        "display_name": display_name,
        "metadata": metadata or {},
        "created_at": now,
    }


def get_user(user_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get user by ID (without the token hash)."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT user_id, display_name, metadata, created_at FROM users WHERE user_id = ?",
        (user_id,),
    )
    row = _row_to_dict(cursor.fetchone())
    if row:
        row["metadata"] = json.loads(row.get("metadata") or "{}")
    return row


def get_user_token_hash(user_id: str, conn: sqlite3.Connection | None = None) -> str | None:
    """Get the stored token hash for a user."""
    conn = _get_conn(conn)
    cursor = conn.execute("SELECT token_hash FROM users WHERE user_id = ?", (user_id,))
    row = cursor.fetchone()
    return row[0] if row else None


def list_users(conn: sqlite3.Connection | None = None) -> list[dict]:
    """List all users."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT user_id, display_name, metadata, created_at FROM users ORDER BY created_at"
    )
    rows = _rows_to_dicts(cursor.fetchall())
    for row in rows:
        row["metadata"] = json.loads(row.get("metadata") or "{}")
    return rows


# --- Room Operations ---


def create_room(
    created_by: str,
    display_name: str | None = None,
    is_private: bool = False,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a new room. The creator is added as its owner.

    Raises:
        ValueError: If the creator does not exist.
    """
    conn = _get_conn(conn)

    cursor = conn.execute("SELECT user_id FROM users WHERE user_id = ?", (created_by,))
    if not cursor.fetchone():
        raise ValueError(f"Creator {created_by} not found")

    room_id = str(make_uuid7())
    now = _now()

    conn.execute(
        """INSERT INTO rooms (room_id, display_name, is_private, created_by, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (room_id, display_name, int(is_private), created_by, now),
    )
    conn.execute(
        """INSERT INTO room_members (room_id, user_id, role, joined_at)
           VALUES (?, ?, 'owner', ?)""",
        (room_id, created_by, now),
    )
    conn.commit()

    return {
        "room_id": room_id,
        "display_name": display_name,
        "is_private": bool(is_private),
        "created_by": created_by,
        "created_at": now,
    }


def get_room(room_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get room by ID."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT room_id, display_name, is_private, created_by, created_at
           FROM rooms WHERE room_id = ?""",
        (room_id,),
    )
    row = _row_to_dict(cursor.fetchone())
    if row:
        row["is_private"] = bool(row["is_private"])
    return row


def list_rooms_for_user(user_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """List rooms a user is a member of, with their role."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT r.room_id, r.display_name, r.is_private, r.created_by, r.created_at,
                  m.role, m.joined_at
           FROM rooms r
           JOIN room_members m ON r.room_id = m.room_id
           WHERE m.user_id = ?
           ORDER BY r.created_at""",
        (user_id,),
    )
    rows = _rows_to_dicts(cursor.fetchall())
    for row in rows:
        row["is_private"] = bool(row["is_private"])
    return rows


def get_member(
    room_id: str,
    user_id: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Get membership info, or None if not a member."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT room_id, user_id, role, joined_at FROM room_members
           WHERE room_id = ? AND user_id = ?""",
        (room_id, user_id),
    )
    return _row_to_dict(cursor.fetchone())


def add_room_member(
    room_id: str,
    user_id: str,
    role: str = "member",
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Add a member to a room.

    Returns:
        Member info dict, or None if the user was already a member.

    Raises:
        ValueError: If the room or user is not found.
    """
    conn = _get_conn(conn)

    if get_room(room_id, conn=conn) is None:
        raise ValueError(f"Room {room_id} not found")

    cursor = conn.execute("SELECT user_id FROM users WHERE user_id = ?", (user_id,))
    if not cursor.fetchone():
        raise ValueError(f"User {user_id} not found")

    now = _now()
    cursor = conn.execute(
        """INSERT OR IGNORE INTO room_members (room_id, user_id, role, joined_at)
           VALUES (?, ?, ?, ?)""",
        (room_id, user_id, role, now),
    )
    conn.commit()

    if cursor.rowcount == 0:
        return None

    return {"room_id": room_id, "user_id": user_id, "role": role, "joined_at": now}


def remove_room_member(
    room_id: str,
    user_id: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Remove a member from a room. Returns False if not a member."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM room_members WHERE room_id = ? AND user_id = ?",
        (room_id, user_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def get_room_members(room_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """List all members of a room in join order."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT m.room_id, m.user_id, m.role, m.joined_at, u.display_name
           FROM room_members m
           JOIN users u ON m.user_id = u.user_id
           WHERE m.room_id = ?
           ORDER BY m.joined_at, m.rowid""",
        (room_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


# --- Message Operations ---

_MESSAGE_COLUMNS = (
    "mid, room_id, seq, sender_id, content, attachments, created_at, edited_at, deleted_at"
)


def _message_from_row(row: dict | None) -> dict | None:
    if row is None:
        return None
    row["attachments"] = json.loads(row.get("attachments") or "[]")
    return row


def insert_message(
    room_id: str,
    sender_id: str,
    content: str,
    attachments: list[str] | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Persist a room message and assign its order key.

    The order key is computed inside the INSERT so the read of the
    current maximum and the write happen in one statement, under a write
    lock taken before the read.
    """
    conn = _get_conn(conn)

    mid = str(make_uuid7())
    now = _now()

    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            f"""INSERT INTO messages ({_MESSAGE_COLUMNS})
                SELECT ?, ?, COALESCE(MAX(seq), 0) + 1, ?, ?, ?, ?, NULL, NULL
                FROM messages WHERE room_id = ?""",
            (mid, room_id, sender_id, content, json.dumps(attachments or []), now, room_id),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise

    message = get_message(mid, conn=conn)
    if message is None:
        raise sqlite3.DatabaseError(f"Inserted message {mid} could not be read back")
    return message


def get_message(mid: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a single message by ID."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE mid = ?", (mid,))
    return _message_from_row(_row_to_dict(cursor.fetchone()))


def update_message_content(
    mid: str,
    content: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Replace the content of a live message and stamp edited_at.

    Returns:
        The updated message, or None if the message does not exist or is deleted.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        """UPDATE messages SET content = ?, edited_at = ?
           WHERE mid = ? AND deleted_at IS NULL""",
        (content, _now(), mid),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_message(mid, conn=conn)


def tombstone_message(
    mid: str,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict | None, bool]:
    """Mark a message deleted, clearing content and attachments.

    The row is kept so sequence numbers and pagination stay stable.

    Returns:
        (message, changed) - message is None if it does not exist; changed
        is False if it was already deleted.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        """UPDATE messages SET content = '', attachments = '[]', deleted_at = ?
           WHERE mid = ? AND deleted_at IS NULL""",
        (_now(), mid),
    )
    conn.commit()
    return get_message(mid, conn=conn), cursor.rowcount > 0


def get_messages_by_room(
    room_id: str,
    before: int | None = None,
    after: int | None = None,
    limit: int = 50,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Page through a room's messages by order key.

    Args:
        room_id: Room ID
        before: Only messages with seq < before (newest first page)
        after: Only messages with seq > after (catch-up after reconnect)
        limit: Maximum number of messages to return

    Returns:
        Message dicts in ascending seq order. Without ``after`` the page is
        the newest ``limit`` messages below ``before``; with ``after`` it is
        the oldest ``limit`` messages above it.
    """
    conn = _get_conn(conn)

    query = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE room_id = ?"
    params: list[Any] = [room_id]

    if before is not None:
        query += " AND seq < ?"
        params.append(before)
    if after is not None:
        query += " AND seq > ?"
        params.append(after)

    ascending = after is not None
    query += " ORDER BY seq " + ("ASC" if ascending else "DESC") + " LIMIT ?"
    params.append(limit)

    cursor = conn.execute(query, tuple(params))
    rows = [_message_from_row(row) for row in _rows_to_dicts(cursor.fetchall())]
    if not ascending:
        rows.reverse()
    return rows  # type: ignore[return-value]


# --- Delivery Operations ---


def upsert_delivery_record(
    mid: str,
    recipient_id: str,
    delivered_at: str | None = None,
    read_at: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool, bool]:
    """Move a delivery record forward.

    Timestamps already set are never overwritten. A read also sets
    delivered_at when it is missing.

    Returns:
        (record, delivered_changed, read_changed)
    """
    conn = _get_conn(conn)

    if read_at is not None and delivered_at is None:
        delivered_at = read_at

    conn.execute("BEGIN IMMEDIATE")
    try:
        cursor = conn.execute(
            """SELECT delivered_at, read_at FROM delivery_records
               WHERE mid = ? AND recipient_id = ?""",
            (mid, recipient_id),
        )
        row = cursor.fetchone()
        old_delivered = row["delivered_at"] if row else None
        old_read = row["read_at"] if row else None

        new_delivered = old_delivered or delivered_at
        new_read = old_read or read_at
        if new_read and not new_delivered:
            new_delivered = new_read

        conn.execute(
            """INSERT INTO delivery_records (mid, recipient_id, delivered_at, read_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (mid, recipient_id) DO UPDATE
               SET delivered_at = excluded.delivered_at, read_at = excluded.read_at""",
            (mid, recipient_id, new_delivered, new_read),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise

    record = {
        "mid": mid,
        "recipient_id": recipient_id,
        "delivered_at": new_delivered,
        "read_at": new_read,
    }
    return record, new_delivered != old_delivered, new_read != old_read


def get_delivery_records(mid: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """Get all delivery records for a message."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT mid, recipient_id, delivered_at, read_at FROM delivery_records
           WHERE mid = ? ORDER BY recipient_id""",
        (mid,),
    )
    return _rows_to_dicts(cursor.fetchall())


# --- Reaction Operations ---


def add_reaction(
    mid: str,
    user_id: str,
    reaction: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Add a reaction. Returns False if the user already reacted this way."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """INSERT OR IGNORE INTO reactions (mid, user_id, reaction, created_at)
           VALUES (?, ?, ?, ?)""",
        (mid, user_id, reaction, _now()),
    )
    conn.commit()
    return cursor.rowcount > 0


def list_reactions(mid: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """List reactions on a message in the order they were added."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT mid, user_id, reaction, created_at FROM reactions
           WHERE mid = ? ORDER BY created_at, rowid""",
        (mid,),
    )
    return _rows_to_dicts(cursor.fetchall())
