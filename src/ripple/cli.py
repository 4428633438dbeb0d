"""CLI for ripple administration.

Runs the server and performs the admin tasks the HTTP surface leaves out,
working directly on the SQLite database:
- ripple serve
- ripple db init
- ripple user create
- ripple room create / ripple room add-member
- ripple history <room_id>

The database defaults to RIPPLE_DB, then ./ripple.db.
"""

from __future__ import annotations

import json
import os
import sys

import cyclopts

from . import db
from .options import RippleConfigError, RippleOptions, configure_logging

app = cyclopts.App(
    name="ripple",
    help="Real-time message fan-out and delivery tracking",
)

db_app = cyclopts.App(name="db", help="Database management")
user_app = cyclopts.App(name="user", help="User management")
room_app = cyclopts.App(name="room", help="Room management")

app.command(db_app)
app.command(user_app)
app.command(room_app)

DEFAULT_DB = "ripple.db"


def _resolve_db(path: str | None) -> str:
    return path or os.environ.get("RIPPLE_DB") or DEFAULT_DB


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    raise SystemExit(1)


@db_app.command(name="init")
def db_init(*, db_path: str | None = None):
    """Create the schema and apply pending migrations.

    --db-path: SQLite database file (default: RIPPLE_DB or ./ripple.db)
    """
    path = _resolve_db(db_path)
    with db.scoped_connection(path) as conn:
        db.init_db_with_conn(conn)
        version = db.get_schema_version(conn)
    print(f"Initialized {path} (schema version {version})")


@user_app.command(name="create")
def user_create(
    display_name: str | None = None,
    *,
    metadata_json: str | None = None,
    db_path: str | None = None,
):
    """Create a user and print its token.

    The token is shown only once; store it somewhere safe.
    """
    metadata = None
    if metadata_json:
        try:
            metadata = json.loads(metadata_json)
        except json.JSONDecodeError as e:
            _fail(f"Invalid metadata JSON: {e}")

    with db.scoped_connection(_resolve_db(db_path)) as conn:
        db.init_db_with_conn(conn)
        user = db.create_user(display_name=display_name, metadata=metadata, conn=conn)

    print(f"User ID: {user['user_id']}")
    print(f"Token:   {user['token']}")
    if display_name:
        print(f"Name:    {display_name}")


@room_app.command(name="create")
def room_create(
    created_by: str,
    *,
    display_name: str | None = None,
    private: bool = False,
    db_path: str | None = None,
):
    """Create a room owned by an existing user."""
    with db.scoped_connection(_resolve_db(db_path)) as conn:
        db.init_db_with_conn(conn)
        try:
            room = db.create_room(created_by, display_name=display_name, is_private=private, conn=conn)
        except ValueError as e:
            _fail(str(e))

    kind = "private" if room["is_private"] else "public"
    print(f"Room ID: {room['room_id']} ({kind})")


@room_app.command(name="add-member")
def room_add_member(
    room_id: str,
    user_id: str,
    *,
    role: str = "member",
    db_path: str | None = None,
):
    """Add a user to a room, bypassing role checks."""
    with db.scoped_connection(_resolve_db(db_path)) as conn:
        db.init_db_with_conn(conn)
        try:
            member = db.add_room_member(room_id, user_id, role=role, conn=conn)
        except ValueError as e:
            _fail(str(e))

    if member is None:
        _fail(f"User {user_id} is already a member of room {room_id}")
    print(f"Added {user_id} to {room_id} as {member['role']}")


@app.command
def history(
    room_id: str,
    *,
    before: int | None = None,
    after: int | None = None,
    limit: int = 50,
    db_path: str | None = None,
):
    """Print a page of a room's messages in order."""
    with db.scoped_connection(_resolve_db(db_path)) as conn:
        db.init_db_with_conn(conn)
        if db.get_room(room_id, conn=conn) is None:
            _fail(f"Room {room_id} not found")
        messages = db.get_messages_by_room(room_id, before=before, after=after, limit=limit, conn=conn)

    if not messages:
        print("No messages in room")
        return

    for msg in messages:
        created = (msg.get("created_at") or "")[:19]
        sender = msg["sender_id"][:8]
        body = "[deleted]" if msg.get("deleted_at") else msg["content"]
        if msg.get("attachments"):
            body += f" ({len(msg['attachments'])} attachments)"
        print(f"#{msg['seq']} [{created}] {sender}: {body}")


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    config: str | None = None,
):
    """Run the ripple server.

    Configuration comes from RIPPLE_* environment variables, or from a YAML
    file with --config. Set RIPPLE_REDIS_URL on every process to share
    events between them.
    """
    import uvicorn

    if config:
        try:
            options = RippleOptions.from_file(config)
        except RippleConfigError as e:
            _fail(str(e))
        if reload:
            _fail("--reload cannot be combined with --config")

        from .api import create_app

        configure_logging(options.log_level)
        uvicorn.run(create_app(options), host=host, port=port)
        return

    try:
        options = RippleOptions.from_env()
    except RippleConfigError as e:
        _fail(str(e))
    if not options.admin_token:
        print("WARNING: RIPPLE_ADMIN_TOKEN is not set; admin endpoints are disabled.\n")

    uvicorn.run(
        "ripple.api:app",
        host=host,
        port=port,
        reload=reload,
    )


def main():
    app()


if __name__ == "__main__":
    main()
