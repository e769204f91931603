"""Ad-hoc database migrations for CalMirror."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_event_columns(conn) -> None:
    # databases created before attachments and reminders were mirrored
    columns = {
        "attachments": "TEXT",
        "reminders": "TEXT",
        "conference_data": "TEXT",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "event", name):
            conn.execute(text(f"ALTER TABLE event ADD COLUMN {name} {ddl_type}"))


def ensure_event_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_event_pending_action
            ON event (pending_action)
            WHERE pending_action IS NOT NULL
            """
        )
    )
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_event_calendar_start ON event (calendar_id, start)"))


def ensure_queue_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_syncqueueitem_order
            ON syncqueueitem (created_at, id)
            """
        )
    )


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_event_columns(conn)
        ensure_event_indexes(conn)
        ensure_queue_indexes(conn)


__all__ = ["run_all"]
