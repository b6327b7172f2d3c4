"""Ad-hoc database migrations for the sync queue."""

from __future__ import annotations

from sqlalchemy import text

from models.pending_op import PendingOp


LEGACY_TABLE = "pendingop_legacy"


def _table_exists(conn, table: str) -> bool:
    result = conn.execute(
        text("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = :name"),
        {"name": table},
    )
    return result.first() is not None


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def upgrade_legacy_pending_ops(conn) -> int:
    """Rebuild a task-only ``pendingop`` table (``op``/``task_id``) in the current layout.

    Legacy rows become queued task operations; the kind is taken from the
    ``*_create`` / ``*_update`` / ``*_delete`` suffix of ``op``.
    """

    if not _table_exists(conn, "pendingop") or not _column_exists(conn, "pendingop", "op"):
        return 0

    conn.execute(text(f"ALTER TABLE pendingop RENAME TO {LEGACY_TABLE}"))
    # Index names are global in SQLite and would clash with the new table's.
    legacy_indexes = conn.execute(
        text(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'index' AND tbl_name = :table AND sql IS NOT NULL"
        ),
        {"table": LEGACY_TABLE},
    ).scalars().all()
    for name in legacy_indexes:
        conn.execute(text(f'DROP INDEX IF EXISTS "{name}"'))

    PendingOp.__table__.create(bind=conn)
    result = conn.execute(
        text(
            f"""
            INSERT INTO pendingop (
                id, uid, seq, entity_type, entity_id, kind, payload, status,
                attempts, last_error, created_at, updated_at, next_try_at
            )
            SELECT
                id,
                lower(hex(randomblob(16))),
                id,
                'task',
                CAST(task_id AS TEXT),
                CASE
                    WHEN op LIKE '%create' THEN 'create'
                    WHEN op LIKE '%delete' THEN 'delete'
                    ELSE 'update'
                END,
                COALESCE(payload, '{{}}'),
                'queued',
                COALESCE(attempts, 0),
                last_error,
                created_at,
                created_at,
                COALESCE(next_try_at, created_at)
            FROM {LEGACY_TABLE}
            ORDER BY id
            """
        )
    )
    conn.execute(text(f"DROP TABLE {LEGACY_TABLE}"))
    return result.rowcount or 0


def ensure_pending_op_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_pendingop_entity
            ON pendingop (entity_type, entity_id)
            """
        )
    )


def run_all(engine) -> None:
    with engine.begin() as conn:
        upgrade_legacy_pending_ops(conn)
        ensure_pending_op_indexes(conn)


__all__ = ["run_all", "upgrade_legacy_pending_ops"]
