"""
Schema migrations for databases created by earlier releases.

Columns are added with ALTER TABLE ADD COLUMN and only when absent, so this
runs on every start after create_all(). SQLite only (PRAGMA table_info);
other backends are expected to be created fresh by create_all().
"""
import logging

from sqlalchemy import text

logger = logging.getLogger(__name__)


def run_migrations(engine) -> None:
    """Apply all pending schema migrations. Safe to call repeatedly."""
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        # Run: extra weather fields from the One Call 3.0 payload
        _add_column_if_missing(conn, "run", "weather_description", "VARCHAR")
        _add_column_if_missing(conn, "run", "visibility_meters", "FLOAT")
        _add_column_if_missing(conn, "run", "uv_index", "FLOAT")

        # SyncSession: resumable sessions
        _add_column_if_missing(conn, "syncsession", "retry_count", "INTEGER NOT NULL DEFAULT 0")
        _add_column_if_missing(conn, "syncsession", "last_successful_page", "INTEGER NOT NULL DEFAULT 0")
        _add_column_if_missing(conn, "syncsession", "checkpoint_data", "JSON")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> bool:
    """Add `column` to `table` unless it exists. Returns True when added."""
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if not existing_columns or column in existing_columns:
        return False
    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
    logger.info("Added column %s.%s", table, column)
    return True
