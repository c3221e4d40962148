"""Database layer. SQLite by default; set DATABASE_URL for another SQLAlchemy backend.
Startup ensures required tables exist; on connection failure logs and falls back to in-memory SQLite so the app can start."""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from transcoder import config as app_config

logger = logging.getLogger("transcoder.db")

_engine: Optional[Engine] = None

REQUIRED_TABLES = ("session_activities", "exports")


def _is_sqlite() -> bool:
    return app_config.DATABASE_URL.startswith("sqlite")


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        kwargs = {}
        if _is_sqlite():
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in app_config.DATABASE_URL:
                # one shared connection, otherwise every thread sees its own empty database
                kwargs["poolclass"] = StaticPool
        _engine = create_engine(app_config.DATABASE_URL, **kwargs)
        logger.info("Database engine created (%s)", _engine.dialect.name)
    return _engine


def set_database_url(url: str) -> None:
    """Point the module at another database (tests, CLI overrides). Tables are created on init_db()."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None
    app_config.DATABASE_URL = url


def _create_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS session_activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id VARCHAR(64) NOT NULL,
            item_id VARCHAR(64) NOT NULL,
            filename VARCHAR(512),
            output_format VARCHAR(16),
            status VARCHAR(16) NOT NULL,
            reason VARCHAR(32),
            attempts INTEGER NOT NULL DEFAULT 1,
            input_bytes INTEGER,
            output_bytes INTEGER,
            created_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS exports (
            export_id VARCHAR(64) PRIMARY KEY,
            session_id VARCHAR(64) NOT NULL,
            entry_count INTEGER NOT NULL,
            failed_count INTEGER NOT NULL DEFAULT 0,
            archive_bytes INTEGER NOT NULL,
            created_at VARCHAR(50) NOT NULL
        )
    """))
    conn.commit()


def init_db() -> None:
    """Prepare database at startup. On failure, fall back to in-memory SQLite so the app can start."""
    try:
        with get_engine().connect() as conn:
            _create_tables(conn)
        logger.info("Database ready (tables: %s)", ", ".join(REQUIRED_TABLES))
        return
    except SQLAlchemyError:
        logger.exception("Database init failed. Trying in-memory SQLite.")
    set_database_url("sqlite:///:memory:")
    with get_engine().connect() as conn:
        _create_tables(conn)
    logger.warning("Database unavailable. Using in-memory SQLite; activity will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_activity(
    session_id: str,
    item_id: str,
    filename: str,
    status: str,
    *,
    output_format: Optional[str] = None,
    reason: Optional[str] = None,
    attempts: int = 1,
    input_bytes: Optional[int] = None,
    output_bytes: Optional[int] = None,
) -> None:
    params = {
        "session_id": session_id,
        "item_id": item_id,
        "filename": filename,
        "output_format": output_format,
        "status": status,
        "reason": reason,
        "attempts": attempts,
        "input_bytes": input_bytes,
        "output_bytes": output_bytes,
        "created_at": _now_iso(),
    }
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO session_activities (session_id, item_id, filename, output_format, status, reason, attempts, input_bytes, output_bytes, created_at)
                VALUES (:session_id, :item_id, :filename, :output_format, :status, :reason, :attempts, :input_bytes, :output_bytes, :created_at)
            """),
            params,
        )


def record_item(session_id: str, item) -> None:
    """Record the terminal outcome of a work item."""
    record_activity(
        session_id,
        item.id,
        item.original_name,
        item.status.value,
        output_format=item.options.format.value,
        reason=item.error.reason.value if item.error else None,
        attempts=item.attempts,
        input_bytes=item.original_size,
        output_bytes=item.result_size,
    )


def record_export(session_id: str, entry_count: int, failed_count: int, archive_bytes: int) -> str:
    export_id = uuid.uuid4().hex
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO exports (export_id, session_id, entry_count, failed_count, archive_bytes, created_at)
                VALUES (:export_id, :session_id, :entry_count, :failed_count, :archive_bytes, :created_at)
            """),
            {
                "export_id": export_id,
                "session_id": session_id,
                "entry_count": entry_count,
                "failed_count": failed_count,
                "archive_bytes": archive_bytes,
                "created_at": _now_iso(),
            },
        )
    return export_id


def get_session_stats(session_id: str) -> dict:
    """Aggregate stats for a session: images_converted, images_failed, byte totals, compression_percent, exports."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("""
                SELECT
                    COALESCE(SUM(CASE WHEN status = 'done' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'done' THEN input_bytes ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'done' THEN output_bytes ELSE 0 END), 0)
                FROM session_activities WHERE session_id = :sid
            """),
            {"sid": session_id},
        ).fetchone()
        exports = conn.execute(
            text("SELECT COUNT(*) FROM exports WHERE session_id = :sid"),
            {"sid": session_id},
        ).scalar()
    converted, failed, total_input, total_output = (int(v) for v in row)
    compression_percent = 0.0
    if total_input > 0:
        compression_percent = round((1.0 - total_output / total_input) * 100.0, 1)
    return {
        "images_converted": converted,
        "images_failed": failed,
        "total_input_bytes": total_input,
        "total_output_bytes": total_output,
        "compression_percent": compression_percent,
        "exports": int(exports or 0),
    }


def get_session_activities(session_id: str, limit: int = 100) -> list[dict]:
    """Recent activities for the session, newest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("""
                SELECT item_id, filename, output_format, status, reason, attempts, input_bytes, output_bytes, created_at
                FROM session_activities WHERE session_id = :sid ORDER BY id DESC LIMIT :lim
            """),
            {"sid": session_id, "lim": limit},
        ).fetchall()
    return [
        {
            "item_id": r[0],
            "filename": r[1],
            "output_format": r[2],
            "status": r[3],
            "reason": r[4],
            "attempts": r[5],
            "input_bytes": r[6],
            "output_bytes": r[7],
            "created_at": r[8],
        }
        for r in rows
    ]


def delete_session_data(session_id: str) -> int:
    """Delete all activity and export rows for the session. Returns the number of activity rows removed."""
    with session() as conn:
        deleted = conn.execute(text("DELETE FROM session_activities WHERE session_id = :sid"), {"sid": session_id}).rowcount
        conn.execute(text("DELETE FROM exports WHERE session_id = :sid"), {"sid": session_id})
    return deleted
