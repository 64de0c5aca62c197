"""Database layer. SQLite by default; set DATABASE_URL for MySQL (e.g. localhost:3306).
Startup ensures required tables exist; on connection failure logs verbosely and falls back to SQLite or in-memory so the app can start."""
import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from avifkit import config as app_config

logger = logging.getLogger("avifkit.db")

_engine: Optional[Engine] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("media_items", "variants", "capability_cache")


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def _is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    if _is_mysql():
        return "MySQL"
    if _is_sqlite():
        return "SQLite"
    return "other"


def _build_engine(url: str) -> Engine:
    kwargs = {}
    if "sqlite" in url:
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            # every pooled connection must see the same in-memory database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _build_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def configure_database(url: str) -> Engine:
    """Point the app at another database (tests, CLI overrides) and create tables."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    app_config.DATABASE_URL = url
    _engine = None
    engine = get_engine()
    _ensure_tables(engine)
    return engine


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS media_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            file_path TEXT NOT NULL,
            url TEXT NOT NULL,
            mime_type TEXT,
            sizes_json TEXT,
            created_at TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS variants (
            source_key TEXT NOT NULL,
            format TEXT NOT NULL,
            dimension_key TEXT NOT NULL,
            url TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (source_key, format, dimension_key)
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS capability_cache (
            format TEXT PRIMARY KEY,
            method TEXT NOT NULL,
            expires_at REAL NOT NULL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS media_items (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            file_path VARCHAR(1024) NOT NULL,
            url VARCHAR(1024) NOT NULL,
            mime_type VARCHAR(100),
            sizes_json TEXT,
            created_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS variants (
            source_key VARCHAR(512) NOT NULL,
            format VARCHAR(10) NOT NULL,
            dimension_key VARCHAR(50) NOT NULL,
            url VARCHAR(1024) NOT NULL,
            updated_at VARCHAR(50) NOT NULL,
            PRIMARY KEY (source_key, format, dimension_key)
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS capability_cache (
            format VARCHAR(10) PRIMARY KEY,
            method VARCHAR(20) NOT NULL,
            expires_at DOUBLE NOT NULL
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        if _is_mysql():
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup: ensure required tables exist. On failure, fall back to SQLite file or in-memory so the app can start."""
    global _engine
    kind = _db_kind()
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))

    try:
        engine = get_engine()
        _ensure_tables(engine)
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning(
            "Database connection failed (%s): %s. Will try fallback.",
            kind,
            e.orig,
            exc_info=True,
        )
        if _is_mysql():
            try:
                sqlite_path = app_config.BASE_DIR / "data" / "avifkit.db"
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)
                configure_database(f"sqlite:///{sqlite_path}")
                logger.warning(
                    "MySQL unavailable. Using SQLite at %s. Fix MYSQL_* in .env to use MySQL.",
                    sqlite_path,
                )
                return
            except Exception as fallback_err:
                logger.exception(
                    "SQLite file fallback failed: %s. Trying in-memory SQLite.",
                    fallback_err,
                )
        else:
            logger.exception("Database error (non-MySQL). Trying in-memory SQLite.")

    except Exception as e:
        logger.exception("Database init failed: %s. Trying in-memory SQLite.", e)

    # Last resort: in-memory SQLite so the app can run (registry will not persist across restarts)
    configure_database("sqlite:///:memory:")
    logger.warning(
        "Database unavailable. Using in-memory SQLite. Variant registry will not persist across restarts."
    )


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


# media_items -------------------------------------------------------------

def _media_row_to_dict(row) -> dict:
    return {
        "id": int(row[0]),
        "file_path": row[1],
        "url": row[2],
        "mime_type": row[3],
        "sizes": json.loads(row[4]) if row[4] else [],
    }


def insert_media_item(file_path: str, url: str, mime_type: Optional[str], sizes: list[str]) -> int:
    params = {
        "file_path": file_path,
        "url": url,
        "mime_type": mime_type,
        "sizes_json": json.dumps(sizes),
        "now": _now_iso(),
    }
    with session() as conn:
        result = conn.execute(
            text("""
                INSERT INTO media_items (file_path, url, mime_type, sizes_json, created_at)
                VALUES (:file_path, :url, :mime_type, :sizes_json, :now)
            """),
            params,
        )
        return int(result.lastrowid)


def get_media_item_row(item_id: int) -> Optional[dict]:
    with get_engine().connect() as conn:
        row = conn.execute(
            text("SELECT id, file_path, url, mime_type, sizes_json FROM media_items WHERE id = :id"),
            {"id": item_id},
        ).fetchone()
    return _media_row_to_dict(row) if row else None


def list_media_item_rows(mime_types: Optional[tuple[str, ...]] = None) -> list[dict]:
    """All media items ordered by id, optionally filtered by mime type."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("SELECT id, file_path, url, mime_type, sizes_json FROM media_items ORDER BY id")
        ).fetchall()
    items = [_media_row_to_dict(r) for r in rows]
    if mime_types is not None:
        items = [i for i in items if i["mime_type"] in mime_types]
    return items


def find_media_item_rows_by_filename(filename: str) -> list[dict]:
    """Items whose stored file path ends with the given basename."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("""
                SELECT id, file_path, url, mime_type, sizes_json FROM media_items
                WHERE file_path LIKE :pattern ORDER BY id
            """),
            {"pattern": f"%{filename}"},
        ).fetchall()
    return [_media_row_to_dict(r) for r in rows]


# variants ----------------------------------------------------------------

def upsert_variant(source_key: str, fmt: str, dimension_key: str, url: str) -> None:
    params = {
        "source_key": source_key,
        "format": fmt,
        "dimension_key": dimension_key,
        "url": url,
        "now": _now_iso(),
    }
    with session() as conn:
        if _is_mysql():
            conn.execute(
                text("""
                    INSERT INTO variants (source_key, format, dimension_key, url, updated_at)
                    VALUES (:source_key, :format, :dimension_key, :url, :now)
                    ON DUPLICATE KEY UPDATE url = :url, updated_at = :now
                """),
                params,
            )
        else:
            conn.execute(
                text("""
                    INSERT OR REPLACE INTO variants (source_key, format, dimension_key, url, updated_at)
                    VALUES (:source_key, :format, :dimension_key, :url, :now)
                """),
                params,
            )


def get_variant_rows(source_key: str, fmt: str) -> list[tuple[str, str]]:
    """(dimension_key, url) pairs for one source and format, in insertion order."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("""
                SELECT dimension_key, url FROM variants
                WHERE source_key = :sk AND format = :fmt ORDER BY updated_at, dimension_key
            """),
            {"sk": source_key, "fmt": fmt},
        ).fetchall()
    return [(r[0], r[1]) for r in rows]


def delete_all_variants() -> int:
    with session() as conn:
        result = conn.execute(text("DELETE FROM variants"))
        return result.rowcount or 0


# capability_cache ----------------------------------------------------------

def get_cached_capability(fmt: str) -> Optional[str]:
    """Stored method for the format, or None when missing or expired."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("SELECT method, expires_at FROM capability_cache WHERE format = :fmt"),
            {"fmt": fmt},
        ).fetchone()
    if not row or float(row[1]) <= time.time():
        return None
    return row[0]


def set_cached_capability(fmt: str, method: str, ttl_seconds: int) -> None:
    params = {"fmt": fmt, "method": method, "expires_at": time.time() + ttl_seconds}
    with session() as conn:
        if _is_mysql():
            conn.execute(
                text("""
                    INSERT INTO capability_cache (format, method, expires_at)
                    VALUES (:fmt, :method, :expires_at)
                    ON DUPLICATE KEY UPDATE method = :method, expires_at = :expires_at
                """),
                params,
            )
        else:
            conn.execute(
                text("""
                    INSERT OR REPLACE INTO capability_cache (format, method, expires_at)
                    VALUES (:fmt, :method, :expires_at)
                """),
                params,
            )


def delete_cached_capabilities() -> None:
    with session() as conn:
        conn.execute(text("DELETE FROM capability_cache"))
