import os
import psycopg2
from psycopg2.extras import Json, RealDictCursor
from typing import Optional, Dict, Any, List, Sequence


def get_db_connection():
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise RuntimeError("DATABASE_URL not set")
    return psycopg2.connect(db_url)


def fetch_all(conn, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    """Run a SELECT and return every row as a plain dict."""
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql, params)
        return [dict(row) for row in cur.fetchall()]


def fetch_one(conn, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
    """Run a SELECT and return the first row as a dict, or None."""
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql, params)
        row = cur.fetchone()
        return dict(row) if row else None


def execute(conn, sql: str, params: Optional[Sequence[Any]] = None) -> int:
    """Run an INSERT/UPDATE/DELETE and return the affected row count."""
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return cur.rowcount


def as_json(value: Optional[Dict[str, Any]]):
    """Wrap a dict for a JSONB column (None stays NULL)."""
    return Json(value) if value is not None else None
