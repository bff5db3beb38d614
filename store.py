# store.py: psycopg3 pool + table-level store for the exam portal
# Connection resolution order: FORCE_TCP > DATABASE_URL_LOCAL > DATABASE_URL > Cloud SQL socket > TCP.

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse, parse_qs, unquote

import psycopg
from psycopg import sql
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}
POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE") or 6)

TABLES = ("users", "sessions", "test_logs", "discussions", "discussion_replies", "client_cache")


class StoreError(Exception):
    """Remote store call failed."""


class DuplicateRecord(StoreError):
    """Insert hit a unique key that already exists."""


def _on_managed_runtime() -> bool:
    # GAE or Cloud Run, etc.
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _log_choice(kwargs: dict, origin: str):
    if "host" in kwargs and isinstance(kwargs["host"], str) and kwargs["host"].startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {kwargs['host']}")
    else:
        host = kwargs.get("host", "localhost")
        port = kwargs.get("port", 5432)
        print(f"[DB] {origin}: TCP -> {host}:{port}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # Normalize SA-style scheme to plain postgres for psycopg usage
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = qs["host"][0] if qs.get("host") else p.hostname
    dbname = (p.path or "").lstrip("/") or (qs["dbname"][0] if qs.get("dbname") else "")
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    if not managed and DATABASE_URL_LOCAL:
        try:
            kwargs = _parse_database_url(DATABASE_URL_LOCAL)
            _log_choice(kwargs, "Using DATABASE_URL_LOCAL (parsed)")
            return kwargs
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL_LOCAL: {e}")

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.")
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}")

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = _to_conninfo(connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=1, max_size=POOL_MAX_SIZE, open=True)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

# =============================================================================
# Schema (AUTO_MIGRATE=1)
# =============================================================================
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS public.users (
    id           BIGSERIAL PRIMARY KEY,
    register_no  TEXT NOT NULL UNIQUE,
    password     TEXT,
    student_name TEXT,
    is_admin     BOOLEAN NOT NULL DEFAULT FALSE,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS public.sessions (
    id         BIGSERIAL PRIMARY KEY,
    user_id    BIGINT NOT NULL REFERENCES public.users(id) ON DELETE CASCADE,
    token      TEXT NOT NULL UNIQUE,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS public.test_logs (
    id                 TEXT PRIMARY KEY,
    user_id            BIGINT REFERENCES public.users(id) ON DELETE SET NULL,
    register_no        TEXT,
    student_name       TEXT,
    test_name          TEXT NOT NULL,
    test_type          TEXT NOT NULL,
    score              INTEGER NOT NULL DEFAULT 0,
    total_questions    INTEGER NOT NULL DEFAULT 0,
    questions_answered INTEGER NOT NULL DEFAULT 0,
    percentage         INTEGER NOT NULL DEFAULT 0,
    time_spent         TEXT,
    taken_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    questions_map      JSONB,
    questions_snapshot JSONB
);
CREATE INDEX IF NOT EXISTS test_logs_user_taken_idx ON public.test_logs (user_id, taken_at DESC);
CREATE TABLE IF NOT EXISTS public.discussions (
    id          BIGSERIAL PRIMARY KEY,
    user_id     BIGINT REFERENCES public.users(id) ON DELETE SET NULL,
    username    TEXT,
    title       TEXT NOT NULL,
    body        TEXT NOT NULL,
    category    TEXT NOT NULL DEFAULT 'general',
    question_id INTEGER,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS public.discussion_replies (
    id              BIGSERIAL PRIMARY KEY,
    discussion_id   BIGINT NOT NULL REFERENCES public.discussions(id) ON DELETE CASCADE,
    user_id         BIGINT REFERENCES public.users(id) ON DELETE SET NULL,
    username        TEXT,
    body            TEXT NOT NULL,
    parent_reply_id BIGINT REFERENCES public.discussion_replies(id) ON DELETE CASCADE,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS public.client_cache (
    client_id  TEXT NOT NULL,
    key        TEXT NOT NULL,
    value      TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (client_id, key)
);
CREATE INDEX IF NOT EXISTS client_cache_updated_idx ON public.client_cache (updated_at);
"""

def ensure_schema():
    try:
        execute(SCHEMA_SQL)
        print("[DB] schema ensured")
    except psycopg.Error as e:
        print(f"[DB] schema ensure failed: {e}")

# =============================================================================
# Table-level store
# =============================================================================
Order = Sequence[Tuple[str, str]]


class RemoteStore:
    """
    insert / select_one / select_many / update / delete / upsert / purge_before over the
    whitelisted tables.

    Filters are {column: value}; a list/tuple/set value matches any member and
    None matches NULL. dict/list column values are sent as jsonb.
    """

    def __init__(self, conn_factory=None):
        self._conn = conn_factory or get_conn

    # ---- SQL builders ----------------------------------------------------------
    @staticmethod
    def _table(table: str) -> sql.Composable:
        if table not in TABLES:
            raise StoreError(f"unknown table: {table}")
        return sql.Identifier("public", table)

    @staticmethod
    def _adapt(value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return Jsonb(value)
        return value

    @staticmethod
    def _where(filters: Optional[Dict[str, Any]]) -> Tuple[sql.Composable, List[Any]]:
        if not filters:
            return sql.SQL(""), []
        clauses, params = [], []
        for col, value in filters.items():
            ident = sql.Identifier(col)
            if value is None:
                clauses.append(sql.SQL("{} IS NULL").format(ident))
            elif isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(sql.SQL("{} = ANY(%s)").format(ident))
                params.append(list(value))
            else:
                clauses.append(sql.SQL("{} = %s").format(ident))
                params.append(value)
        return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params

    @staticmethod
    def _columns(columns: Optional[Iterable[str]]) -> sql.Composable:
        if not columns:
            return sql.SQL("*")
        return sql.SQL(", ").join(sql.Identifier(c) for c in columns)

    @staticmethod
    def _order(order: Optional[Order]) -> sql.Composable:
        if not order:
            return sql.SQL("")
        parts = []
        for col, direction in order:
            d = "DESC" if str(direction).lower() == "desc" else "ASC"
            parts.append(sql.SQL("{} " + d).format(sql.Identifier(col)))
        return sql.SQL(" ORDER BY ") + sql.SQL(", ").join(parts)

    def _run(self, query: sql.Composable, params: Sequence[Any], fetch: bool = True) -> List[Dict[str, Any]]:
        try:
            with self._conn() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(query, params)
                    rows = cur.fetchall() if fetch and cur.description else []
                    count = cur.rowcount
                conn.commit()
        except UniqueViolation as e:
            raise DuplicateRecord(str(e).strip()) from e
        except psycopg.Error as e:
            raise StoreError(str(e).strip() or e.__class__.__name__) from e
        if not fetch:
            return [{"count": count}]
        return rows

    # ---- operations --------------------------------------------------------------
    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        cols = list(record.keys())
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            self._table(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            sql.SQL(", ").join(sql.Placeholder() for _ in cols),
        )
        rows = self._run(query, [self._adapt(record[c]) for c in cols])
        return rows[0] if rows else dict(record)

    def select_one(self, table: str, filters: Dict[str, Any],
                   columns: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
        rows = self.select_many(table, filters, limit=1, columns=columns)
        return rows[0] if rows else None

    def select_many(self, table: str, filters: Optional[Dict[str, Any]] = None,
                    order: Optional[Order] = None, limit: Optional[int] = None,
                    columns: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        where, params = self._where(filters)
        query = sql.SQL("SELECT {} FROM {}").format(self._columns(columns), self._table(table))
        query = query + where + self._order(order)
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(int(limit))
        return self._run(query, params)

    def update(self, table: str, filters: Dict[str, Any], patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not filters:
            raise StoreError("update without filters refused")
        cols = list(patch.keys())
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in cols
        )
        where, params = self._where(filters)
        query = sql.SQL("UPDATE {} SET ").format(self._table(table)) + assignments + where + sql.SQL(" RETURNING *")
        rows = self._run(query, [self._adapt(patch[c]) for c in cols] + params)
        return rows[0] if rows else None

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        if not filters:
            raise StoreError("delete without filters refused")
        where, params = self._where(filters)
        query = sql.SQL("DELETE FROM {}").format(self._table(table)) + where
        return int(self._run(query, params, fetch=False)[0]["count"] or 0)

    def upsert(self, table: str, record: Dict[str, Any], conflict: Sequence[str]) -> Dict[str, Any]:
        """Insert, or overwrite the non-key columns of the row sharing `conflict`."""
        cols = list(record.keys())
        updates = [c for c in cols if c not in conflict]
        if not updates:
            raise StoreError("upsert needs at least one non-key column")
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) DO UPDATE SET {} RETURNING *").format(
            self._table(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            sql.SQL(", ").join(sql.Placeholder() for _ in cols),
            sql.SQL(", ").join(sql.Identifier(c) for c in conflict),
            sql.SQL(", ").join(
                sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c)) for c in updates
            ),
        )
        rows = self._run(query, [self._adapt(record[c]) for c in cols])
        return rows[0] if rows else dict(record)

    def purge_before(self, table: str, column: str, cutoff: Any) -> int:
        """DELETE rows whose `column` is older than `cutoff`; returns the count."""
        query = sql.SQL("DELETE FROM {} WHERE {} < %s").format(self._table(table), sql.Identifier(column))
        return int(self._run(query, [cutoff], fetch=False)[0]["count"] or 0)
