# backend/db.py
# Database layer: SQLite connections for local dev, a SQLAlchemy engine for
# Postgres, and the session settings that drive Postgres Row-Level Security.

import json
import logging
import re
import sqlite3
from collections.abc import Mapping
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path as FsPath
from typing import Any, Dict, Generator, Iterator, List, Optional, Tuple, Union
from urllib.parse import urlparse

from sqlalchemy import create_engine, pool, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError

try:
    from backend.config import DATABASE_PATH, DATABASE_URL, IS_POSTGRES
except ModuleNotFoundError:
    from config import DATABASE_PATH, DATABASE_URL, IS_POSTGRES


logger = logging.getLogger(__name__)

# Global engine (SQLAlchemy) or None for SQLite
_engine: Optional[Engine] = None

# Session keys read by the RLS policies installed in backend/migrate.py
TENANT_SETTING = "app.current_tenant_id"
ROLE_SETTING = "app.current_role"

# Role for flows that resolve the tenant themselves (login, public proposal
# links, Stripe webhooks). The RLS policies let it through like super_admin.
SYSTEM_ROLE = "system"


def sqlite_path() -> str:
    """Absolute path of the SQLite file (DATABASE_PATH is relative to backend/)."""
    return str(FsPath(__file__).resolve().parent / DATABASE_PATH)


def get_db(tenant_id: Optional[int] = None, role: str = "") -> Union[sqlite3.Connection, "PgConnection"]:
    """
    Open a connection for one request.

    SQLite: a plain connection with Row factory; tenant_id and role are
    unused because every query filters on tenant_id itself.
    Postgres: a PgConnection bound to tenant_id/role so the RLS policies
    see the caller's tenant on every transaction. With no arguments the
    session carries no tenant and tenant tables read as empty.
    """
    if IS_POSTGRES:
        return PgConnection(get_engine().connect(), tenant_id, role)
    conn = sqlite3.connect(sqlite_path())
    conn.row_factory = sqlite3.Row
    return conn


def system_db() -> Union[sqlite3.Connection, "PgConnection"]:
    """Connection for trusted flows that look rows up across tenants by token or id."""
    return get_db(None, SYSTEM_ROLE)


def init_engine() -> Optional[Engine]:
    """Initialize SQLAlchemy engine for PostgreSQL if DATABASE_URL is set."""
    global _engine

    if not IS_POSTGRES:
        _engine = None
        logger.info("[DB] Using SQLite (local dev mode)")
        return None

    parsed = urlparse(DATABASE_URL)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Invalid DATABASE_URL: {DATABASE_URL[:20]}...")

    url = DATABASE_URL
    if url.startswith("postgres://"):
        # SQLAlchemy only accepts the postgresql:// scheme
        url = "postgresql://" + url[len("postgres://"):]

    _engine = create_engine(
        url,
        poolclass=pool.QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        echo=False,
    )
    logger.info("[DB] Using PostgreSQL (%s)", parsed.hostname)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def set_tenant_session(conn: Connection, tenant_id: Optional[int], role: str) -> None:
    """
    Set the transaction-local tenant and role read by the RLS policies.

    A super admin without a tenant gets an empty tenant id; the policy lets
    the role through instead.
    """
    conn.execute(
        text("SELECT set_config(:key, :value, true)"),
        {"key": TENANT_SETTING, "value": str(tenant_id) if tenant_id else ""},
    )
    conn.execute(
        text("SELECT set_config(:key, :value, true)"),
        {"key": ROLE_SETTING, "value": role or ""},
    )


_QMARK = re.compile(r"\?")


def to_named_params(query: str, params: Union[tuple, list]) -> Tuple[str, Dict[str, Any]]:
    """Rewrite ?-style placeholders to :p1, :p2 ... for sqlalchemy.text()."""
    counter = iter(range(1, len(params) + 1))
    named_query = _QMARK.sub(lambda _m: f":p{next(counter)}", query)
    return named_query, {f"p{i}": value for i, value in enumerate(params, start=1)}


# ---------------------------------------------------------
# Postgres connection with the sqlite3 surface the routes use
# ---------------------------------------------------------

class PgRow(Mapping):
    """Row readable by column name or position, and convertible with dict()."""
    __slots__ = ("_row",)

    def __init__(self, row) -> None:
        self._row = row

    def __getitem__(self, key):
        if isinstance(key, int):
            return self._row[key]
        return self._row._mapping[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._row._mapping.keys())

    def __len__(self) -> int:
        return len(self._row)


class PgCursor:
    def __init__(self, result=None, lastrowid: Optional[Any] = None) -> None:
        self._result = result
        self.lastrowid = lastrowid
        self.rowcount = result.rowcount if result is not None else -1

    def fetchone(self) -> Optional[PgRow]:
        if self._result is None or not self._result.returns_rows:
            return None
        row = self._result.fetchone()
        return PgRow(row) if row is not None else None

    def fetchall(self) -> List[PgRow]:
        if self._result is None or not self._result.returns_rows:
            return []
        return [PgRow(row) for row in self._result.fetchall()]


class PgConnection:
    """
    Wraps a SQLAlchemy connection so route code written against sqlite3
    runs on Postgres:

    - every transaction starts with set_tenant_session(tenant_id, role)
    - ? placeholders become named parameters
    - INSERTs return the new id as cursor.lastrowid
    - BEGIN IMMEDIATE takes a per-tenant advisory lock for the transaction
    - driver errors surface as sqlite3.IntegrityError / sqlite3.DatabaseError,
      the classes the route handlers catch
    """

    def __init__(self, conn: Connection, tenant_id: Optional[int], role: str) -> None:
        self._conn = conn
        self.tenant_id = tenant_id
        self.role = role or ""
        self._session_applied = False

    def _ensure_session(self) -> None:
        if not self._session_applied:
            set_tenant_session(self._conn, self.tenant_id, self.role)
            self._session_applied = True

    def execute(self, sql: str, params: Union[tuple, list, None] = None) -> PgCursor:
        statement = sql.strip().rstrip(";")
        try:
            self._ensure_session()
            if statement.upper() == "BEGIN IMMEDIATE":
                self._conn.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": self.tenant_id or 0})
                return PgCursor()

            returning_id = statement[:6].upper() == "INSERT" and " RETURNING " not in statement.upper()
            if returning_id:
                statement += " RETURNING id"
            query, named = to_named_params(statement, list(params or ()))
            result = self._conn.execute(text(query), named)
        except IntegrityError as e:
            raise sqlite3.IntegrityError(str(e.orig)) from e
        except DBAPIError as e:
            raise sqlite3.DatabaseError(str(e.orig)) from e

        if returning_id:
            row = result.fetchone()
            return PgCursor(result, row[0] if row else None)
        return PgCursor(result)

    def commit(self) -> None:
        self._conn.commit()
        self._session_applied = False

    def rollback(self) -> None:
        self._conn.rollback()
        self._session_applied = False

    def close(self) -> None:
        self._conn.close()


@contextmanager
def get_db_connection() -> Generator[Union[sqlite3.Connection, Connection], None, None]:
    """
    Raw connection for migrations.
    Returns sqlite3.Connection for SQLite or sqlalchemy.Connection for Postgres.
    """
    if IS_POSTGRES:
        with get_engine().connect() as conn:
            yield conn
    else:
        conn = get_db()
        try:
            yield conn
        finally:
            conn.close()


def commit(conn: Union[sqlite3.Connection, Connection]) -> None:
    conn.commit()


# ---------------------------------------------------------
# Row value helpers
# ---------------------------------------------------------

def now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


def load_json(value: Any, default: Any) -> Any:
    """Decode a JSON text column, falling back to default on empty or bad data."""
    if value in (None, ""):
        return default
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default
