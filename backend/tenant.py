"""
backend/tenant.py

Tenant Guardrails (Defense in Depth)

All tenant-owned queries go through these helpers. They build the
tenant_id filter from the authenticated context and check results for
rows that belong to another tenant.

- Super admin without an assumed tenant: reads are unfiltered (bypass),
  writes are refused until a tenant is assumed
- In DEV: emit warnings for unsafe access
- In STAGING/PROD: fail fast with HTTP 500
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from fastapi import HTTPException

try:
    from backend.config import IS_DEV
    from backend.db import get_db
    from backend.schema import TENANT_TABLES
except ModuleNotFoundError:
    from config import IS_DEV
    from db import get_db
    from schema import TENANT_TABLES

logger = logging.getLogger(__name__)

SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class TenantContext:
    """
    Immutable tenant scope for one request.
    tenant_id is None only for a super admin working platform-wide.
    """
    tenant_id: Optional[int]
    user_id: Optional[int] = None
    role: str = ""

    def __post_init__(self):
        if self.bypass:
            return
        if not self.tenant_id or self.tenant_id < 1:
            raise ValueError(f"Invalid tenant_id: {self.tenant_id}")

    @property
    def bypass(self) -> bool:
        return self.role == SUPER_ADMIN and self.tenant_id is None

    def filter(self, column: str = "tenant_id") -> Tuple[str, Tuple[Any, ...]]:
        """
        WHERE fragment + params restricting `column` to this tenant.

        Usage:
            clause, params = scope.filter("b.tenant_id")
            cur.execute(f"SELECT ... FROM bookings b WHERE {clause}", params)
        """
        if self.bypass:
            return "1 = 1", ()
        return f"{column} = ?", (self.tenant_id,)

    def write_tenant_id(self) -> int:
        """
        Tenant to stamp on new rows.

        Raises:
            HTTPException(400): super admin has not assumed a tenant
        """
        if self.bypass:
            raise HTTPException(
                status_code=400,
                detail="Assume a tenant before creating or changing tenant data",
            )
        return self.tenant_id  # type: ignore[return-value]

    def connect(self):
        """Request connection bound to this scope (RLS session settings on Postgres)."""
        return get_db(self.tenant_id, self.role)


def get_tenant_context(ctx) -> TenantContext:
    """
    Build a validated TenantContext from an AuthContext.

    Raises:
        HTTPException(500): non-super-admin context without a tenant (server bug)
    """
    try:
        return TenantContext(tenant_id=ctx.tenant_id, user_id=ctx.user_id, role=ctx.role)
    except ValueError as e:
        logger.error("[TENANT] %s for user_id=%s", e, ctx.user_id)
        raise HTTPException(status_code=500, detail="Tenant scope missing - this is a server error")


def require_tenant_id(tenant_id: Optional[int]) -> int:
    """
    Guardrail: Require tenant_id to be present for tenant-scoped operations.

    - In DEV: warns if missing but allows
    - In STAGING/PROD: fails fast with HTTP 500
    """
    if not tenant_id or tenant_id < 1:
        error_msg = f"[TENANT] Missing or invalid tenant_id: {tenant_id}"
        if IS_DEV:
            logger.warning("%s (DEV warning - continuing)", error_msg)
            return tenant_id or 0
        logger.error("%s (PRODUCTION - failing fast)", error_msg)
        raise HTTPException(status_code=500, detail="Tenant scope missing - this is a server error")
    return tenant_id


def _row_tenant_id(row: Union[sqlite3.Row, Dict[str, Any]]) -> Optional[int]:
    if isinstance(row, dict):
        return row.get("tenant_id")
    try:
        return row["tenant_id"]
    except (KeyError, IndexError, TypeError):
        return None


def _violation(label: str, detail_msg: str) -> None:
    error_msg = f"[TENANT] Tenant isolation violation{f' in {label}' if label else ''}"
    if IS_DEV:
        logger.warning("%s: %s (DEV warning)", error_msg, detail_msg)
        return
    logger.error("%s: %s (PRODUCTION - failing fast)", error_msg, detail_msg)
    raise HTTPException(
        status_code=500,
        detail="Tenant isolation violation detected - this is a server error",
    )


def assert_rows_scoped(
    rows: Sequence[Union[sqlite3.Row, Dict[str, Any]]],
    scope: TenantContext,
    label: str = "",
) -> None:
    """
    Guardrail: Assert that all returned rows belong to the scope's tenant.
    Rows without a tenant_id column are not checked. Bypass scopes are not checked.
    """
    if not rows or scope.bypass:
        return

    mismatches = []
    for i, row in enumerate(rows):
        row_tenant_id = _row_tenant_id(row)
        if row_tenant_id is not None and row_tenant_id != scope.tenant_id:
            mismatches.append({"index": i, "expected": scope.tenant_id, "found": row_tenant_id})

    if mismatches:
        _violation(label, f"{len(mismatches)} row(s) with mismatched tenant_id, first: {mismatches[:3]}")


def assert_row_scoped(
    row: Union[sqlite3.Row, Dict[str, Any], None],
    scope: TenantContext,
    label: str = "",
) -> None:
    """Single-row variant of assert_rows_scoped (None is fine, that is the 404 case)."""
    if row is None or scope.bypass:
        return
    row_tenant_id = _row_tenant_id(row)
    if row_tenant_id is not None and row_tenant_id != scope.tenant_id:
        _violation(label, f"Expected tenant_id={scope.tenant_id}, found={row_tenant_id}")


def is_tenant_query(sql: str) -> bool:
    """True if the SQL reads or changes a tenant-owned table."""
    sql_lower = sql.lower()
    if not any(verb in sql_lower for verb in ("select", "update", "delete")):
        return False
    return any(f" {table}" in sql_lower for table in TENANT_TABLES)


def execute_scoped(
    conn: sqlite3.Connection,
    sql: str,
    params: tuple,
    scope: TenantContext,
    label: str = "",
) -> sqlite3.Cursor:
    """
    Guardrail: Execute SQL on tenant tables only if it filters on tenant_id.
    Best-effort substring check; bypass scopes skip the check.

    Raises:
        HTTPException(500): query on a tenant table lacks tenant_id (STAGING/PROD)
    """
    if not scope.bypass:
        require_tenant_id(scope.tenant_id)
        if is_tenant_query(sql) and "tenant_id" not in sql.lower():
            warning_msg = f"[TENANT] Query missing 'tenant_id' filter{f' in {label}' if label else ''}"
            if IS_DEV:
                logger.warning("%s; SQL: %s...", warning_msg, sql.strip()[:100])
            else:
                logger.error("%s (PRODUCTION - failing fast)", warning_msg)
                raise HTTPException(
                    status_code=500,
                    detail="Unsafe tenant query detected - missing tenant_id filter",
                )

    return conn.execute(sql, params)


def fetch_owned(
    conn: sqlite3.Connection,
    table: str,
    row_id: int,
    scope: TenantContext,
    not_found: str = "Not found",
) -> sqlite3.Row:
    """
    Fetch one row of a tenant table by id, enforcing ownership.

    Raises:
        HTTPException(404): missing or owned by another tenant (no existence leak)
    """
    if table not in TENANT_TABLES:
        raise ValueError(f"{table} is not a tenant table")
    clause, params = scope.filter("tenant_id")
    row = execute_scoped(
        conn,
        f"SELECT * FROM {table} WHERE id = ? AND {clause}",
        (row_id, *params),
        scope,
        label=f"{table}:get",
    ).fetchone()
    if not row:
        if IS_DEV:
            logger.debug("[TENANT] Row access denied: table=%s id=%s tenant_id=%s", table, row_id, scope.tenant_id)
        raise HTTPException(status_code=404, detail=not_found)
    assert_row_scoped(row, scope, label=f"{table}:{row_id}")
    return row
