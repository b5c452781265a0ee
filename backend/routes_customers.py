"""
backend/routes_customers.py

Customer endpoints. Email addresses are unique per tenant; two tenants may
each have a customer with the same email.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response

try:
    from backend.auth_context import AuthContext, require_auth_context
    from backend.authz import Capability
    from backend.db import now_iso
    from backend.dependencies import require_capability
    from backend.schemas_bookings import BookingResponse
    from backend.schemas_crm import (
        CustomerCreateRequest,
        CustomerListResponse,
        CustomerResponse,
        CustomerUpdateRequest,
    )
    from backend.tenant import assert_rows_scoped, fetch_owned, get_tenant_context
except ModuleNotFoundError:
    from auth_context import AuthContext, require_auth_context
    from authz import Capability
    from db import now_iso
    from dependencies import require_capability
    from schemas_bookings import BookingResponse
    from schemas_crm import (
        CustomerCreateRequest,
        CustomerListResponse,
        CustomerResponse,
        CustomerUpdateRequest,
    )
    from tenant import assert_rows_scoped, fetch_owned, get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/customers",
    tags=["customers"],
)

READ = Depends(require_capability(Capability.CUSTOMERS_READ))
MANAGE = Depends(require_capability(Capability.CUSTOMERS_MANAGE))

_STATS_SQL = """
    SELECT c.*,
           (SELECT COUNT(*) FROM bookings b
             WHERE b.customer_id = c.id AND b.tenant_id = c.tenant_id) AS booking_count,
           (SELECT COALESCE(SUM(b.total_amount), 0) FROM bookings b
             WHERE b.customer_id = c.id AND b.tenant_id = c.tenant_id
               AND b.status != 'cancelled') AS lifetime_value
    FROM customers c
"""


def find_customer_by_email(conn: sqlite3.Connection, tenant_id: int, email: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM customers WHERE tenant_id = ? AND lower(email) = ?",
        (tenant_id, email.strip().lower()),
    ).fetchone()


def _customer_with_stats(conn: sqlite3.Connection, customer_id: int, tenant_id: int) -> CustomerResponse:
    row = conn.execute(f"{_STATS_SQL} WHERE c.id = ? AND c.tenant_id = ?", (customer_id, tenant_id)).fetchone()
    return CustomerResponse(**dict(row))


@router.get("", response_model=CustomerListResponse, dependencies=[READ])
def list_customers(
    q: Optional[str] = Query(None, min_length=1, max_length=200, description="Search name, email or company"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ctx: AuthContext = Depends(require_auth_context),
) -> CustomerListResponse:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("c.tenant_id")
    where = f"WHERE {clause}"
    args: List[Any] = list(params)
    if q:
        pattern = f"%{q}%"
        where += (" AND (lower(c.name) LIKE lower(?) OR lower(c.email) LIKE lower(?)"
                  " OR lower(c.company) LIKE lower(?))")
        args += [pattern, pattern, pattern]

    conn = scope.connect()
    try:
        total = conn.execute(f"SELECT COUNT(*) AS n FROM customers c {where}", args).fetchone()["n"]
        rows = conn.execute(
            f"{_STATS_SQL} {where} ORDER BY c.name LIMIT ? OFFSET ?",
            (*args, limit, offset),
        ).fetchall()
        assert_rows_scoped(rows, scope, label="customers:list")
        return CustomerListResponse(items=[CustomerResponse(**dict(r)) for r in rows], total=total)
    except sqlite3.Error as e:
        logger.error("[CUSTOMERS] DB error on list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("", response_model=CustomerResponse, status_code=201, dependencies=[MANAGE])
def create_customer(
    request: CustomerCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> CustomerResponse:
    """
    Raises:
        HTTPException(409): Another customer in this tenant has the email
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    now = now_iso()

    conn = scope.connect()
    try:
        if request.email and find_customer_by_email(conn, tenant_id, request.email):
            raise HTTPException(status_code=409, detail="A customer with this email already exists")

        cur = conn.execute(
            """
            INSERT INTO customers (tenant_id, name, email, phone, company, event_type, status,
                                   source, notes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (tenant_id, request.name, request.email, request.phone, request.company,
             request.event_type, request.status, request.source, request.notes, now, now),
        )
        customer_id = cur.lastrowid
        conn.commit()
        logger.info("[CUSTOMERS] Created customer_id=%s tenant_id=%s", customer_id, tenant_id)
        return _customer_with_stats(conn, customer_id, tenant_id)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[CUSTOMERS] DB error on create: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/{customer_id}", response_model=CustomerResponse, dependencies=[READ])
def get_customer(
    customer_id: int = Path(..., description="Customer ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> CustomerResponse:
    """Customer with booking count and lifetime value (non-cancelled booking totals)."""
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        row = fetch_owned(conn, "customers", customer_id, scope, not_found="Customer not found")
        return _customer_with_stats(conn, customer_id, row["tenant_id"])
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[CUSTOMERS] DB error on get: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/{customer_id}/bookings", response_model=List[BookingResponse], dependencies=[READ])
def list_customer_bookings(
    customer_id: int = Path(..., description="Customer ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> List[BookingResponse]:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        customer = fetch_owned(conn, "customers", customer_id, scope, not_found="Customer not found")
        rows = conn.execute(
            "SELECT * FROM bookings WHERE customer_id = ? AND tenant_id = ? ORDER BY event_date DESC, start_time",
            (customer_id, customer["tenant_id"]),
        ).fetchall()
        return [BookingResponse(**dict(r), customer_name=customer["name"]) for r in rows]
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[CUSTOMERS] DB error on bookings: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.put("/{customer_id}", response_model=CustomerResponse, dependencies=[MANAGE])
@router.patch("/{customer_id}", response_model=CustomerResponse, dependencies=[MANAGE])
def update_customer(
    request: CustomerUpdateRequest,
    customer_id: int = Path(..., description="Customer ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> CustomerResponse:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    changes = request.model_dump(exclude_unset=True)

    conn = scope.connect()
    try:
        fetch_owned(conn, "customers", customer_id, scope, not_found="Customer not found")
        if changes.get("email"):
            existing = find_customer_by_email(conn, tenant_id, changes["email"])
            if existing and existing["id"] != customer_id:
                raise HTTPException(status_code=409, detail="A customer with this email already exists")
        if changes:
            changes["updated_at"] = now_iso()
            assignments = ", ".join(f"{col} = ?" for col in changes)
            conn.execute(
                f"UPDATE customers SET {assignments} WHERE id = ? AND tenant_id = ?",
                (*changes.values(), customer_id, tenant_id),
            )
            conn.commit()
        return _customer_with_stats(conn, customer_id, tenant_id)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[CUSTOMERS] DB error on update: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.delete("/{customer_id}", status_code=204, dependencies=[MANAGE])
def delete_customer(
    customer_id: int = Path(..., description="Customer ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> Response:
    """
    Raises:
        HTTPException(409): Customer still has non-cancelled bookings
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    conn = scope.connect()
    try:
        fetch_owned(conn, "customers", customer_id, scope, not_found="Customer not found")
        active = conn.execute(
            "SELECT COUNT(*) AS n FROM bookings WHERE tenant_id = ? AND customer_id = ? AND status != 'cancelled'",
            (tenant_id, customer_id),
        ).fetchone()["n"]
        if active:
            raise HTTPException(status_code=409, detail=f"Customer has {active} active booking(s)")
        conn.execute("DELETE FROM customers WHERE id = ? AND tenant_id = ?", (customer_id, tenant_id))
        conn.commit()
        return Response(status_code=204)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[CUSTOMERS] DB error on delete: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()
