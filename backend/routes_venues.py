"""
backend/routes_venues.py

Venue and space endpoints.

Security guarantees:
- All endpoints require authentication (require_auth_context)
- Reads require "venues:read", writes "venues:manage"
- tenant_id comes from the auth context only, never from the client
- Ids from the client are checked against the tenant (404 otherwise)
- Venue and space counts are capped by the tenant's package (402)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response

try:
    from backend.auth_context import AuthContext, require_auth_context
    from backend.authz import Capability, check_usage_against_limit
    from backend.db import load_json, now_iso
    from backend.dependencies import require_capability
    from backend.features import count_spaces, get_usage_stats
    from backend.schemas_venues import (
        SpaceCreateRequest,
        SpaceResponse,
        SpaceUpdateRequest,
        VenueCreateRequest,
        VenueListResponse,
        VenueResponse,
        VenueUpdateRequest,
        VenueWithSpaces,
    )
    from backend.tenant import assert_rows_scoped, fetch_owned, get_tenant_context
    from backend.config import IS_DEV
except ModuleNotFoundError:
    from auth_context import AuthContext, require_auth_context
    from authz import Capability, check_usage_against_limit
    from db import load_json, now_iso
    from dependencies import require_capability
    from features import count_spaces, get_usage_stats
    from schemas_venues import (
        SpaceCreateRequest,
        SpaceResponse,
        SpaceUpdateRequest,
        VenueCreateRequest,
        VenueListResponse,
        VenueResponse,
        VenueUpdateRequest,
        VenueWithSpaces,
    )
    from tenant import assert_rows_scoped, fetch_owned, get_tenant_context
    from config import IS_DEV

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["venues"],
)

READ = Depends(require_capability(Capability.VENUES_READ))
MANAGE = Depends(require_capability(Capability.VENUES_MANAGE))


def _space(row: sqlite3.Row) -> SpaceResponse:
    data = dict(row)
    data["setup_styles"] = load_json(data.get("setup_styles"), [])
    return SpaceResponse(**data)


def _active_booking_count(conn: sqlite3.Connection, tenant_id: int, column: str, row_id: int) -> int:
    row = conn.execute(
        f"SELECT COUNT(*) AS n FROM bookings WHERE tenant_id = ? AND {column} = ? AND status != 'cancelled'",
        (tenant_id, row_id),
    ).fetchone()
    return int(row["n"])


def _apply_update(
    conn: sqlite3.Connection,
    table: str,
    row_id: int,
    tenant_id: int,
    changes: Dict[str, Any],
) -> None:
    if not changes:
        return
    changes["updated_at"] = now_iso()
    assignments = ", ".join(f"{col} = ?" for col in changes)
    conn.execute(
        f"UPDATE {table} SET {assignments} WHERE id = ? AND tenant_id = ?",
        (*changes.values(), row_id, tenant_id),
    )


# ============================================================================
# Venues
# ============================================================================

@router.get("/venues", response_model=VenueListResponse, dependencies=[READ])
def list_venues(
    q: Optional[str] = Query(None, min_length=1, max_length=200, description="Search by name or city"),
    active_only: bool = Query(False),
    ctx: AuthContext = Depends(require_auth_context),
) -> VenueListResponse:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("v.tenant_id")
    sql = f"""
        SELECT v.*,
               (SELECT COUNT(*) FROM spaces s WHERE s.venue_id = v.id AND s.tenant_id = v.tenant_id) AS space_count
        FROM venues v
        WHERE {clause}
    """
    args: List[Any] = list(params)
    if q:
        sql += " AND (lower(v.name) LIKE lower(?) OR lower(v.city) LIKE lower(?))"
        args += [f"%{q}%", f"%{q}%"]
    if active_only:
        sql += " AND v.is_active = 1"
    sql += " ORDER BY v.name"

    conn = scope.connect()
    try:
        rows = conn.execute(sql, args).fetchall()
        assert_rows_scoped(rows, scope, label="venues:list")
        items = [VenueResponse(**dict(r)) for r in rows]
        return VenueListResponse(items=items, total=len(items))
    except sqlite3.Error as e:
        logger.error("[VENUES] DB error on list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/venues", response_model=VenueResponse, status_code=201, dependencies=[MANAGE])
def create_venue(
    request: VenueCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> VenueResponse:
    """
    Create a venue in the caller's tenant.

    Raises:
        HTTPException(402): Package venue limit reached
        HTTPException(500): Database error
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    now = now_iso()

    conn = scope.connect()
    try:
        usage = get_usage_stats(conn, tenant_id)
        check_usage_against_limit(ctx.package, "venues", usage["venues"])

        cur = conn.execute(
            """
            INSERT INTO venues (tenant_id, name, description, address, city, capacity, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (tenant_id, request.name, request.description, request.address, request.city,
             request.capacity, int(request.is_active), now, now),
        )
        venue_id = cur.lastrowid
        conn.commit()
        logger.info("[VENUES] Created venue_id=%s tenant_id=%s", venue_id, tenant_id)
        return VenueResponse(**dict(fetch_owned(conn, "venues", venue_id, scope)))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[VENUES] DB error on create: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/venues-with-spaces", response_model=List[VenueWithSpaces], dependencies=[READ])
def list_venues_with_spaces(ctx: AuthContext = Depends(require_auth_context)) -> List[VenueWithSpaces]:
    """Active venues with their active spaces nested, for booking forms."""
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("tenant_id")

    conn = scope.connect()
    try:
        venues = conn.execute(
            f"SELECT * FROM venues WHERE {clause} AND is_active = 1 ORDER BY name", params
        ).fetchall()
        spaces = conn.execute(
            f"SELECT * FROM spaces WHERE {clause} AND is_active = 1 ORDER BY name", params
        ).fetchall()
        assert_rows_scoped(venues, scope, label="venues-with-spaces")
        assert_rows_scoped(spaces, scope, label="venues-with-spaces:spaces")

        by_venue: Dict[int, List[SpaceResponse]] = {}
        for s in spaces:
            by_venue.setdefault(s["venue_id"], []).append(_space(s))

        result = []
        for v in venues:
            nested = by_venue.get(v["id"], [])
            result.append(VenueWithSpaces(**dict(v), space_count=len(nested), spaces=nested))
        return result
    except sqlite3.Error as e:
        logger.error("[VENUES] DB error on venues-with-spaces: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/venues/{venue_id}", response_model=VenueWithSpaces, dependencies=[READ])
def get_venue(
    venue_id: int = Path(..., description="Venue ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> VenueWithSpaces:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        venue = fetch_owned(conn, "venues", venue_id, scope, not_found="Venue not found")
        spaces = conn.execute(
            "SELECT * FROM spaces WHERE venue_id = ? AND tenant_id = ? ORDER BY name",
            (venue_id, venue["tenant_id"]),
        ).fetchall()
        nested = [_space(s) for s in spaces]
        return VenueWithSpaces(**dict(venue), space_count=len(nested), spaces=nested)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[VENUES] DB error on get: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.put("/venues/{venue_id}", response_model=VenueResponse, dependencies=[MANAGE])
@router.patch("/venues/{venue_id}", response_model=VenueResponse, dependencies=[MANAGE])
def update_venue(
    request: VenueUpdateRequest,
    venue_id: int = Path(..., description="Venue ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> VenueResponse:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    changes = request.model_dump(exclude_unset=True)
    if "is_active" in changes and changes["is_active"] is not None:
        changes["is_active"] = int(changes["is_active"])

    conn = scope.connect()
    try:
        fetch_owned(conn, "venues", venue_id, scope, not_found="Venue not found")
        _apply_update(conn, "venues", venue_id, tenant_id, changes)
        conn.commit()
        return VenueResponse(**dict(fetch_owned(conn, "venues", venue_id, scope)))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[VENUES] DB error on update: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.delete("/venues/{venue_id}", status_code=204, dependencies=[MANAGE])
def delete_venue(
    venue_id: int = Path(..., description="Venue ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> Response:
    """
    Delete a venue and its spaces.

    Raises:
        HTTPException(404): Venue not found in this tenant
        HTTPException(409): Venue still has non-cancelled bookings
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()

    conn = scope.connect()
    try:
        fetch_owned(conn, "venues", venue_id, scope, not_found="Venue not found")
        active = _active_booking_count(conn, tenant_id, "venue_id", venue_id)
        if active:
            raise HTTPException(
                status_code=409,
                detail=f"Venue has {active} active booking(s); cancel or move them first",
            )
        conn.execute("DELETE FROM spaces WHERE venue_id = ? AND tenant_id = ?", (venue_id, tenant_id))
        conn.execute("DELETE FROM venues WHERE id = ? AND tenant_id = ?", (venue_id, tenant_id))
        conn.commit()
        logger.info("[VENUES] Deleted venue_id=%s tenant_id=%s", venue_id, tenant_id)
        return Response(status_code=204)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[VENUES] DB error on delete: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


# ============================================================================
# Spaces
# ============================================================================

@router.get("/venues/{venue_id}/spaces", response_model=List[SpaceResponse], dependencies=[READ])
def list_spaces(
    venue_id: int = Path(..., description="Venue ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> List[SpaceResponse]:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        venue = fetch_owned(conn, "venues", venue_id, scope, not_found="Venue not found")
        rows = conn.execute(
            "SELECT * FROM spaces WHERE venue_id = ? AND tenant_id = ? ORDER BY name",
            (venue_id, venue["tenant_id"]),
        ).fetchall()
        return [_space(r) for r in rows]
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[SPACES] DB error on list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/venues/{venue_id}/spaces", response_model=SpaceResponse, status_code=201, dependencies=[MANAGE])
def create_space(
    request: SpaceCreateRequest,
    venue_id: int = Path(..., description="Venue ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> SpaceResponse:
    """
    Add a space to a venue.

    Raises:
        HTTPException(402): Package spaces-per-venue limit reached
        HTTPException(404): Venue not found in this tenant
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    now = now_iso()

    conn = scope.connect()
    try:
        fetch_owned(conn, "venues", venue_id, scope, not_found="Venue not found")
        check_usage_against_limit(ctx.package, "spaces_per_venue", count_spaces(conn, tenant_id, venue_id))

        cur = conn.execute(
            """
            INSERT INTO spaces (tenant_id, venue_id, name, description, capacity, hourly_rate,
                                setup_styles, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (tenant_id, venue_id, request.name, request.description, request.capacity,
             request.hourly_rate, json.dumps(request.setup_styles), int(request.is_active), now, now),
        )
        space_id = cur.lastrowid
        conn.commit()
        if IS_DEV:
            logger.debug("[SPACES] Created space_id=%s venue_id=%s tenant_id=%s", space_id, venue_id, tenant_id)
        return _space(fetch_owned(conn, "spaces", space_id, scope))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[SPACES] DB error on create: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.get("/spaces/{space_id}", response_model=SpaceResponse, dependencies=[READ])
def get_space(
    space_id: int = Path(..., description="Space ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> SpaceResponse:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        return _space(fetch_owned(conn, "spaces", space_id, scope, not_found="Space not found"))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[SPACES] DB error on get: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.put("/spaces/{space_id}", response_model=SpaceResponse, dependencies=[MANAGE])
@router.patch("/spaces/{space_id}", response_model=SpaceResponse, dependencies=[MANAGE])
def update_space(
    request: SpaceUpdateRequest,
    space_id: int = Path(..., description="Space ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> SpaceResponse:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    changes = request.model_dump(exclude_unset=True)
    if "setup_styles" in changes:
        changes["setup_styles"] = json.dumps(changes["setup_styles"] or [])
    if "is_active" in changes and changes["is_active"] is not None:
        changes["is_active"] = int(changes["is_active"])

    conn = scope.connect()
    try:
        fetch_owned(conn, "spaces", space_id, scope, not_found="Space not found")
        _apply_update(conn, "spaces", space_id, tenant_id, changes)
        conn.commit()
        return _space(fetch_owned(conn, "spaces", space_id, scope))
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[SPACES] DB error on update: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.delete("/spaces/{space_id}", status_code=204, dependencies=[MANAGE])
def delete_space(
    space_id: int = Path(..., description="Space ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> Response:
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()

    conn = scope.connect()
    try:
        fetch_owned(conn, "spaces", space_id, scope, not_found="Space not found")
        active = _active_booking_count(conn, tenant_id, "space_id", space_id)
        if active:
            raise HTTPException(
                status_code=409,
                detail=f"Space has {active} active booking(s); cancel or move them first",
            )
        conn.execute("DELETE FROM spaces WHERE id = ? AND tenant_id = ?", (space_id, tenant_id))
        conn.commit()
        return Response(status_code=204)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[SPACES] DB error on delete: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()
