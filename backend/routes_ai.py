"""
backend/routes_ai.py

AI assistant endpoints: proposal drafting and business insights.
"""

from __future__ import annotations

import logging
import sqlite3

from fastapi import APIRouter, Depends, HTTPException

try:
    from backend.ai_service import AINotConfigured, AIServiceError, generate_text, insights_prompt, proposal_prompt
    from backend.auth_context import AuthContext, require_auth_context
    from backend.authz import Capability
    from backend.config import GEMINI_MODEL
    from backend.dependencies import require_capability
    from backend.routes_reports import build_summary, venue_breakdown
    from backend.schemas_admin import AIResponse, ProposalDraftRequest
    from backend.tenant import fetch_owned, get_tenant_context
except ModuleNotFoundError:
    from ai_service import AINotConfigured, AIServiceError, generate_text, insights_prompt, proposal_prompt
    from auth_context import AuthContext, require_auth_context
    from authz import Capability
    from config import GEMINI_MODEL
    from dependencies import require_capability
    from routes_reports import build_summary, venue_breakdown
    from schemas_admin import AIResponse, ProposalDraftRequest
    from tenant import fetch_owned, get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/ai",
    tags=["ai"],
    dependencies=[Depends(require_capability(Capability.AI_USE))],
)


def _generate(prompt: str, **kwargs) -> AIResponse:
    try:
        return AIResponse(text=generate_text(prompt, **kwargs), model=GEMINI_MODEL)
    except AINotConfigured:
        raise HTTPException(status_code=503, detail="AI assistant is not configured")
    except AIServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/proposal-draft", response_model=AIResponse)
def proposal_draft(
    request: ProposalDraftRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> AIResponse:
    """Draft proposal text; customer and venue, when given, must belong to the tenant."""
    scope = get_tenant_context(ctx)
    customer_name = venue_name = None
    conn = scope.connect()
    try:
        if request.customer_id is not None:
            customer_name = fetch_owned(conn, "customers", request.customer_id, scope,
                                        not_found="Customer not found")["name"]
        if request.venue_id is not None:
            venue_name = fetch_owned(conn, "venues", request.venue_id, scope,
                                     not_found="Venue not found")["name"]
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[AI] DB error preparing proposal draft: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    prompt = proposal_prompt(
        ctx.tenant_name or "our venue",
        customer_name,
        request.event_type,
        request.guest_count,
        request.event_date,
        venue_name,
        request.budget,
        request.notes,
    )
    logger.info("[AI] Proposal draft requested tenant_id=%s user_id=%s", ctx.tenant_id, ctx.user_id)
    return _generate(prompt)


@router.post("/insights", response_model=AIResponse)
def insights(ctx: AuthContext = Depends(require_auth_context)) -> AIResponse:
    scope = get_tenant_context(ctx)
    conn = scope.connect()
    try:
        summary = build_summary(conn, scope)
        venues = venue_breakdown(conn, scope)[:5]
    except sqlite3.Error as e:
        logger.error("[AI] DB error building insights: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    logger.info("[AI] Insights requested tenant_id=%s", ctx.tenant_id)
    return _generate(insights_prompt(ctx.tenant_name or "the business", summary, venues), temperature=0.4)
