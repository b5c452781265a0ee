"""
backend/ai_service.py

Gemini text generation over the public REST endpoint, plus the prompts
used by the proposal drafting and business insights endpoints.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

try:
    from backend.config import GEMINI_API_KEY, GEMINI_MODEL
except ModuleNotFoundError:
    from config import GEMINI_API_KEY, GEMINI_MODEL

logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
REQUEST_TIMEOUT = 30


class AINotConfigured(RuntimeError):
    pass


class AIServiceError(RuntimeError):
    pass


def is_configured() -> bool:
    return bool(GEMINI_API_KEY)


def _extract_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        raise AIServiceError("Empty response from model")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(part.get("text", "") for part in parts).strip()
    if not text:
        raise AIServiceError("Model returned no text")
    return text


def generate_text(prompt: str, temperature: float = 0.7, max_output_tokens: int = 1024) -> str:
    """
    Single-turn generation.

    Raises:
        AINotConfigured: GEMINI_API_KEY unset
        AIServiceError: transport error, non-2xx, or unusable body
    """
    if not GEMINI_API_KEY:
        raise AINotConfigured("GEMINI_API_KEY is not configured")

    url = GEMINI_URL.format(model=GEMINI_MODEL)
    body = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {"temperature": temperature, "maxOutputTokens": max_output_tokens},
    }
    try:
        resp = requests.post(url, params={"key": GEMINI_API_KEY}, json=body, timeout=REQUEST_TIMEOUT)
    except requests.exceptions.RequestException as e:
        logger.error("[AI] Request to %s failed: %s", GEMINI_MODEL, e)
        raise AIServiceError(f"AI provider unreachable: {e}") from e

    if resp.status_code >= 400:
        logger.error("[AI] %s returned HTTP %s: %s", GEMINI_MODEL, resp.status_code, resp.text[:200])
        raise AIServiceError(f"AI provider returned HTTP {resp.status_code}")

    try:
        data = resp.json()
    except ValueError as e:
        raise AIServiceError("AI provider returned invalid JSON") from e

    text = _extract_text(data)
    logger.info("[AI] %s responded (%d chars)", GEMINI_MODEL, len(text))
    return text


# ============================================================================
# Prompts
# ============================================================================

def proposal_prompt(
    tenant_name: str,
    customer_name: Optional[str],
    event_type: str,
    guest_count: Optional[int],
    event_date: Optional[str],
    venue_name: Optional[str],
    budget: Optional[float],
    notes: Optional[str],
) -> str:
    lines = [
        f"You write event proposals for {tenant_name}, a venue business.",
        "Write a warm, professional proposal in plain text with a short intro,",
        "an itemised outline of what is included, and a closing call to action.",
        "",
        f"Event type: {event_type}",
    ]
    if customer_name:
        lines.append(f"Client: {customer_name}")
    if event_date:
        lines.append(f"Date: {event_date}")
    if guest_count:
        lines.append(f"Guests: {guest_count}")
    if venue_name:
        lines.append(f"Venue: {venue_name}")
    if budget:
        lines.append(f"Budget: ${budget:,.2f}")
    if notes:
        lines.append(f"Notes from the client: {notes}")
    return "\n".join(lines)


def insights_prompt(tenant_name: str, summary: Dict[str, Any], top_venues: List[Dict[str, Any]]) -> str:
    lines = [
        f"You are a business analyst for {tenant_name}, a venue and events company.",
        "Give three to five short, concrete recommendations based on these figures.",
        "",
    ]
    for key, value in summary.items():
        lines.append(f"{key.replace('_', ' ')}: {value}")
    if top_venues:
        lines.append("")
        lines.append("Venues:")
        for venue in top_venues:
            lines.append(f"- {venue['venue_name']}: {venue['bookings']} bookings, ${venue['revenue']:,.2f} revenue")
    return "\n".join(lines)
