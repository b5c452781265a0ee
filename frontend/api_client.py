"""
frontend/api_client.py
Centralized API client for all backend requests.

This module ensures:
1. All API calls automatically attach Authorization header when authenticated
2. One refresh-and-retry on 401, then a clean logout
3. Centralized API base URL configuration (dev/staging/prod)
"""

from typing import Any, Dict, Optional, Literal
import requests
import streamlit as st

try:
    from frontend.config import get_api_base_url, IS_DEV
except ModuleNotFoundError:
    from config import get_api_base_url, IS_DEV

try:
    from frontend.auth import get_auth_header, clear_auth
except ModuleNotFoundError:
    from auth import get_auth_header, clear_auth


__all__ = ["api_request", "get_api_base_url", "is_public_endpoint", "error_detail"]

PUBLIC_PATHS = ("/health", "/auth/login", "/auth/register", "/auth/refresh")
PUBLIC_PREFIXES = ("/api/public/",)


def is_public_endpoint(path: str) -> bool:
    """
    Public endpoints never get a bearer token: the auth calls themselves and
    the customer-facing proposal view under /api/public/.
    """
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def error_detail(resp: Optional[requests.Response], default: str = "Request failed") -> str:
    """Best-effort human message from a FastAPI error body."""
    if resp is None:
        return default
    try:
        detail = resp.json().get("detail")
    except ValueError:
        return f"{default} (HTTP {resp.status_code})"
    if isinstance(detail, list):
        # pydantic 422: [{"loc": [...], "msg": "..."}]
        parts = []
        for item in detail:
            loc = ".".join(str(p) for p in item.get("loc", [])[1:])
            parts.append(f"{loc}: {item.get('msg')}" if loc else str(item.get("msg")))
        return "; ".join(parts) or default
    return str(detail) if detail else default


def api_request(
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"],
    path: str,
    json: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: int = 20,
    _retry: bool = True
) -> Optional[requests.Response]:
    """
    Make an API request with automatic auth header attachment and error handling.

    This is the ONLY function that should make backend API calls.

    - Attaches Authorization: Bearer <token> for protected endpoints
    - On 401 tries /auth/refresh once and replays the request
    - Never logs tokens or auth headers

    Returns:
        Response object, or None on connection/config errors (a message is
        already shown to the user)
    """
    try:
        base_url = get_api_base_url()
    except RuntimeError as e:
        st.error(f"⚙️ Configuration error: {str(e)}")
        return None

    url = f"{base_url}{path}"
    headers = {"Accept": "application/json"}
    if json is not None:
        headers["Content-Type"] = "application/json"

    public = is_public_endpoint(path)
    if not public:
        auth_headers = get_auth_header()
        headers.update(auth_headers)

        if not auth_headers and not _retry:
            st.error("🔒 Authentication required. Please log in.")
            return None

    try:
        if method in ("GET", "DELETE"):
            resp = requests.request(method, url, headers=headers, params=params, timeout=timeout)
        elif method in ("POST", "PUT", "PATCH"):
            resp = requests.request(method, url, json=json, headers=headers, params=params, timeout=timeout)
        else:
            raise ValueError(f"Unsupported HTTP method: {method}")

        if resp.status_code == 401 and _retry and not public:
            if IS_DEV:
                print(f"[API] 401 on {path}, attempting token refresh...")

            if _try_refresh_token():
                if IS_DEV:
                    print(f"[API] Retrying {path} with refreshed token...")
                return api_request(method, path, json=json, params=params, timeout=timeout, _retry=False)

            if IS_DEV:
                print("[API] Token refresh failed, session expired")
            _handle_session_expired()
            return None

        if resp.status_code == 403 and IS_DEV:
            print(f"[API] 403 Forbidden on {path}")

        _update_backend_status("ok")
        return resp

    except requests.exceptions.Timeout:
        if IS_DEV:
            print(f"[API] Timeout on {method} {path}")
        st.error(f"⏱️ Request timed out after {timeout}s. Please try again.")
        _update_backend_status("timeout")
        return None

    except requests.exceptions.ConnectionError:
        if IS_DEV:
            print(f"[API] Connection error on {method} {path}")
        st.error(f"🔌 Cannot connect to backend at {base_url}. Please check your connection.")
        _update_backend_status("connection_error")
        return None

    except requests.exceptions.RequestException as e:
        error_msg = str(e)
        if "bearer" in error_msg.lower() or "authorization" in error_msg.lower():
            error_msg = "Authentication error (details hidden for security)"
        if IS_DEV:
            print(f"[API] Unexpected error on {method} {path}: {error_msg}")
        st.error(f"❌ Unexpected error: {error_msg[:100]}")
        _update_backend_status("error")
        return None


def _try_refresh_token() -> bool:
    """
    Rotate the refresh token via /auth/refresh.

    Returns:
        True if a new access token was stored
    """
    ss = st.session_state

    session_id = ss.get("session_id")
    refresh_token = ss.get("refresh_token")
    if not session_id or not refresh_token:
        if IS_DEV:
            print("[API] Cannot refresh: missing session_id or refresh_token")
        return False

    try:
        resp = requests.post(
            f"{get_api_base_url()}/auth/refresh",
            json={"session_id": session_id, "refresh_token": refresh_token},
            timeout=10
        )
    except requests.exceptions.RequestException as e:
        if IS_DEV:
            print(f"[API] Token refresh error: {type(e).__name__}")
        return False

    if resp.status_code != 200:
        if IS_DEV:
            print(f"[API] Token refresh failed: HTTP {resp.status_code}")
        return False

    data = resp.json()
    new_token = data.get("access_token")
    if not new_token:
        return False

    ss["auth_token"] = new_token
    # The old refresh token is dead after rotation
    if data.get("refresh_token"):
        ss["refresh_token"] = data["refresh_token"]
    user_data = data.get("user")
    if user_data:
        ss["current_user"] = user_data
        ss["tenant_id"] = user_data.get("tenant_id")
        ss["role"] = user_data.get("role")
    ss["is_authenticated"] = True
    if IS_DEV:
        print("[API] Token refresh successful")
    return True


def _handle_session_expired() -> None:
    """
    Clear auth and go back to Login. An expired assumed-tenant token drops
    back to the super admin's own session instead.
    """
    ss = st.session_state
    saved = ss.pop("_super_admin_token", None)
    if saved:
        st.warning("Tenant session expired. Back to the super admin console.")
        ss["_apply_payload"] = saved
        ss["_post_login_nav"] = "Super Admin"
        st.rerun()

    st.warning("🔒 Your session has expired. Please log in again.")
    clear_auth()
    ss["_post_login_nav"] = "Login"
    st.rerun()


def _update_backend_status(status: str) -> None:
    import time
    ss = st.session_state

    ss["_backend_status"] = status
    ss["_backend_last_ping_time"] = time.time()

    if status != "ok":
        ss["_backend_was_down"] = True
