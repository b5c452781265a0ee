"""
frontend/auth.py
Authentication state for the Venuin admin UI.

Streamlit reruns the whole script on every interaction, so auth state lives
in st.session_state and this module is the single place that reads and
writes it:

- init_auth_state(): call at the top of main() so the keys exist on every rerun
- set_auth(): store tokens and the user after login or refresh
- clear_auth(): wipe everything on logout or session expiry
- require_auth(): guard for protected pages
- get_auth_header(): Authorization header for api_request

The identity block from /auth/me (role, package, capabilities) is cached
under "capabilities" and is only a display hint. The API enforces every
permission again.
"""

from typing import Optional, Dict, Any
import streamlit as st


def init_auth_state() -> None:
    """Idempotent; safe to call on every rerun."""
    ss = st.session_state

    ss.setdefault("auth_token", None)
    ss.setdefault("refresh_token", None)
    ss.setdefault("session_id", None)
    ss.setdefault("current_user", None)
    ss.setdefault("is_authenticated", False)
    ss.setdefault("session_rehydrated", False)

    # {"role": ..., "package": ..., "tenant": {...}, "is_super_admin": bool,
    #  "assumed_tenant": bool, "list": [...], "loaded_at": ts}
    ss.setdefault("capabilities", None)
    ss.setdefault("_cap_fetch_status", "not_attempted")
    ss.setdefault("_cap_fetch_last_error", None)

    # Canonical keys filled by normalize_auth_context() in app.py
    ss.setdefault("tenant_id", None)
    ss.setdefault("role", None)
    ss.setdefault("package", None)

    if ss["auth_token"] and not ss["is_authenticated"]:
        ss["is_authenticated"] = True
    elif not ss["auth_token"] and ss["is_authenticated"]:
        ss["is_authenticated"] = False


def set_auth(
    auth_token: str,
    current_user: Dict[str, Any],
    session_id: Optional[str],
    refresh_token: Optional[str]
) -> None:
    """
    Set authentication state after a successful login.

    Args:
        auth_token: JWT access token
        current_user: user object from the backend (id, email, role, tenant_id)
        session_id: refresh session id; None for assumed-tenant tokens
        refresh_token: refresh token; None for assumed-tenant tokens
    """
    ss = st.session_state

    ss["auth_token"] = auth_token
    ss["refresh_token"] = refresh_token
    ss["session_id"] = session_id
    ss["current_user"] = current_user
    ss["is_authenticated"] = True

    if isinstance(current_user, dict):
        ss["tenant_id"] = current_user.get("tenant_id")
        ss["role"] = current_user.get("role")
    ss["package"] = None

    # Capabilities depend on the token; force a fresh /auth/me
    ss["capabilities"] = None
    ss["_capabilities_fetch_attempted"] = False
    ss["session_rehydrated"] = True


def clear_auth() -> None:
    ss = st.session_state

    ss["auth_token"] = None
    ss["refresh_token"] = None
    ss["session_id"] = None
    ss["current_user"] = None
    ss["is_authenticated"] = False

    ss["tenant_id"] = None
    ss["role"] = None
    ss["package"] = None

    ss["capabilities"] = None
    ss["_cap_fetch_status"] = "not_attempted"
    ss["_cap_fetch_last_error"] = None
    ss["_capabilities_fetch_attempted"] = False
    ss.pop("_super_admin_token", None)

    ss["session_rehydrated"] = False


def is_authenticated() -> bool:
    return bool(st.session_state.get("auth_token"))


def get_current_user() -> Optional[Dict[str, Any]]:
    return st.session_state.get("current_user")


def get_auth_header() -> Dict[str, str]:
    """
    Returns:
        {"Authorization": "Bearer <token>"} if authenticated, {} otherwise
    """
    token = st.session_state.get("auth_token")
    if token:
        return {"Authorization": f"Bearer {token}"}
    return {}


def require_auth(redirect_to_login: bool = True) -> bool:
    """
    Guard for protected pages.

    Usage at top of page render functions:
        if not require_auth():
            return
    """
    if not is_authenticated():
        st.warning("⚠️ You must be logged in to access this page.")

        if redirect_to_login:
            st.session_state["nav_page"] = "Login"
            st.info("Please log in to continue.")

        if st.button("Go to Login", type="primary"):
            st.session_state["nav_page"] = "Login"
            st.rerun()

        return False

    return True


def get_role() -> Optional[str]:
    user = get_current_user()
    if user and isinstance(user, dict):
        return user.get("role")
    return st.session_state.get("role")


def get_package() -> Optional[str]:
    """Package name once /auth/me has been loaded."""
    caps = st.session_state.get("capabilities")
    if caps and isinstance(caps, dict):
        return caps.get("package")
    return st.session_state.get("package")
