"""
Supabase Auth REST calls: resolve a user from a JWT and manage auth users
through the admin API with the service-role key.
"""

import os
import requests
from typing import Dict, Any, Optional, Tuple
from celery.utils.log import get_task_logger

logger = get_task_logger(__name__)

AUTH_TIMEOUT = 15


def _auth_url(path: str) -> str:
    base = os.getenv("SUPABASE_URL")
    if not base:
        raise RuntimeError("SUPABASE_URL not set")
    return f"{base.rstrip('/')}/auth/v1{path}"


def _service_key() -> str:
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY not set")
    return key


def _admin_headers() -> Dict[str, str]:
    key = _service_key()
    return {
        "apikey": key,
        "Authorization": f"Bearer {key}",
        "Content-Type": "application/json",
    }


def get_user_from_token(access_token: str) -> Optional[Dict[str, Any]]:
    """Return the Supabase user behind an access token, or None if it is not valid."""
    if not access_token:
        return None
    try:
        resp = requests.get(
            _auth_url("/user"),
            headers={"apikey": _service_key(), "Authorization": f"Bearer {access_token}"},
            timeout=AUTH_TIMEOUT,
        )
    except requests.RequestException as e:
        logger.warning(f"[Auth] ⚠️ Token check failed: {e}")
        return None
    if resp.status_code != 200:
        return None
    user = resp.json()
    return user if user.get("id") else None


def create_user(email: str, password: str, user_metadata: Dict[str, Any]) -> Tuple[bool, Dict[str, Any]]:
    """
    Create a confirmed auth user.

    Returns:
        (created, body) where body is the user on success or the error payload.
    """
    resp = requests.post(
        _auth_url("/admin/users"),
        headers=_admin_headers(),
        json={
            "email": email,
            "password": password,
            "user_metadata": user_metadata,
            "email_confirm": True,
        },
        timeout=AUTH_TIMEOUT,
    )
    body = resp.json() if resp.content else {}
    if resp.ok:
        logger.info(f"[Auth] ✅ Created auth user for {email}")
        return True, body
    logger.warning(f"[Auth] ⚠️ Auth user creation failed for {email}: HTTP {resp.status_code} {body}")
    return False, body


def error_message(body: Dict[str, Any]) -> str:
    return str(body.get("msg") or body.get("message") or body.get("error_description") or body.get("error") or body)


def find_user_by_email(email: str, per_page: int = 1000) -> Optional[Dict[str, Any]]:
    resp = requests.get(
        _auth_url("/admin/users"),
        headers=_admin_headers(),
        params={"page": 1, "per_page": per_page},
        timeout=AUTH_TIMEOUT,
    )
    resp.raise_for_status()
    data = resp.json()
    users = data.get("users", []) if isinstance(data, dict) else data
    for user in users:
        if (user.get("email") or "").lower() == email.lower():
            return user
    return None


def update_user_metadata(user_id: str, user_metadata: Dict[str, Any]) -> None:
    resp = requests.put(
        _auth_url(f"/admin/users/{user_id}"),
        headers=_admin_headers(),
        json={"user_metadata": user_metadata},
        timeout=AUTH_TIMEOUT,
    )
    resp.raise_for_status()
