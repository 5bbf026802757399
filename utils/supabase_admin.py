from __future__ import annotations

import os
import uuid
from typing import Any, Dict, Optional, Tuple

import httpx

from svc.errors import AccountProvisioningError
from utils.logger import get_logger

logger = get_logger(__name__)

SUPABASE_URL = (os.getenv("SUPABASE_URL") or "").rstrip("/")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

_TIMEOUT = httpx.Timeout(15.0, connect=5.0)
_USERS_PAGE_SIZE = 1000


def service_headers() -> Dict[str, str]:
    if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
        raise AccountProvisioningError("Supabase service role access is not configured.")
    return {
        "apikey": SUPABASE_SERVICE_ROLE_KEY,
        "Authorization": f"Bearer {SUPABASE_SERVICE_ROLE_KEY}",
        "Content-Type": "application/json",
    }


def find_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    """Scan the Supabase Auth admin user list for ``email`` (case-insensitive)."""
    target = email.lower().strip()
    page = 1
    while True:
        try:
            response = httpx.get(
                f"{SUPABASE_URL}/auth/v1/admin/users",
                params={"page": page, "per_page": _USERS_PAGE_SIZE},
                headers=service_headers(),
                timeout=_TIMEOUT,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AccountProvisioningError(f"Unable to list auth users: {exc}") from exc

        users = response.json().get("users") or []
        for user in users:
            if (user.get("email") or "").lower().strip() == target:
                return user
        if len(users) < _USERS_PAGE_SIZE:
            return None
        page += 1


def create_user(email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    try:
        response = httpx.post(
            f"{SUPABASE_URL}/auth/v1/admin/users",
            json={
                "email": email.lower().strip(),
                "password": password,
                "email_confirm": True,
                "user_metadata": metadata or {},
            },
            headers=service_headers(),
            timeout=_TIMEOUT,
        )
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise AccountProvisioningError(f"Failed to create account: {exc}") from exc
    payload = response.json()
    # GoTrue returns the user object directly; some proxies wrap it.
    return payload.get("user") or payload


def find_or_create_user(
    email: str,
    *,
    password: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Tuple[str, bool]:
    """Return ``(user_id, created)`` for the auth user owning ``email``."""
    existing = find_user_by_email(email)
    if existing:
        return existing["id"], False

    try:
        user = create_user(email, password or str(uuid.uuid4()), metadata)
    except AccountProvisioningError:
        # Another request may have created the same user in the meantime.
        retry = find_user_by_email(email)
        if retry:
            logger.info("Auth user for %s appeared concurrently; reusing it.", email)
            return retry["id"], False
        raise
    return user["id"], True
