from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
import threading
import time
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from database.crud import get_active_notary_by_user
from database.session import get_db
from utils.logger import get_logger

logger = get_logger(__name__)

SUPABASE_URL = (os.getenv("SUPABASE_URL") or "").rstrip("/")
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
SUPABASE_JWT_AUDIENCE = "authenticated"
ASYMMETRIC_ALGORITHMS = ("RS256", "ES256")
ACCESS_TOKEN_COOKIE = "sb-access-token"
BACK_OFFICE_ROLES = ("admin", "notary")

security = HTTPBearer(auto_error=False)


def _load_jwks_cache_ttl() -> int:
    raw_ttl = os.getenv("SUPABASE_JWKS_CACHE_TTL")
    if not raw_ttl:
        return 3600
    try:
        parsed = int(raw_ttl)
    except ValueError:
        return 3600
    return max(parsed, 60)


JWKS_CACHE_TTL_SECONDS = _load_jwks_cache_ttl()
_jwks_cache: Optional[Dict[str, Any]] = None
_jwks_cache_expires_at: float = 0.0
_jwks_cache_lock = threading.Lock()


@dataclass
class AuthContext:
    token: str
    payload: Dict[str, Any]
    sub: str
    email: Optional[str]
    role: str = "authenticated"
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    app_metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_service_role(self) -> bool:
        return self.role == "service_role"


def _fetch_jwks() -> Dict[str, Any]:
    if not SUPABASE_URL:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Missing Supabase configuration value: SUPABASE_URL",
        )
    jwks_url = f"{SUPABASE_URL}/auth/v1/.well-known/jwks.json"
    try:
        response = httpx.get(jwks_url, timeout=10.0)
        response.raise_for_status()
    except httpx.HTTPError as exc:  # pragma: no cover - network failure path
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to fetch Supabase public keys.",
        ) from exc
    return response.json()


def _get_jwks(force_refresh: bool = False) -> Dict[str, Any]:
    global _jwks_cache, _jwks_cache_expires_at
    now = time.monotonic()
    if force_refresh or _jwks_cache is None or now >= _jwks_cache_expires_at:
        with _jwks_cache_lock:
            now = time.monotonic()
            if force_refresh or _jwks_cache is None or now >= _jwks_cache_expires_at:
                _jwks_cache = _fetch_jwks()
                _jwks_cache_expires_at = now + JWKS_CACHE_TTL_SECONDS
    return _jwks_cache


def _find_jwk(jwks: Dict[str, Any], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    return next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)


def _signing_key(header: Dict[str, Any]) -> Any:
    alg = header.get("alg")
    if alg == "HS256":
        if not SUPABASE_JWT_SECRET:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="HS256 token received but SUPABASE_JWT_SECRET is not configured.",
            )
        return SUPABASE_JWT_SECRET
    if alg in ASYMMETRIC_ALGORITHMS:
        kid = header.get("kid")
        jwk_key = _find_jwk(_get_jwks(), kid)
        if jwk_key is None:
            jwk_key = _find_jwk(_get_jwks(force_refresh=True), kid)
        if jwk_key is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token header.")
        return jwk_key
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unsupported token algorithm.")


def _decode_token(token: str) -> Dict[str, Any]:
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token header.") from exc

    key = _signing_key(unverified_header)
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[unverified_header.get("alg")],
            audience=SUPABASE_JWT_AUDIENCE,
        )
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token.") from exc
    return payload


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(ACCESS_TOKEN_COOKIE) or None


def _context_from_token(token: str) -> AuthContext:
    payload = _decode_token(token)
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token payload is missing subject.")
    return AuthContext(
        token=token,
        payload=payload,
        sub=sub,
        email=payload.get("email"),
        role=payload.get("role") or "authenticated",
        user_metadata=payload.get("user_metadata") or {},
        app_metadata=payload.get("app_metadata") or {},
    )


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    token = _extract_token(request, credentials)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return _context_from_token(token)


def get_optional_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[AuthContext]:
    """Signed-in user when there is a valid session; anonymous callers get ``None``."""
    token = _extract_token(request, credentials)
    if not token:
        return None
    try:
        return _context_from_token(token)
    except HTTPException as exc:
        logger.info("Ignoring unusable session token: %s", exc.detail)
        return None


def _is_service_role_key(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> bool:
    if not SUPABASE_SERVICE_ROLE_KEY:
        return False
    candidates = [request.headers.get("apikey")]
    if credentials is not None:
        candidates.append(credentials.credentials)
    return any(
        candidate and secrets.compare_digest(candidate, SUPABASE_SERVICE_ROLE_KEY) for candidate in candidates
    )


def get_back_office_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> AuthContext:
    """Notaries, admins and service-role callers only."""
    if _is_service_role_key(request, credentials):
        return AuthContext(token="", payload={}, sub="service_role", email=None, role="service_role")

    auth = get_auth_context(request, credentials)
    if auth.app_metadata.get("role") in BACK_OFFICE_ROLES:
        return auth
    if get_active_notary_by_user(db, auth.sub) is not None:
        return auth
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Back-office access required")
