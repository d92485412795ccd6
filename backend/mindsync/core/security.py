"""Security dependencies: Clerk session verification, admin checks, access logging"""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from fastapi import Depends, Request
from jwt.algorithms import RSAAlgorithm

from mindsync.core.config import settings
from mindsync.core.errors import ForbiddenError, UnauthorizedError

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")

JWKS_CACHE_TTL = 86400  # seconds

_jwks_cache: Dict[str, Any] = {}
_jwks_fetched_at: Optional[float] = None
_jwks_provider_override: Optional[Callable[[str], Dict[str, Any]]] = None


def set_jwks_provider_for_tests(provider: Optional[Callable[[str], Dict[str, Any]]]) -> None:
    """Set or clear a JWKS provider so tests never hit the network"""
    global _jwks_provider_override, _jwks_cache, _jwks_fetched_at
    _jwks_provider_override = provider
    _jwks_cache = {}
    _jwks_fetched_at = None


def _jwks_url() -> Optional[str]:
    if settings.CLERK_JWKS_URL:
        return settings.CLERK_JWKS_URL
    if settings.CLERK_ISSUER:
        return f"{settings.CLERK_ISSUER.rstrip('/')}/.well-known/jwks.json"
    return None


def get_clerk_jwks() -> Dict[str, Any]:
    """Fetch Clerk's JWKS, cached for a day"""
    global _jwks_cache, _jwks_fetched_at

    if _jwks_cache and _jwks_fetched_at and (time.time() - _jwks_fetched_at) < JWKS_CACHE_TTL:
        return _jwks_cache

    url = _jwks_url()
    if not url:
        raise jwt.InvalidTokenError("CLERK_ISSUER or CLERK_JWKS_URL must be configured for RS256 verification")

    if _jwks_provider_override:
        jwks = _jwks_provider_override(url)
    else:
        response = httpx.get(url, timeout=5)
        response.raise_for_status()
        jwks = response.json()

    _jwks_cache = jwks
    _jwks_fetched_at = time.time()
    return jwks


def _uses_shared_secret() -> bool:
    # Production always verifies against the Clerk JWKS
    return bool(settings.CLERK_SECRET_KEY) and settings.ENVIRONMENT != "production"


def verify_clerk_token(token: str) -> Dict[str, Any]:
    """Verify a Clerk session JWT and return its claims.

    HS256 with CLERK_SECRET_KEY outside production (development and tests),
    otherwise RS256 against the Clerk JWKS.

    Raises:
        jwt.InvalidTokenError: If the token cannot be verified
    """
    if _uses_shared_secret():
        return jwt.decode(
            token,
            settings.CLERK_SECRET_KEY,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False}
        )

    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise jwt.InvalidTokenError("Token missing 'kid' in header")

    matching_key = next(
        (key for key in get_clerk_jwks().get("keys", []) if key.get("kid") == kid),
        None
    )
    if not matching_key:
        raise jwt.InvalidTokenError(f"Key ID '{kid}' not found in JWKS")

    public_key = RSAAlgorithm.from_jwk(json.dumps(matching_key))
    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        audience=settings.CLERK_AUDIENCE or None,
        issuer=settings.CLERK_ISSUER or None,
        options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.CLERK_AUDIENCE)}
    )


def require_auth(request: Request) -> str:
    """Dependency: Require a valid Clerk session, return the Clerk user id"""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise UnauthorizedError("Not authorized. Please sign in.")

    try:
        claims = verify_clerk_token(auth_header[7:])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Session expired. Please sign in again.")
    except (jwt.InvalidTokenError, httpx.HTTPError) as e:
        security_logger.warning(f"Clerk token rejected - Path: {request.url.path}, Reason: {e}")
        raise UnauthorizedError("Not authorized. Please sign in.")

    user_id = claims.get("sub")
    if not user_id:
        raise UnauthorizedError("Not authorized. Please sign in.")
    return user_id


def is_admin(user_id: Optional[str]) -> bool:
    return bool(user_id and user_id in settings.admin_user_ids)


def require_admin(request: Request, user_id: str = Depends(require_auth)) -> str:
    """Dependency: Require an allowlisted admin, return the Clerk user id"""
    if not is_admin(user_id):
        security_logger.warning(f"Admin access denied - User: {user_id}, Path: {request.url.path}")
        raise ForbiddenError("Access denied. Administrator permissions are required.")
    return user_id


def log_api_access(request: Request, status_code: int = 200, error: Optional[str] = None):
    """Log detailed API access information"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
