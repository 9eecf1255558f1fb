"""FastAPI dependencies for authentication.

Callers present a Microsoft Entra ID access token as a Bearer header. The
token is not verified here: it is validated by calling Microsoft Graph /me
with it, and the tenant is read from its tid claim. The resolved identity
is cached in Redis for 60 seconds, keyed by the token's hash.
"""

import hashlib
import json
from dataclasses import asdict, dataclass

import httpx
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from intuneget.logging_config import get_logger
from intuneget.redis.client import get_redis_client, redis_key
from intuneget.services import graph_service

logger = get_logger(__name__)
security = HTTPBearer()

_IDENTITY_CACHE_TTL = 60


@dataclass
class AuthenticatedUser:
    """Caller identity: Entra object id, tenant id and email."""

    user_id: str
    tenant_id: str
    email: str | None = None


def _unauthorized(detail: str = "Invalid or expired token") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _tenant_claim(token: str) -> str | None:
    """tid claim of the token, read without signature verification."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    tenant_id = claims.get("tid")
    return tenant_id if isinstance(tenant_id, str) and tenant_id else None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> AuthenticatedUser:
    """Resolve the Bearer token to an AuthenticatedUser, or 401."""
    token = credentials.credentials
    redis = get_redis_client()
    cache_key = redis_key("identity", hashlib.sha256(token.encode()).hexdigest())

    cached = await redis.get(cache_key)
    if cached is not None:
        return AuthenticatedUser(**json.loads(cached))

    tenant_id = _tenant_claim(token)
    if tenant_id is None:
        raise _unauthorized()

    try:
        identity = await graph_service.get_me(token)
    except httpx.HTTPError as e:
        logger.warning("Identity lookup failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider unavailable",
        ) from e
    if identity is None:
        raise _unauthorized()

    user = AuthenticatedUser(user_id=identity.user_id, tenant_id=tenant_id, email=identity.email)
    await redis.set(cache_key, json.dumps(asdict(user)), ex=_IDENTITY_CACHE_TTL)
    return user
