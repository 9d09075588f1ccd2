# core/auth.py
"""
JWT authentication with Redis-backed JTI replay protection.

Guards the cron and admin endpoints. The caller (scheduler or operator
tooling) mints a short-lived HS256 token per request; each JTI is accepted
once, shared across every API instance through Redis.
"""

from datetime import timedelta

import jwt
import redis
from fastapi import Depends, HTTPException, Request, status

from storyflow.core.config import settings
from storyflow.core.dependencies import get_redis_client
from storyflow.core.logger import logger


class AuthenticatedPrincipal:
    """
    Authenticated principal information extracted from JWT.

    Proves the request came from a trusted caller; there is no end-user
    identity in this service.
    """

    def __init__(self, issuer: str, audience: str, jti: str, request_id: str):
        self.issuer = issuer
        self.audience = audience
        self.jti = jti
        self.request_id = request_id


def claim_jti(redis_client: redis.Redis, jti: str) -> bool:
    """
    Atomically record a JTI. False when it was already used.

    Fails closed: a Redis error counts as "already used".
    """
    try:
        created = redis_client.set(
            f"{settings.REDIS_KEY_PREFIX}:jti:{jti}",
            1,
            nx=True,
            ex=settings.JTI_CACHE_TTL_SECONDS,
        )
        return bool(created)
    except redis.RedisError as e:
        logger.error(f"Failed to record JTI: {e}", extra={"jti": jti})
        return False


async def verify_jwt_token(
    request: Request,
    redis_client: redis.Redis = Depends(get_redis_client)
) -> AuthenticatedPrincipal:
    """
    Verify JWT token and enforce replay protection.

    Raises:
        HTTPException: If token is invalid, expired, or replayed
    """
    request_id = request.headers.get("x-request-id", "unknown")
    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authenticated",
            headers={"x-request-id": request_id}
        )

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication scheme",
            headers={"x-request-id": request_id}
        )

    token = authorization.split(" ", 1)[1]

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            leeway=timedelta(seconds=settings.JWT_LEEWAY_SECONDS)
        )

        jti = payload.get("jti")

        if settings.JWT_REQUIRE_JTI:
            if not jti:
                logger.warning(
                    "Missing JTI in token",
                    extra={"request_id": request_id, "auth_result": "missing_jti"}
                )
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Token missing JTI claim",
                    headers={"x-request-id": request_id}
                )

            if not claim_jti(redis_client, jti):
                logger.warning(
                    "Token replay attempt detected",
                    extra={"request_id": request_id, "auth_result": "replay_attack", "jti": jti}
                )
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Token has already been used",
                    headers={"x-request-id": request_id}
                )

        principal = AuthenticatedPrincipal(
            issuer=payload["iss"],
            audience=payload["aud"],
            jti=jti,
            request_id=request_id
        )

        logger.info(
            "Authentication successful",
            extra={
                "request_id": request_id,
                "auth_result": "success",
                "iss": payload["iss"],
                "jti": jti
            }
        )

        return principal

    except HTTPException:
        raise
    except jwt.ExpiredSignatureError:
        logger.warning(
            "Expired token",
            extra={"request_id": request_id, "auth_result": "expired"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"x-request-id": request_id}
        )
    except jwt.InvalidIssuerError:
        logger.warning(
            "Invalid issuer",
            extra={"request_id": request_id, "auth_result": "invalid_issuer"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token issuer",
            headers={"x-request-id": request_id}
        )
    except jwt.InvalidAudienceError:
        logger.warning(
            "Invalid audience",
            extra={"request_id": request_id, "auth_result": "invalid_audience"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token audience",
            headers={"x-request-id": request_id}
        )
    except jwt.InvalidTokenError as e:
        logger.warning(
            "Invalid token",
            extra={"request_id": request_id, "auth_result": "invalid", "reason": str(e)}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"x-request-id": request_id}
        )
