"""
Auth utilities for the Drillity API.

Validates identity-provider JWTs (HS256) and extracts the actor from the
request. Falls back to X-Actor-Id / X-Actor-Type headers when
ALLOW_HEADER_AUTH is on (development and tests).
"""
from typing import Optional
import logging

import jwt
from fastapi import Header, Request

from drillity.core.config import settings
from drillity.core.errors import NotAuthenticatedError
from drillity.models.actor import Actor, ActorType

logger = logging.getLogger(__name__)


def _parse_actor_type(value: Optional[str]) -> ActorType:
    if not value:
        return ActorType.TALENT
    try:
        return ActorType(value.lower())
    except ValueError:
        raise NotAuthenticatedError(f"Unknown actor type: {value}") from None


def verify_jwt(token: str) -> Actor:
    """
    Verify a bearer JWT and build the actor from its claims.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        Actor with actor_id from 'sub' and actor_type from 'actor_type'

    Raises:
        NotAuthenticatedError: Invalid, expired, or unverifiable token
    """
    if not settings.AUTH_JWT_SECRET:
        raise NotAuthenticatedError("Token verification is not configured")

    options = {"require": ["sub", "exp"]}
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.AUTH_JWT_AUDIENCE,
            options=options if settings.AUTH_JWT_AUDIENCE else {**options, "verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        raise NotAuthenticatedError("Token expired") from None
    except jwt.InvalidTokenError as e:
        logger.debug("Invalid token: %s", type(e).__name__)
        raise NotAuthenticatedError("Invalid token") from None

    actor_id = payload.get("sub")
    if not actor_id:
        raise NotAuthenticatedError("Invalid token")

    return Actor(actor_id=str(actor_id), actor_type=_parse_actor_type(payload.get("actor_type")))


async def get_current_actor(
    request: Request,
    x_actor_id: Optional[str] = Header(None, description="Dev/test actor ID"),
    x_actor_type: Optional[str] = Header(None, description="Dev/test actor type (talent | company)"),
) -> Actor:
    """
    Extract the current actor from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-Actor-Id header (only when ALLOW_HEADER_AUTH)
    3. Raise NotAuthenticatedError (401)
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        # An invalid token never falls through to the header
        actor = verify_jwt(auth_header[7:])
    elif x_actor_id and settings.ALLOW_HEADER_AUTH:
        actor = Actor(actor_id=x_actor_id, actor_type=_parse_actor_type(x_actor_type))
    else:
        raise NotAuthenticatedError("Authentication required")

    request.state.actor_id = actor.actor_id
    return actor
