"""
Actor identity - JWT verification for callers of the core.

Tokens are issued by the auth collaborator; this module only verifies them
and turns the claims into an ``Actor`` that every state-changing service call
receives. Role checks happen in the services, never in the caller.
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import jwt as pyjwt
from pydantic import BaseModel

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class ActorRole(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    RIDER = "rider"
    ADMIN = "admin"
    SYSTEM = "system"  # payment/payout webhooks, background workers


@dataclass(frozen=True)
class Actor:
    """Who is asking for a state change"""
    id: UUID
    role: ActorRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(id=settings.PLATFORM_OWNER_ID, role=ActorRole.SYSTEM)


class TokenPayload(BaseModel):
    sub: UUID
    role: ActorRole
    exp: int


def create_access_token(actor_id: UUID, role: ActorRole, expires_minutes: int = 60) -> str:
    """Issue a token (used by tests and local tooling)"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not set, cannot issue tokens")
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {
        "sub": str(actor_id),
        "role": role.value,
        "exp": int(expire.timestamp()),
    }
    return pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Actor]:
    """Verify a bearer token. Returns None if invalid or expired"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty - tokens cannot be verified")
        return None
    try:
        claims = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        payload = TokenPayload(**claims)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValueError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None

    if payload.role == ActorRole.SYSTEM:
        # system מגיע רק מ-webhook חתום או מ-worker, לא מטוקן
        logger.warning("JWT token claims system role", extra_data={"sub": str(payload.sub)})
        return None
    return Actor(id=payload.sub, role=payload.role)
