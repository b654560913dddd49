"""
FastAPI dependencies for authenticating actors

Usage:
    @router.post("/{order_id}/transition")
    async def transition_order(
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
    ):
        ...

Only identity is resolved here. Whether the actor may perform the operation is
decided by the services.
"""
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.auth import Actor, ActorRole, verify_token
from app.core.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Actor:
    """
    Verify the bearer JWT and return the calling actor.

    401 when the header is missing, the token is invalid or expired.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    actor = verify_token(credentials.credentials)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


def require_roles(*roles: ActorRole):
    """Dependency factory: 403 unless the actor holds one of ``roles``"""
    allowed = frozenset(roles)

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed:
            logger.warning(
                "Access denied by role",
                extra_data={"actor_id": str(actor.id), "role": actor.role.value,
                            "allowed": sorted(r.value for r in allowed)},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Role not permitted for this operation",
            )
        return actor

    return dependency


def ensure_owner_or_admin(actor: Actor, owner_id: UUID) -> None:
    """Wallet data is visible to its owner and to admins only"""
    if actor.role == ActorRole.ADMIN or actor.id == owner_id:
        return
    logger.warning(
        "Access denied to another owner's wallet",
        extra_data={"actor_id": str(actor.id), "owner_id": str(owner_id)},
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not the owner of this wallet",
    )
