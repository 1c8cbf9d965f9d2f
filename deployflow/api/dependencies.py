"""Authentication and service dependencies for FastAPI."""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from deployflow.services.orchestrator import DeploymentOrchestrator
from deployflow.services.project_store import ProjectStore
from deployflow.utils.security import TokenPayload

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_owner(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> int:
    """Get the authenticated owner id from the JWT token.

    Args:
        credentials: HTTP Bearer credentials

    Returns:
        Owner id carried in the token's ``sub`` claim

    Raises:
        HTTPException: If the token is invalid, expired or has no usable subject
    """
    payload = TokenPayload.from_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if payload.is_expired():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )

    owner_id = payload.owner_id
    if owner_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return owner_id


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    """Orchestrator created during application startup."""
    return request.app.state.orchestrator


def get_store(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)) -> ProjectStore:
    return orchestrator.store
