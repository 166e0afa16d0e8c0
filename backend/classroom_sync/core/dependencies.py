"""
FastAPI dependency injection functions.

Long-lived components are built once in the lifespan and hung on
`app.state`; routes reach them through these dependencies.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from classroom_sync.core.security import decode_access_token

# Bearer token scheme for Swagger UI
bearer_scheme = HTTPBearer()


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> str:
    """Dependency: extract and validate user_id from JWT token.

    Returns:
        str: The user's id (`sub` claim).

    Raises:
        HTTPException 401: If token is invalid or expired.
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token carries no user id",
        )

    return user_id


def get_dispatcher(request: Request):
    """Dependency: the process-wide CommandDispatcher."""
    return request.app.state.dispatcher


def get_device_service(request: Request):
    """Dependency: the process-wide DeviceService."""
    return request.app.state.device_service
