"""Actor dependencies and error mapping shared by the routers."""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from timebill.errors import AuthError, EngineError
from timebill.services.workspace import Workspace
from timebill.utils.auth import verify_access_token

security = HTTPBearer(auto_error=False)


def http_error(e: EngineError) -> HTTPException:
    """Render an engine error as an HTTP error with a {code, message} detail."""
    return HTTPException(status_code=e.http_status, detail=e.to_dict())


async def get_current_actor_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """
    Dependency to get current actor ID from JWT token.

    Args:
        credentials: HTTP bearer credentials

    Returns:
        Actor ID from token

    Raises:
        HTTPException: If token is missing or invalid (401)
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=AuthError("Not authenticated").to_dict(),
        )

    try:
        return verify_access_token(credentials.credentials)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=AuthError("Invalid authentication credentials").to_dict(),
        )


async def get_workspace(
    request: Request,
    actor_id: str = Depends(get_current_actor_id),
) -> Workspace:
    """
    Dependency to get the current actor's workspace.

    Raises:
        HTTPException: If the workspace cannot be opened
    """
    try:
        return await request.app.state.workspaces.get(actor_id)
    except EngineError as e:
        raise http_error(e)
