"""Access token utilities. Tokens identify the current actor by their ``sub`` claim."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from timebill.config import settings


def create_access_token(
    actor_id: str, expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token for an actor.

    Args:
        actor_id: Actor ID to encode in token
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string

    Example:
        >>> token = create_access_token(actor_id="actor123")
        >>> isinstance(token, str)
        True
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_expiration_minutes)

    to_encode = {
        "sub": actor_id,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }

    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_access_token(token: str) -> str:
    """
    Verify and decode a JWT access token.

    Args:
        token: JWT token string to verify

    Returns:
        Actor ID from token

    Raises:
        JWTError: If token is invalid, expired or has no subject

    Example:
        >>> token = create_access_token(actor_id="actor123")
        >>> verify_access_token(token)
        'actor123'
    """
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    actor_id = payload.get("sub")

    if not actor_id:
        raise JWTError("Token payload missing 'sub' claim")

    return actor_id
