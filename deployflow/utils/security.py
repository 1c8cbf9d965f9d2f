"""JWT verification for tokens issued by the auth service."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from deployflow.config import settings


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token.

    The auth service owns token issuance; this mirrors its format and is
    used by tooling and tests.

    Args:
        data: Data to encode in the token
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.jwt_access_token_expire_minutes
        )

    to_encode.update({
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    })

    return jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and validate a JWT access token.

    Args:
        token: The JWT token to decode

    Returns:
        Decoded token payload if valid, None otherwise
    """
    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None


class TokenPayload:
    """Structured token payload for type safety."""

    def __init__(self, payload: Dict[str, Any]) -> None:
        self.sub: str = str(payload.get("sub", ""))  # owner id
        self.exp: datetime = datetime.fromtimestamp(
            payload.get("exp", 0), tz=timezone.utc
        )

    @property
    def owner_id(self) -> Optional[int]:
        """Owner id carried in ``sub``, or None when it is not an integer."""
        try:
            return int(self.sub)
        except (TypeError, ValueError):
            return None

    def is_expired(self) -> bool:
        """Check if token is expired."""
        return datetime.now(timezone.utc) > self.exp

    @classmethod
    def from_token(cls, token: str) -> Optional["TokenPayload"]:
        """Create TokenPayload from JWT token, or None if it does not verify."""
        payload = decode_access_token(token)
        if payload is None:
            return None
        return cls(payload)
