"""Service token creation and verification.

Learn: Only trusted producers may publish on the bridge's internal port.
They present a JWT signed with the shared RIPPLE_JWT_SECRET whose type is
"service". End-user identity is out of scope here; clients are trusted to
say who they are on the client port.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from ripple.config import settings

SERVICE_TOKEN_TYPE = "service"


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_service_token(
    service_name: str,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a JWT identifying a trusted producer service."""
    now = datetime.now(timezone.utc)
    expires = now + timedelta(
        minutes=expires_minutes or settings.service_token_expire_minutes
    )
    payload = {
        "sub": service_name,
        "type": SERVICE_TOKEN_TYPE,
        "exp": expires,
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")


def verify_service_token(token: str) -> str:
    """Verify a producer token. Returns the service name."""
    payload = verify_token(token)
    if payload.get("type") != SERVICE_TOKEN_TYPE:
        raise TokenError("Not a service token")
    return payload.get("sub", "")
