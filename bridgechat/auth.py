import hmac
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from bridgechat import repositories
from bridgechat.config import Settings, get_settings
from bridgechat.credentials import ServiceCredential, UserCredential
from bridgechat.storage import get_db

# auto_error=False so we can answer 401 (not 403) on a missing header
bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str, settings: Settings) -> dict[str, Any]:
    """
    Decode and verify an auth provider access token (JWT).

    Verification:
      - signature (AUTH_JWT_ALG, keyed by AUTH_JWT_SECRET)
      - expiration time (exp), when present
      - audience is NOT verified (provider 'aud' may vary)

    Raises:
        HTTPException(401): if token is invalid/expired.
        HTTPException(500): if no JWT secret is configured.
    """
    if not settings.AUTH_JWT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error",
        )
    try:
        return jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALG],
            options={"verify_aud": False},
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def require_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> UserCredential:
    """
    Resolve the acting user from a bearer JWT.

    Flow:
      1. No Authorization header => 401.
      2. Decode JWT => 'sub' (user id) and 'email'.
      3. Mirror the user into profiles if this is the first request.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )

    payload = decode_access_token(credentials.credentials, settings)
    sub = payload.get("sub")
    email = payload.get("email")

    if not sub or not email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing sub/email",
        )

    metadata = payload.get("user_metadata") or {}
    repositories.ensure_profile(db, sub, email, metadata.get("display_name"))
    return UserCredential(user_id=sub)


def require_service(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> ServiceCredential:
    """Accept only the service role key as bearer token."""
    if not settings.SERVICE_ROLE_KEY:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error",
        )

    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode("utf-8"),
        settings.SERVICE_ROLE_KEY.encode("utf-8"),
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Service credential required",
        )

    return ServiceCredential(reason="internal dispatch trigger")
