"""Authentication dependencies for API user scoping."""

import secrets
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: str


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the verified email from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        account_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")),
    )


def _require_shared_secret(expected: str, supplied: str, name: str) -> None:
    if not expected:
        raise HTTPException(status_code=503, detail=f"{name} is not configured.")
    if not supplied or not secrets.compare_digest(expected, supplied):
        raise HTTPException(status_code=403, detail="Invalid credentials.")


async def require_admin_key(x_admin_key: str = Header(default="")) -> None:
    """Guard operator-only endpoints with ADMIN_API_KEY."""
    _require_shared_secret(settings.ADMIN_API_KEY, x_admin_key, "ADMIN_API_KEY")


async def require_identity_sync_secret(x_identity_sync_secret: str = Header(default="")) -> None:
    """Guard the identity-provider callback with IDENTITY_SYNC_SECRET."""
    _require_shared_secret(settings.IDENTITY_SYNC_SECRET, x_identity_sync_secret, "IDENTITY_SYNC_SECRET")
