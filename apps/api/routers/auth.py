"""
Identity-provider sync: resolve the ledger account and issue a session token.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from database import LedgerStore, get_store
from routers.auth_scope import AuthContext, get_auth_context, require_identity_sync_secret
from services.accounts import get_or_create_user
from services.session_token import create_session_token

router = APIRouter()


class SyncIdentityRequest(BaseModel):
    email: str = Field(min_length=3)
    external_id: Optional[str] = None


class SyncIdentityResponse(BaseModel):
    account_id: str
    email: str
    credits: int
    session_token: str
    session_expires_at: int


@router.post("/sync", response_model=SyncIdentityResponse, dependencies=[Depends(require_identity_sync_secret)])
async def sync_identity(
    request: SyncIdentityRequest,
    store: LedgerStore = Depends(get_store),
):
    """Called by the identity provider after sign-up or sign-in with a verified email."""
    account = await get_or_create_user(store, request.email.strip(), request.external_id)
    session = create_session_token(account.id, account.email)
    return SyncIdentityResponse(
        account_id=account.id,
        email=account.email,
        credits=int(account.credits or 0),
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.get("/me")
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_store),
):
    account = await get_or_create_user(store, auth.email)
    return account.to_dict()
