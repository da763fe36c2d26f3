"""
Authentication router for OAuth session sync and current-user retrieval.
"""

from datetime import datetime, timezone
import hmac
import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from errors import NotFoundError, UnauthorizedError
from models.oauth_account import OAuthAccount
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from services.session_token import create_session_token

router = APIRouter()
logger = logging.getLogger(__name__)


class SyncOAuthSessionRequest(BaseModel):
    provider: Literal["google", "github"]
    provider_account_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    name: Optional[str] = None
    picture: Optional[str] = None


class SyncOAuthSessionResponse(BaseModel):
    user_id: str
    email: str
    is_new_user: bool
    credits: int
    session_token: str
    session_expires_at: int


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    credits: int
    subscription_tier: str
    is_admin: bool = False
    providers: List[str] = []


def _require_sync_secret(supplied: Optional[str]) -> None:
    expected = (settings.AUTH_SYNC_SECRET or "").strip()
    if not expected or not supplied or not hmac.compare_digest(supplied.strip(), expected):
        raise UnauthorizedError("Invalid auth sync secret.")


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the signed-in user with balance and linked providers."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")

    providers_result = await db.execute(
        select(OAuthAccount.provider).where(OAuthAccount.user_id == user.id).order_by(OAuthAccount.provider)
    )

    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        picture=user.picture,
        credits=user.credits,
        subscription_tier=user.subscription_tier,
        is_admin=auth.is_admin,
        providers=list(providers_result.scalars().all()),
    )


@router.post("/sync", response_model=SyncOAuthSessionResponse)
async def sync_oauth_session(
    request: SyncOAuthSessionRequest,
    x_auth_sync_secret: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """
    Persist a completed frontend OAuth sign-in and issue a backend session token.

    The first sign-in creates the user with the signup credit grant.
    """
    _require_sync_secret(x_auth_sync_secret)
    email = request.email.strip().lower()
    now = datetime.now(timezone.utc)

    # 1. Resolve user by linked account, then by email.
    account_result = await db.execute(
        select(OAuthAccount).where(
            OAuthAccount.provider == request.provider,
            OAuthAccount.provider_account_id == request.provider_account_id,
        )
    )
    account = account_result.scalar_one_or_none()

    user: Optional[User] = None
    if account:
        user = (await db.execute(select(User).where(User.id == account.user_id))).scalar_one_or_none()
    if not user:
        user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()

    # 2. Create on first sign-in.
    is_new_user = user is None
    if is_new_user:
        user = User(email=email, name=request.name, picture=request.picture)
        db.add(user)
        await db.flush()
        logger.info("Created user %s via %s sign-in", user.id, request.provider)
    else:
        if request.name:
            user.name = request.name
        if request.picture:
            user.picture = request.picture

    # 3. Link the provider account.
    if account is None:
        account = OAuthAccount(
            user_id=user.id,
            provider=request.provider,
            provider_account_id=request.provider_account_id,
        )
        db.add(account)
    account.last_login_at = now

    await db.commit()
    await db.refresh(user)
    session = create_session_token(user.id, user.email, provider=request.provider)

    return SyncOAuthSessionResponse(
        user_id=user.id,
        email=user.email,
        is_new_user=is_new_user,
        credits=user.credits,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
