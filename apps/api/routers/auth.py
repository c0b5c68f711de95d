"""
Authentication router exposing the caller's account profile.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import get_account_context
from services.orchestrator import AccountContext

router = APIRouter()


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    role: str
    credits: int
    is_banned: bool = False


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    """Get current account profile and credit balance."""
    result = await db.execute(select(User).where(User.id == account.account_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        credits=user.credits,
        is_banned=bool(user.is_banned),
    )
