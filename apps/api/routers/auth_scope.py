"""Authentication dependencies resolving the caller's account."""

from typing import Callable

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.ledger import ensure_account
from services.orchestrator import AccountContext
from services.session_token import SessionClaims, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


async def get_session_claims(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> SessionClaims:
    """Resolve the Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        return decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


async def get_account_context(
    claims: SessionClaims = Depends(get_session_claims),
    db: AsyncSession = Depends(get_db),
) -> AccountContext:
    """Load (or create at signup) the caller's account and expose its identity facts."""
    user = await ensure_account(db, claims.account_id, claims.email)
    if user.deleted_at is not None:
        raise HTTPException(status_code=401, detail="Account no longer exists.")
    return AccountContext(
        account_id=user.id,
        is_banned=bool(user.is_banned),
        role=user.role or "user",
    )


def require_roles(*roles: str) -> Callable:
    """Return a dependency that admits only callers holding one of ``roles``."""

    async def _dependency(account: AccountContext = Depends(get_account_context)) -> AccountContext:
        if account.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient role for this operation.")
        if account.is_banned:
            raise HTTPException(status_code=403, detail="Account is restricted.")
        return account

    return _dependency
