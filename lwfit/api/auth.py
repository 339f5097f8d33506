"""
API Authentication
- Bearer JWT issued by the auth service, `sub` holds the user id
"""

from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from config.config import JWT_ALGORITHM, JWT_SECRET
from config.sentry import set_user_context
from lwfit.database.crud import get_user
from lwfit.database.engine import get_session
from lwfit.database.models import User
from lwfit.utils.time_utils import utc_now


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate an access token

    Raises:
        HTTPException: If token is invalid, expired or has no subject
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Missing subject in token")

    return payload


def create_access_token(user_id: int, expires_in: timedelta = timedelta(days=7)) -> str:
    """Issue an access token (used by tooling and tests; login lives elsewhere)"""
    payload = {"sub": str(user_id), "exp": utc_now() + expires_in}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_current_user(
    authorization: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session),
) -> User:
    """
    FastAPI Dependency: user from "Authorization: Bearer <jwt>"

    Usage:
        @router.get("/balance")
        async def get_balance(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    payload = decode_access_token(authorization[7:])

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid subject in token")

    user = await get_user(session, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    set_user_context(user.id, user.email)
    return user
