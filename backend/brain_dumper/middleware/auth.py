"""
Bearer token authentication for the API.
"""
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session
import structlog

from ..config import settings
from ..database.base import get_db
from ..database.models import User

logger = structlog.get_logger(__name__)


def extract_token(request: Request) -> Optional[str]:
    """Bearer token from the Authorization header, if any."""
    authorization = request.headers.get("Authorization")
    if not authorization:
        return None
    try:
        scheme, token = authorization.split(" ", 1)
    except ValueError:
        return None
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def decode_token(token: str) -> dict:
    if not settings.SECRET_KEY:
        logger.error("SECRET_KEY is not configured")
        raise HTTPException(status_code=500, detail="Authentication service unavailable")

    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": True}
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid JWT token", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    FastAPI dependency returning the authenticated user.

    The token's ``sub`` claim must name an existing user.
    """
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")

    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")

    user = db.query(User).filter(User.id == str(user_id)).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    request.state.user_id = str(user.id)
    return user
