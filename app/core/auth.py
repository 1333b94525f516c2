"""
Bearer token authentication.

Tokens are HS256 JWTs issued by the identity provider; the ``sub`` claim is
the opaque user id used throughout the ledger and the handshake tables.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel, ValidationError

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class TokenPayload(BaseModel):
    """Claims the API relies on"""
    sub: str
    exp: int  # Unix timestamp


def create_access_token(user_id: str, expires_minutes: int | None = None) -> str:
    """Issue a token for ``user_id`` (tests and local tooling)"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not set, cannot issue tokens")
    minutes = expires_minutes if expires_minutes is not None else settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {
        "sub": user_id,
        "exp": int(expire.timestamp()),
    }
    return pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[TokenPayload]:
    """Decode and validate a token; None when invalid or expired"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty, tokens cannot be verified")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        token_data = TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except ValidationError as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None

    if not token_data.sub:
        logger.warning("JWT token has an empty subject")
        return None
    return token_data
