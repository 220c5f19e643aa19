from datetime import timedelta
from typing import Dict, Any
import jwt
from fastapi import HTTPException

from config import settings
from Utils.datetime_utils import now_utc

ACCESS_TOKEN_EXPIRE_SECONDS = 3600


def create_access_token(data: Dict[str, Any], expires_delta: int = None) -> str:
    """
    Creates a JWT access token with expiration timestamp.
    Tokens are normally minted by the platform's identity service; this is used by tooling and tests.
    """
    to_encode = data.copy()
    expire = now_utc() + timedelta(
        seconds=(expires_delta or ACCESS_TOKEN_EXPIRE_SECONDS)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str):
    """
    Decodes and validates JWT access token.
    Raises HTTPException for invalid or expired tokens.
    """
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
