"""
Credentials: argon2 password hashes, session tokens and the operator key
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from passlib.context import CryptContext

from config.settings import settings

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

ALGORITHM = "HS256"
TOKEN_TTL = timedelta(days=30)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def _signing_key() -> str:
    if not settings.jwt_secret_key:
        raise ValueError("JWT_SECRET_KEY is not set")
    return settings.jwt_secret_key


def create_jwt(user_id: str, expires_in: timedelta = TOKEN_TTL) -> str:
    """Session token whose subject is the user id. A negative expires_in yields an already-expired token."""
    expires_at = datetime.now(timezone.utc) + expires_in
    return jwt.encode({"sub": user_id, "exp": expires_at}, _signing_key(), algorithm=ALGORITHM)


def decode_jwt(token: str) -> Optional[dict]:
    """Claims of a valid token; None when it is expired, tampered with or malformed."""
    try:
        return jwt.decode(token, _signing_key(), algorithms=[ALGORITHM])
    except jwt.InvalidTokenError:
        return None


def verify_operator_key(candidate: Optional[str]) -> bool:
    """Constant-time check of an operator API key against OPERATOR_API_KEY."""
    if not candidate or not settings.operator_api_key:
        return False
    return secrets.compare_digest(candidate, settings.operator_api_key)
