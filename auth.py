"""
Authentication routes and dependencies
"""

from types import SimpleNamespace
from typing import Optional
from fastapi import APIRouter, HTTPException, Header, Depends, Cookie
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
import re
import logging

from database import get_db
from crud.user import UserRepository
from auth_utils import hash_password, verify_password, create_jwt, decode_jwt, verify_operator_key
from utils.shared_utils import get_cached
from utils.security_utils import validate_password_strength
from config.settings import settings

logger = logging.getLogger(__name__)

# Create auth router
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])

TOKEN_COOKIE_MAX_AGE = 30 * 24 * 3600


# Request models
class SignupRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


def validate_email(email: str) -> bool:
    """Validate email format"""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def _token_response(user_id: int) -> JSONResponse:
    token = create_jwt(str(user_id))
    response = JSONResponse(
        content={
            "ok": True,
            "user_id": str(user_id),
            "token": token,
        }
    )
    response.set_cookie(
        key="auth_token",
        value=token,
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=TOKEN_COOKIE_MAX_AGE,
    )
    return response


@auth_router.post("/signup")
async def signup(request: SignupRequest, db: AsyncSession = Depends(get_db)):
    """Create a new user account with the signup credit allowance"""
    if not validate_email(request.email):
        raise HTTPException(status_code=400, detail="Invalid email format")

    try:
        validate_password_strength(request.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    user_repo = UserRepository(db)

    existing_user = await user_repo.get_user_by_email(request.email.lower())
    if existing_user:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = await user_repo.create_user({
        "email": request.email.lower(),
        "hashed_password": hash_password(request.password),
        "is_active": True,
        "credits": settings.signup_credits,
    })
    await db.commit()
    logger.info(f"New user registered: {user.id}")

    return _token_response(user.id)


@auth_router.post("/login")
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Login and get JWT token"""
    user_repo = UserRepository(db)

    user = await user_repo.get_user_by_email(request.email.lower())
    if not user or not verify_password(request.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    return _token_response(user.id)


async def _get_user_data_with_caching(user_id: int, user_repo: UserRepository) -> dict:
    """
    Fetch the identity fields of a user with caching.

    Balances and entitlements are never cached here; the chat flow reads them fresh.

    Raises:
        HTTPException: If user is not found
    """
    async def fetch_user():
        user = await user_repo.get_user_by_id(user_id)
        if not user:
            raise HTTPException(status_code=401, detail="User not found")
        return {
            "id": user.id,
            "email": user.email,
            "is_active": user.is_active,
            "is_operator": user.is_operator,
        }

    return await get_cached(
        key=f"user:{user_id}",
        fallback_func=fetch_user,
        ttl_seconds=300
    )


def _extract_token(auth_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    # httpOnly cookie first (browser clients), then Bearer header (API consumers)
    if auth_token:
        return auth_token
    if authorization and authorization.startswith("Bearer "):
        return authorization.replace("Bearer ", "").strip()
    return None


# Dependency for protected routes
async def get_current_user(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> dict:
    """
    Dependency function to get current authenticated user.

    Authentication priority:
    1. Check auth_token cookie first (httpOnly cookie set by login/signup)
    2. Fallback to Authorization header (Bearer token) for API consumers
    3. Raise 401 if neither is found
    """
    token = _extract_token(auth_token, authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")

    payload = decode_jwt(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id_str = payload.get("sub")
    if not user_id_str:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    # JWT stores the id as a string
    try:
        user_id = int(user_id_str)
    except (ValueError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid user ID in token")

    user_repo = UserRepository(db)
    user = SimpleNamespace(**await _get_user_data_with_caching(user_id, user_repo))

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    return {
        "user_id": user.id,
        "email": user.email,
        "is_active": user.is_active,
        "is_operator": user.is_operator,
    }


async def require_operator(
    x_operator_key: Optional[str] = Header(None, alias="X-Operator-Key"),
    x_operator_name: Optional[str] = Header(None, alias="X-Operator-Name"),
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> dict:
    """
    Dependency for operator routes.

    Accepts either the shared operator API key (X-Operator-Key, with the
    operator's display name in X-Operator-Name) or a logged-in user flagged
    as operator.
    """
    if x_operator_key:
        if not verify_operator_key(x_operator_key):
            raise HTTPException(status_code=403, detail="Invalid operator key")
        return {"operator_name": x_operator_name or "operator", "user_id": None}

    user = await get_current_user(auth_token=auth_token, authorization=authorization, db=db)
    if not user["is_operator"]:
        raise HTTPException(status_code=403, detail="Operator access required")
    return {"operator_name": x_operator_name or user["email"], "user_id": user["user_id"]}


@auth_router.get("/me")
async def get_current_user_info(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get current user information including balance and access flags"""
    user = await UserRepository(db).get_user_by_id(current_user["user_id"])
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    return {
        "ok": True,
        "user_id": str(user.id),
        "email": user.email,
        "credits": user.credits,
        "lifetime_access": user.lifetime_access,
        "is_operator": user.is_operator,
        "stripe_customer_id": user.stripe_customer_id,
    }


@auth_router.post("/logout")
async def logout():
    """Logout and clear auth token cookie"""
    response = JSONResponse(
        content={
            "ok": True,
            "message": "Logged out successfully"
        }
    )
    # Clear the auth_token cookie by setting max_age=0
    response.set_cookie(
        key="auth_token",
        value="",
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=0
    )
    return response
