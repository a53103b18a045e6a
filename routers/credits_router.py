from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from crud.user import UserRepository
from database import get_db

router = APIRouter(prefix="/api", tags=["credits"])


@router.get("/credits")
async def get_credits(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Balance for the signed-in user.
    Normalises to: { "credits": <number>, "lifetime_access": <bool> }.
    """
    user = await UserRepository(db).get_user_by_id(current_user["user_id"])
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"credits": user.credits, "lifetime_access": user.lifetime_access}
