"""
UserRepository for database operations on User model
"""

from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from database_models import User


class UserRepository:
    """
    Repository class for User database operations.
    Encapsulates all database logic for the User model, including the
    credit balance updates that must stay atomic under concurrent requests.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Retrieve a user by email address.

        Args:
            email: User's email address (case-insensitive search)

        Returns:
            User object if found, None otherwise
        """
        result = await self.db.execute(
            select(User).where(User.email == email.lower())
        )
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_user_by_stripe_customer_id(self, customer_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.stripe_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    async def list_users(self) -> List[User]:
        result = await self.db.execute(select(User).order_by(User.id))
        return list(result.scalars().all())

    async def create_user(self, user_data: dict) -> User:
        """
        Create a new user in the database.

        Args:
            user_data: Dictionary containing user data. Must include:
                - email: str
                - hashed_password: str
                Optional:
                - is_active: bool (defaults to True)
                - is_operator: bool (defaults to False)
                - credits: int (defaults to 0)
                - lifetime_access: bool (defaults to False)

        Returns:
            Created User object
        """
        user = User(
            email=user_data["email"].lower(),
            hashed_password=user_data["hashed_password"],
            is_active=user_data.get("is_active", True),
            is_operator=user_data.get("is_operator", False),
            credits=user_data.get("credits", 0),
            lifetime_access=user_data.get("lifetime_access", False),
            stripe_customer_id=user_data.get("stripe_customer_id"),
        )
        self.db.add(user)
        await self.db.flush()  # Flush to get the ID without committing
        await self.db.refresh(user)  # Refresh to get the generated ID
        return user

    async def update_user(self, user: User, updates: dict) -> User:
        """
        Update user fields.

        Args:
            user: User object to update
            updates: Dictionary of fields to update (e.g., {"stripe_customer_id": "cus_123"})

        Returns:
            Updated User object
        """
        for key, value in updates.items():
            if hasattr(user, key):
                setattr(user, key, value)

        await self.db.flush()
        await self.db.refresh(user)
        return user

    async def debit_credit(self, user_id: int) -> bool:
        """
        Consume one credit if the balance is positive.

        Runs as a single conditional UPDATE so two concurrent requests can never
        both take the last credit.

        Returns:
            True if a credit was consumed, False if the balance was already zero
        """
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id, User.credits > 0)
            .values(credits=User.credits - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def add_credits(self, user_id: int, amount: int) -> bool:
        """Atomically add credits. Returns False if the user does not exist."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def grant_lifetime_access(self, user_id: int) -> bool:
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(lifetime_access=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_credits(self, user_id: int) -> Optional[int]:
        result = await self.db.execute(
            select(User.credits).where(User.id == user_id)
        )
        return result.scalar_one_or_none()
